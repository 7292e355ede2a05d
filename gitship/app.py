import kopf
import logging
import gitship.handlers.gitshipapp as gitshipapp
import gitship.handlers.probes as probes
from gitship.types.settings import Settings
from gitship.resources.gitshipapp import GitshipApp
from gitship.sensors import init_metrics_server, SensorDelegate, PrometheusMonitor
from gitship.webhook import WebhookReceiver
from kubernetes_asyncio import config
from kubernetes_asyncio.client import CustomObjectsApi
from kubernetes_asyncio.client.api_client import ApiClient


# Configure Kopf settings
@kopf.on.startup()
async def setup(
    settings: kopf.OperatorSettings, memo: kopf.Memo, logger: logging.Logger, **kwargs
):
    # Load Kubernetes config - try in-cluster first (for production), then local kubeconfig (for dev)
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        logger.info("In-cluster config not found, trying local kubeconfig")
        try:
            await config.load_kube_config()
            logger.info("Loaded local Kubernetes configuration")
        except config.ConfigException as e:
            logger.error(f"Failed to load Kubernetes configuration: {e}")
            raise

    memo.conf = Settings()
    GitshipApp.conf = memo.conf

    # Create a shared ApiClient for all resources to prevent connection leaks
    shared_client = ApiClient()
    GitshipApp.shared_api_client = shared_client
    logger.info("Shared Kubernetes API client initialized")

    # Initialize sensor infrastructure
    sensor_delegate = SensorDelegate()
    prometheus_monitor = PrometheusMonitor()
    sensor_delegate.add(prometheus_monitor)
    memo.sensor = sensor_delegate
    GitshipApp.sensor = sensor_delegate
    logger.info("Sensor infrastructure initialized with PrometheusMonitor")

    # Initialize Prometheus metrics server
    try:
        init_metrics_server()
    except Exception as e:
        logger.error(f"Failed to start metrics server: {e}")
        # Don't fail operator startup if metrics server fails
        logger.warning("Continuing without metrics server")

    # Start the push webhook receiver
    memo.webhook = None
    if memo.conf.webhook_port:
        receiver = WebhookReceiver(
            CustomObjectsApi(shared_client),
            secret=memo.conf.webhook_secret,
            sensor=sensor_delegate,
        )
        try:
            await receiver.start(memo.conf.webhook_port)
            memo.webhook = receiver
        except OSError as e:
            logger.error(f"Failed to start webhook receiver: {e}")
            logger.warning("Continuing without webhook receiver")
        if not memo.conf.webhook_secret:
            logger.warning(
                "GITHUB_WEBHOOK_SECRET is not set, webhook signatures are not verified."
            )

    # Limit the number of concurrent workers to prevent flooding the API
    settings.batching.worker_limit = memo.conf.worker_limit

    # Post events to the Kubernetes API for logging >= Warning
    settings.posting.enabled = True
    settings.posting.level = logging.WARNING


@kopf.on.cleanup()
async def cleanup(memo: kopf.Memo, logger: logging.Logger, **kwargs):
    """Cleanup handler for operator shutdown."""
    logger.info("Shutting down operator...")

    webhook = getattr(memo, "webhook", None)
    if webhook is not None:
        await webhook.stop()
        logger.info("Webhook receiver stopped")

    # Close the shared API client
    if GitshipApp.shared_api_client is not None:
        await GitshipApp.shared_api_client.close()
        logger.info("Shared API client closed")

    logger.info("Operator shutdown complete")


__all__ = [
    "gitshipapp",
    "probes",
]
