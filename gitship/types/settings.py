import os
from typing import Any

_TRUE, _FALSE = {"True", "true", "yes", "1"}, {"False", "false", "no", "0"}


def _getenv(name: str, *default: Any) -> Any:
    try:
        v = os.environ[name]
        if v in _TRUE:
            return True
        elif v in _FALSE:
            return False
        else:
            return v
    except KeyError:
        pass
    if default:
        return default[0]
    raise KeyError(name)


# ------------------------------------------------
# ---- Defaults and environment variables ----
# ------------------------------------------------

#: Registry service that build jobs push to when an app has no registry secret
IN_CLUSTER_REGISTRY = _getenv(
    "IN_CLUSTER_REGISTRY", "gitship-registry.gitship-system.svc.cluster.local:5000"
)

#: Node-local port the in-cluster registry is published on, used by kubelets to pull
NODE_LOCAL_REGISTRY = _getenv("NODE_LOCAL_REGISTRY", "localhost:30005")

#: Name of the secret holding the shared git token (key: token)
DEFAULT_TOKEN_SECRET_NAME = _getenv("DEFAULT_TOKEN_SECRET_NAME", "gitship-github-token")

#: Polling interval used when an app does not declare a valid one
DEFAULT_POLL_INTERVAL_SECONDS = float(_getenv("DEFAULT_POLL_INTERVAL_SECONDS", 300.0))

#: Wait before retrying after an authentication failure
AUTH_ERROR_RETRY_DELAY_SECONDS = float(_getenv("AUTH_ERROR_RETRY_DELAY_SECONDS", 300.0))

#: Wait before retrying after a non-auth revision resolution failure
RESOLVE_ERROR_RETRY_DELAY_SECONDS = float(
    _getenv("RESOLVE_ERROR_RETRY_DELAY_SECONDS", 60.0)
)

#: How often a pending build job is observed
BUILD_POLL_INTERVAL_SECONDS = float(_getenv("BUILD_POLL_INTERVAL_SECONDS", 30.0))

#: Wait before retrying a control-loop step that raised
ERROR_RETRY_DELAY_SECONDS = float(_getenv("ERROR_RETRY_DELAY_SECONDS", 30.0))

#: Timeout of a single git ref listing
GIT_TIMEOUT_SECONDS = float(_getenv("GIT_TIMEOUT_SECONDS", 30.0))

#: Retries of a build pod before the job is marked failed
BUILD_BACKOFF_LIMIT = int(_getenv("BUILD_BACKOFF_LIMIT", 1))

#: Wall clock deadline of a build job
BUILD_ACTIVE_DEADLINE_SECONDS = int(_getenv("BUILD_ACTIVE_DEADLINE_SECONDS", 3600))

#: Finished build jobs are garbage collected after this many seconds
BUILD_TTL_SECONDS_AFTER_FINISHED = int(_getenv("BUILD_TTL_SECONDS_AFTER_FINISHED", 3600))

#: Image used to clone sources in build jobs
GIT_CLONE_IMAGE = _getenv("GIT_CLONE_IMAGE", "alpine/git")

#: Image used to build and push in build jobs
KANIKO_IMAGE = _getenv("KANIKO_IMAGE", "gcr.io/kaniko-project/executor:latest")

#: cert-manager Issuer looked up when an app requests TLS without naming one
DEFAULT_TLS_ISSUER = _getenv("DEFAULT_TLS_ISSUER", "letsencrypt-prod")

#: Ingress class set on app ingresses
INGRESS_CLASS_NAME = _getenv("INGRESS_CLASS_NAME", "nginx")

#: Port of the push webhook receiver, 0 disables it
WEBHOOK_PORT = int(_getenv("WEBHOOK_PORT", 8081))

#: Shared secret used to verify webhook signatures, empty disables verification
GITHUB_WEBHOOK_SECRET = _getenv("GITHUB_WEBHOOK_SECRET", "")

#: Maximum number of concurrent kopf workers
WORKER_LIMIT = int(_getenv("WORKER_LIMIT", 10))


class Settings:
    """Operator settings"""

    in_cluster_registry: str = IN_CLUSTER_REGISTRY
    node_local_registry: str = NODE_LOCAL_REGISTRY
    default_token_secret_name: str = DEFAULT_TOKEN_SECRET_NAME
    default_poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    auth_error_retry_delay_seconds: float = AUTH_ERROR_RETRY_DELAY_SECONDS
    resolve_error_retry_delay_seconds: float = RESOLVE_ERROR_RETRY_DELAY_SECONDS
    build_poll_interval_seconds: float = BUILD_POLL_INTERVAL_SECONDS
    error_retry_delay_seconds: float = ERROR_RETRY_DELAY_SECONDS
    git_timeout_seconds: float = GIT_TIMEOUT_SECONDS
    build_backoff_limit: int = BUILD_BACKOFF_LIMIT
    build_active_deadline_seconds: int = BUILD_ACTIVE_DEADLINE_SECONDS
    build_ttl_seconds_after_finished: int = BUILD_TTL_SECONDS_AFTER_FINISHED
    git_clone_image: str = GIT_CLONE_IMAGE
    kaniko_image: str = KANIKO_IMAGE
    default_tls_issuer: str = DEFAULT_TLS_ISSUER
    ingress_class_name: str = INGRESS_CLASS_NAME
    webhook_port: int = WEBHOOK_PORT
    webhook_secret: str = GITHUB_WEBHOOK_SECRET
    worker_limit: int = WORKER_LIMIT

    def __init__(self, *args, **kwargs):
        for key, value in kwargs.items():
            if value is None:
                continue
            if not hasattr(type(self), key):
                raise TypeError(f"Unknown setting: {key}")
            setattr(self, key, value)
