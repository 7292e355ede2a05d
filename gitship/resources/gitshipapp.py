import logging
from logging import Logger
from typing import Awaitable, Callable, Dict, List, Optional

from kubernetes_asyncio.client import (
    AppsV1Api,
    BatchV1Api,
    CoreV1Api,
    CustomObjectsApi,
    NetworkingV1Api,
    V1Capabilities,
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvFromSource,
    V1EnvVar,
    V1HTTPGetAction,
    V1HTTPIngressPath,
    V1HTTPIngressRuleValue,
    V1Ingress,
    V1IngressBackend,
    V1IngressRule,
    V1IngressServiceBackend,
    V1IngressSpec,
    V1IngressTLS,
    V1LabelSelector,
    V1LocalObjectReference,
    V1ObjectMeta,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1PersistentVolumeClaimVolumeSource,
    V1PodSecurityContext,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Probe,
    V1ResourceRequirements,
    V1SecretEnvSource,
    V1SecretVolumeSource,
    V1SecurityContext,
    V1Service,
    V1ServiceBackendPort,
    V1ServicePort,
    V1ServiceSpec,
    V1Volume,
    V1VolumeMount,
)
from kubernetes_asyncio.client.api_client import ApiClient

from gitship.common.models.labels import Labels
from gitship.resources.addons import addon_handler
from gitship.resources.base import BaseResource
from gitship.resources.build import BuildOrchestrator, resolve_image_names
from gitship.resources.convergence import (
    APP_CONTAINER_NAME,
    ISSUER_ANNOTATION,
    diff_deployment,
    diff_ingress,
    diff_persistent_volume_claim,
    diff_service,
    is_storage_shrink,
    requested_storage,
)
from gitship.sensors import SensorDelegate
from gitship.types.models.gitshipapp_resources import GitshipAppResources
from gitship.types.models.gitshipapp_spec import (
    GitshipAppSpec,
    PortConfig,
    VolumeConfig,
)
from gitship.types.settings import Settings
from gitship.utils.context import StepContext
from gitship.utils.objects import cached_property


class GitshipApp(BaseResource):
    """GitshipApp kubernetes resource.

    Builds the desired child objects of an app (workload, service, ingress,
    claims and addons) and converges the cluster toward them. Every
    ``sync_*`` re-reads the live object before writing, creates it when
    absent and otherwise applies a single patch limited to the governed
    fields that drifted. A pass over unchanged desired state performs no
    writes.
    """

    logger: Logger
    conf: Settings = None
    sensor: Optional[SensorDelegate] = None
    shared_api_client: ApiClient = None  # Shared across all GitshipApp instances

    COMPONENT = "app"
    DEFAULT_CONTAINER_PORT = 8080
    DEFAULT_SERVICE_PORT = 80
    DEFAULT_PORT_NAME = "http"
    RUN_AS_USER = 1000
    PROBE_PERIOD_SECONDS = 10
    PROBE_SUCCESS_THRESHOLD = 1
    PROBE_FAILURE_THRESHOLD = 3
    CERT_MANAGER_GROUP = "cert-manager.io"
    CERT_MANAGER_VERSION = "v1"
    ISSUER_PLURAL = "issuers"
    PAUSE_ANNOTATION = "gitship.io/pause-reconciliation"

    spec: GitshipAppSpec
    annotations: Dict[str, str]
    commit: Optional[str] = None
    ctx: StepContext

    def __init__(
        self,
        name: str,
        namespace: str,
        uid: str = None,
        labels: Optional[Dict[str, str]] = None,
    ):
        _labels = Labels.generate_default_labels(
            name, self.COMPONENT, self.GITSHIP_OPERATOR_NAME
        )
        _labels.update(labels or {})
        super().__init__(name=name, namespace=namespace, uid=uid, labels=_labels)
        self.deployment_name = GitshipAppResources.deployment_name(name)
        self.service_name = GitshipAppResources.service_name(name)
        self.ingress_name = GitshipAppResources.ingress_name(name)
        self.conf = self.conf or Settings()
        self.annotations = {}
        self.logger = logging.getLogger(__name__)
        self.ctx = StepContext(name, namespace, self.logger)

    @classmethod
    def from_spec(
        cls,
        name: str,
        namespace: str,
        uid: str,
        spec: GitshipAppSpec,
        annotations: Optional[Dict[str, str]] = None,
        logger: Logger = None,
        ctx: StepContext = None,
        conf: Settings = None,
        sensor: SensorDelegate = None,
    ) -> "GitshipApp":
        app = GitshipApp(name, namespace, uid)
        app.spec = spec
        app.annotations = annotations or {}
        app.logger = logger or logging.getLogger(__name__)
        app.ctx = ctx or StepContext(name, namespace, app.logger)
        app.conf = conf or cls.conf or Settings()
        app.sensor = sensor or cls.sensor
        return app

    def with_commit(self, commit: str) -> "GitshipApp":
        """Set the commit whose image the workload runs."""
        self.commit = commit
        return self

    @property
    def reconciliation_paused(self) -> bool:
        """Check if reconciliation is paused."""
        return (self.annotations or {}).get(self.PAUSE_ANNOTATION, "").lower() == "true"

    @property
    def replicas(self) -> int:
        return self.spec.replicas or 1

    @property
    def image(self) -> str:
        _, pull_image = resolve_image_names(
            self.spec.image_name, self.commit, self.spec.registry_secret_ref, self.conf
        )
        return pull_image

    @cached_property
    def api_client(self) -> ApiClient:
        # Use the shared API client if available, otherwise create a new one
        if self.shared_api_client is not None:
            return self.shared_api_client
        return ApiClient()

    @cached_property
    def apps_v1_api(self) -> AppsV1Api:
        return AppsV1Api(self.api_client)

    @cached_property
    def core_v1_api(self) -> CoreV1Api:
        return CoreV1Api(self.api_client)

    @cached_property
    def networking_v1_api(self) -> NetworkingV1Api:
        return NetworkingV1Api(self.api_client)

    @cached_property
    def custom_objects_api(self) -> CustomObjectsApi:
        return CustomObjectsApi(self.api_client)

    @cached_property
    def batch_v1_api(self) -> BatchV1Api:
        return BatchV1Api(self.api_client)

    def build_orchestrator(self) -> BuildOrchestrator:
        return BuildOrchestrator(
            self.name,
            self.namespace,
            self.uid,
            self.spec,
            self.batch_v1_api,
            conf=self.conf,
            sensor=self.sensor,
        )

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    async def synchronize(self) -> "GitshipApp":
        """Compare current state with desired state for all child resources and create/patch as needed.

        A failure aborts the remaining kinds of this pass, kinds already
        converged stay converged.
        """
        if self.commit is None:
            raise ValueError("Cannot synchronize without a built commit")
        await self.sync_addons()
        await self.sync_persistent_volume_claims()
        await self.sync_deployment()
        await self.sync_service()
        await self.sync_ingress()
        return self

    async def _instrumented(
        self,
        resource_name: str,
        resource_type: str,
        operation: str,
        call: Callable[[], Awaitable],
    ):
        sensor_state = None
        if self.sensor:
            sensor_state = self.sensor.on_resource_sync_start(
                self.name, resource_name, self.namespace, resource_type
            )
        success, error = True, None
        try:
            return await call()
        except Exception as ex:
            success, error = False, ex
            raise
        finally:
            if self.sensor:
                self.sensor.on_resource_sync_complete(
                    self.name,
                    resource_name,
                    self.namespace,
                    resource_type,
                    sensor_state,
                    operation,
                    success,
                    error,
                )

    def _drift(self, resource_name: str, resource_type: str, patch: List[Dict]):
        fields = sorted({op["path"] for op in patch})
        self.ctx.logger.info(f"Drift detected on {resource_type} {resource_name}: {fields}")
        if self.sensor:
            self.sensor.on_resource_drift_detected(
                self.name, resource_name, self.namespace, resource_type, fields
            )

    async def sync_deployment(self):
        """Check current state of the workload and create/patch if needed."""
        desired = self.prepare_deployment()
        observed = await self.fetch_deployment(
            self.apps_v1_api, self.deployment_name, self.namespace
        )
        if not observed:
            self.ctx.logger.info(f"Creating deployment {self.deployment_name}")
            await self._instrumented(
                self.deployment_name,
                "deployment",
                "create",
                lambda: self.create_deployment(self.apps_v1_api, self.namespace, desired),
            )
            return
        patch = diff_deployment(desired, observed)
        if patch:
            self._drift(self.deployment_name, "deployment", patch)
            await self._instrumented(
                self.deployment_name,
                "deployment",
                "patch",
                lambda: self.patch_deployment(
                    self.apps_v1_api, self.deployment_name, self.namespace, patch
                ),
            )

    async def sync_service(self):
        """Check current state of service and create/patch if needed."""
        desired = self.prepare_service()
        observed = await self.fetch_service(
            self.core_v1_api, self.service_name, self.namespace
        )
        if not observed:
            self.ctx.logger.info(f"Creating service {self.service_name}")
            await self._instrumented(
                self.service_name,
                "service",
                "create",
                lambda: self.create_service(self.core_v1_api, self.namespace, desired),
            )
            return
        patch = diff_service(desired, observed)
        if patch:
            self._drift(self.service_name, "service", patch)
            await self._instrumented(
                self.service_name,
                "service",
                "patch",
                lambda: self.patch_service(
                    self.core_v1_api, self.service_name, self.namespace, patch
                ),
            )

    async def sync_ingress(self):
        """Create/patch the ingress, or delete it once no rules are declared."""
        observed = await self.fetch_ingress(
            self.networking_v1_api, self.ingress_name, self.namespace
        )
        if not self.spec.ingresses:
            if observed:
                self.ctx.logger.info(f"Deleting ingress {self.ingress_name}")
                await self._instrumented(
                    self.ingress_name,
                    "ingress",
                    "delete",
                    lambda: self.delete_ingress(
                        self.networking_v1_api, self.ingress_name, self.namespace
                    ),
                )
            return
        issuer = await self.resolve_tls_issuer()
        desired = self.prepare_ingress(issuer)
        if not observed:
            self.ctx.logger.info(f"Creating ingress {self.ingress_name}")
            await self._instrumented(
                self.ingress_name,
                "ingress",
                "create",
                lambda: self.create_ingress(
                    self.networking_v1_api, self.namespace, desired
                ),
            )
            return
        patch = diff_ingress(desired, observed)
        if patch:
            self._drift(self.ingress_name, "ingress", patch)
            await self._instrumented(
                self.ingress_name,
                "ingress",
                "patch",
                lambda: self.patch_ingress(
                    self.networking_v1_api, self.ingress_name, self.namespace, patch
                ),
            )

    async def sync_persistent_volume_claims(self):
        """Create declared claims and expand grown ones.

        Claims of volumes removed from the spec are retained.
        """
        for volume in self.spec.volumes or []:
            await self.sync_persistent_volume_claim(volume)

    async def sync_persistent_volume_claim(self, volume: VolumeConfig):
        desired = self.prepare_persistent_volume_claim(volume)
        name = desired.metadata.name
        observed = await self.fetch_persistent_volume_claim(
            self.core_v1_api, name, self.namespace
        )
        if not observed:
            self.ctx.logger.info(f"Creating persistent volume claim {name}")
            await self._instrumented(
                name,
                "pvc",
                "create",
                lambda: self.create_persistent_volume_claim(
                    self.core_v1_api, self.namespace, desired
                ),
            )
            return
        if is_storage_shrink(desired, observed):
            self.ctx.logger.warning(
                f"Storage of {name} can only be expanded, not reduced. "
                f"Keeping {requested_storage(observed)}, requested {volume.size}."
            )
            return
        patch = diff_persistent_volume_claim(desired, observed)
        if patch:
            self._drift(name, "pvc", patch)
            await self._instrumented(
                name,
                "pvc",
                "patch",
                lambda: self.patch_persistent_volume_claim(
                    self.core_v1_api, name, self.namespace, patch
                ),
            )

    async def sync_addons(self):
        """Provision auth secret, service and deployment of each addon when absent.

        Existing addon objects are left alone, credentials are never rotated.
        """
        for addon in self.spec.addons or []:
            handler = addon_handler(addon.type)
            name = GitshipAppResources.addon_name(self.name, addon.name)
            secret_name = GitshipAppResources.addon_secret_name(self.name, addon.name)
            labels = self.prepare_addon_labels(addon.name)
            owner_references = self.prepare_owner_references()

            if not await self.fetch_secret(self.core_v1_api, secret_name, self.namespace):
                secret = handler.prepare_secret(
                    name, secret_name, self.namespace, labels, owner_references
                )
                self.ctx.logger.info(f"Creating {addon.type} credentials {secret_name}")
                await self._instrumented(
                    secret_name,
                    "addon_secret",
                    "create",
                    lambda: self.create_secret(self.core_v1_api, self.namespace, secret),
                )

            if not await self.fetch_service(self.core_v1_api, name, self.namespace):
                service = handler.prepare_service(
                    name, self.namespace, labels, owner_references
                )
                self.ctx.logger.info(f"Creating {addon.type} service {name}")
                await self._instrumented(
                    name,
                    "addon_service",
                    "create",
                    lambda: self.create_service(self.core_v1_api, self.namespace, service),
                )

            if not await self.fetch_deployment(self.apps_v1_api, name, self.namespace):
                deployment = handler.prepare_deployment(
                    name,
                    secret_name,
                    self.namespace,
                    addon.size,
                    labels,
                    owner_references,
                )
                self.ctx.logger.info(f"Creating {addon.type} deployment {name}")
                await self._instrumented(
                    name,
                    "addon_deployment",
                    "create",
                    lambda: self.create_deployment(
                        self.apps_v1_api, self.namespace, deployment
                    ),
                )

    async def resolve_tls_issuer(self) -> Optional[str]:
        """Name of the cert-manager Issuer to annotate the ingress with.

        Returns None when no rule wants TLS or the Issuer does not exist in
        the namespace. The issuer is never created.
        """
        if not any(rule.tls for rule in self.spec.ingresses or []):
            return None
        issuer = self.spec.tls.issuer or self.conf.default_tls_issuer
        found = await self.get_custom_object(
            self.custom_objects_api,
            self.namespace,
            self.CERT_MANAGER_GROUP,
            self.CERT_MANAGER_VERSION,
            self.ISSUER_PLURAL,
            issuer,
        )
        if not found:
            self.ctx.logger.warning(
                f"TLS requested but issuer {issuer} not found in {self.namespace}, "
                "certificate annotation omitted"
            )
            return None
        return issuer

    # ------------------------------------------------------------------
    # Desired state
    # ------------------------------------------------------------------

    def prepare_addon_labels(self, addon_name: str) -> Labels:
        return (
            Labels(self.labels.as_dict())
            .include_gitship_component("addon")
            .include_gitship_addon(addon_name)
        )

    def prepare_metadata(self, name: str, labels: Dict[str, str] = None) -> V1ObjectMeta:
        return V1ObjectMeta(
            name=name,
            namespace=self.namespace,
            labels=labels or self.labels.as_dict(),
            owner_references=self.prepare_owner_references(),
        )

    def prepare_pod_labels(self) -> Dict[str, str]:
        labels = self.labels.as_dict()
        labels.update(Labels.app_selector(self.name).as_dict())
        return labels

    def prepare_ports(self) -> List[PortConfig]:
        if self.spec.ports:
            return self.spec.ports
        return [
            PortConfig(
                name=self.DEFAULT_PORT_NAME,
                port=self.DEFAULT_SERVICE_PORT,
                target_port=self.DEFAULT_CONTAINER_PORT,
                protocol="TCP",
            )
        ]

    def prepare_container_ports(self) -> List[V1ContainerPort]:
        """Build container ports, one per distinct target port."""
        ports, seen = [], set()
        for port in self.prepare_ports():
            key = (port.target_port, port.protocol.upper())
            if key in seen:
                continue
            seen.add(key)
            ports.append(
                V1ContainerPort(container_port=port.target_port, protocol=key[1])
            )
        return ports

    def prepare_env_vars(self) -> List[V1EnvVar]:
        env = [
            V1EnvVar(name=key, value=str(value))
            for key, value in sorted((self.spec.env or {}).items())
        ]
        for addon in self.spec.addons or []:
            handler = addon_handler(addon.type)
            env.append(
                handler.prepare_app_env(
                    GitshipAppResources.addon_secret_name(self.name, addon.name)
                )
            )
        return env

    def prepare_env_from(self) -> Optional[List[V1EnvFromSource]]:
        if not self.spec.secret_refs:
            return None
        return [
            V1EnvFromSource(secret_ref=V1SecretEnvSource(name=name))
            for name in self.spec.secret_refs
        ]

    def prepare_secret_mount_volume_name(self, secret_name: str) -> str:
        return f"secret-{secret_name}"

    def prepare_volume_mounts(self) -> Optional[List[V1VolumeMount]]:
        mounts = [
            V1VolumeMount(name=volume.name, mount_path=volume.mount_path)
            for volume in self.spec.volumes or []
        ]
        mounts += [
            V1VolumeMount(
                name=self.prepare_secret_mount_volume_name(mount.secret_name),
                mount_path=mount.mount_path,
                read_only=True,
            )
            for mount in self.spec.secret_mounts or []
        ]
        return mounts or None

    def prepare_volumes(self) -> Optional[List[V1Volume]]:
        volumes = [
            V1Volume(
                name=volume.name,
                persistent_volume_claim=V1PersistentVolumeClaimVolumeSource(
                    claim_name=GitshipAppResources.persistent_volume_claim_name(
                        self.name, volume.name
                    )
                ),
            )
            for volume in self.spec.volumes or []
        ]
        # A secret mounted at several paths shares one volume
        secret_names = []
        for mount in self.spec.secret_mounts or []:
            if mount.secret_name not in secret_names:
                secret_names.append(mount.secret_name)
        volumes += [
            V1Volume(
                name=self.prepare_secret_mount_volume_name(secret_name),
                secret=V1SecretVolumeSource(secret_name=secret_name),
            )
            for secret_name in secret_names
        ]
        return volumes or None

    def prepare_container_resource_requirements(self) -> V1ResourceRequirements:
        return self.prepare_resource_requirements(
            self.spec.resources.cpu, self.spec.resources.memory
        )

    def prepare_probe(self) -> Optional[V1Probe]:
        health_check = self.spec.health_check
        if not health_check or not health_check.path:
            return None
        return V1Probe(
            http_get=V1HTTPGetAction(path=health_check.path, port=health_check.port),
            initial_delay_seconds=health_check.initial_delay,
            timeout_seconds=health_check.timeout,
            period_seconds=self.PROBE_PERIOD_SECONDS,
            success_threshold=self.PROBE_SUCCESS_THRESHOLD,
            failure_threshold=self.PROBE_FAILURE_THRESHOLD,
        )

    def prepare_app_container(self) -> V1Container:
        return V1Container(
            name=APP_CONTAINER_NAME,
            image=self.image,
            ports=self.prepare_container_ports(),
            env=self.prepare_env_vars() or None,
            env_from=self.prepare_env_from(),
            volume_mounts=self.prepare_volume_mounts(),
            resources=self.prepare_container_resource_requirements(),
            liveness_probe=self.prepare_probe(),
            readiness_probe=self.prepare_probe(),
            security_context=V1SecurityContext(
                allow_privilege_escalation=False,
                read_only_root_filesystem=False,
                capabilities=V1Capabilities(drop=["ALL"]),
            ),
        )

    def prepare_deployment(self) -> V1Deployment:
        """Build the app workload."""
        pod_labels = self.prepare_pod_labels()
        image_pull_secrets = None
        if self.spec.registry_secret_ref:
            image_pull_secrets = [
                V1LocalObjectReference(name=self.spec.registry_secret_ref)
            ]
        return V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=self.prepare_metadata(self.deployment_name, pod_labels),
            spec=V1DeploymentSpec(
                replicas=self.replicas,
                selector=V1LabelSelector(
                    match_labels=Labels.app_selector(self.name).as_dict()
                ),
                template=V1PodTemplateSpec(
                    metadata=V1ObjectMeta(labels=pod_labels),
                    spec=V1PodSpec(
                        containers=[self.prepare_app_container()],
                        volumes=self.prepare_volumes(),
                        image_pull_secrets=image_pull_secrets,
                        security_context=V1PodSecurityContext(
                            run_as_non_root=True,
                            run_as_user=self.RUN_AS_USER,
                            fs_group=self.RUN_AS_USER,
                        ),
                    ),
                ),
            ),
        )

    def prepare_service(self) -> V1Service:
        """Build service resource."""
        return V1Service(
            api_version="v1",
            kind="Service",
            metadata=self.prepare_metadata(self.service_name),
            spec=V1ServiceSpec(
                selector=Labels.app_selector(self.name).as_dict(),
                type="ClusterIP",
                ports=[
                    V1ServicePort(
                        name=port.name or f"port-{port.port}",
                        port=port.port,
                        target_port=port.target_port,
                        protocol=port.protocol.upper(),
                    )
                    for port in self.prepare_ports()
                ],
            ),
        )

    def prepare_ingress(self, issuer: Optional[str] = None) -> V1Ingress:
        """Build ingress resource.

        TLS hosts are always listed when requested, the issuer annotation only
        when an issuer was found.
        """
        rules, tls = [], []
        for rule in self.spec.ingresses:
            rules.append(
                V1IngressRule(
                    host=rule.host,
                    http=V1HTTPIngressRuleValue(
                        paths=[
                            V1HTTPIngressPath(
                                path=rule.path or "/",
                                path_type="Prefix",
                                backend=V1IngressBackend(
                                    service=V1IngressServiceBackend(
                                        name=self.service_name,
                                        port=V1ServiceBackendPort(
                                            number=rule.service_port
                                        ),
                                    )
                                ),
                            )
                        ]
                    ),
                )
            )
            if rule.tls:
                tls.append(
                    V1IngressTLS(
                        hosts=[rule.host],
                        secret_name=GitshipAppResources.tls_secret_name(
                            self.name, rule.host
                        ),
                    )
                )
        metadata = self.prepare_metadata(self.ingress_name)
        if issuer and tls:
            metadata.annotations = {ISSUER_ANNOTATION: issuer}
        return V1Ingress(
            api_version="networking.k8s.io/v1",
            kind="Ingress",
            metadata=metadata,
            spec=V1IngressSpec(
                ingress_class_name=self.conf.ingress_class_name,
                rules=rules,
                tls=tls or None,
            ),
        )

    def prepare_persistent_volume_claim(
        self, volume: VolumeConfig
    ) -> V1PersistentVolumeClaim:
        """Build the claim backing a declared volume."""
        return V1PersistentVolumeClaim(
            api_version="v1",
            kind="PersistentVolumeClaim",
            metadata=self.prepare_metadata(
                GitshipAppResources.persistent_volume_claim_name(self.name, volume.name)
            ),
            spec=V1PersistentVolumeClaimSpec(
                access_modes=["ReadWriteOnce"],
                resources=V1ResourceRequirements(requests={"storage": volume.size}),
                storage_class_name=volume.storage_class,
            ),
        )

    # ------------------------------------------------------------------
    # Observed state
    # ------------------------------------------------------------------

    def prepare_app_url(self) -> str:
        if self.spec.ingresses:
            rule = self.spec.ingresses[0]
            scheme = "https" if rule.tls else "http"
            return f"{scheme}://{rule.host}"
        return "http://" + GitshipAppResources.qualified_service_name(
            self.name, self.namespace
        )

    async def fetch_workload_status(self) -> Dict:
        """Ready/desired replicas of the workload and restarts of its pods."""
        deployment = await self.fetch_deployment(
            self.apps_v1_api, self.deployment_name, self.namespace
        )
        ready = 0
        desired = self.replicas
        if deployment is not None:
            if deployment.status is not None:
                ready = deployment.status.ready_replicas or 0
            if deployment.spec is not None and deployment.spec.replicas is not None:
                desired = deployment.spec.replicas
        pods = await self.list_pods(
            self.core_v1_api, self.namespace, Labels.app_selector(self.name).as_dict()
        )
        restarts = 0
        for pod in pods.items or []:
            statuses = (pod.status.container_statuses if pod.status else None) or []
            restarts += sum(status.restart_count or 0 for status in statuses)
        return {
            "readyReplicas": ready,
            "desiredReplicas": desired,
            "restartCount": restarts,
        }

    def prepare_network_status(self) -> Dict:
        return {
            "appUrl": self.prepare_app_url(),
            "serviceType": "ClusterIP",
            "ingressHost": self.spec.ingresses[0].host if self.spec.ingresses else None,
        }
