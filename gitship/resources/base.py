import mmh3
import hashlib
from typing import Any, Dict, List, Optional
from gitship.utils.helpers import canonicalize_dict
from gitship.utils.errors import already_exists_error
from gitship.common.models.labels import Labels
from kubernetes.utils import parse_quantity
from kubernetes_asyncio.client import (
    ApiException,
    AppsV1Api,
    BatchV1Api,
    CoreV1Api,
    CustomObjectsApi,
    NetworkingV1Api,
    V1DeleteOptions,
    V1Deployment,
    V1Ingress,
    V1Job,
    V1OwnerReference,
    V1PersistentVolumeClaim,
    V1PodList,
    V1ResourceRequirements,
    V1Secret,
    V1Service,
)

MERGE_PATCH = "application/merge-patch+json"


def compute_hash(data: Any) -> str:
    """Compute a murmur3 hash."""
    if isinstance(data, (dict, list)):
        _data = canonicalize_dict(data)
    elif isinstance(data, str):
        _data = data.encode()
    else:
        raise ValueError(f"Hash of {type(data)} is not supported.")
    mumur_str = str(mmh3.hash128(_data))

    hash_obj = hashlib.sha256(mumur_str.encode("utf-8"))
    full_hash = hash_obj.hexdigest()

    # First 16 characters keep it readable in labels/annotations
    return full_hash[:16]


class BaseResource:
    """Base resource model."""

    GITSHIP_OPERATOR_NAME = "gitship-operator"

    GROUP_NAME = "gitship.io"
    GROUP_VERSION = "v1alpha1"
    KIND = "GitshipApp"
    PLURAL_NAME = "gitshipapps"

    DEFAULT_CPU_LIMIT = "500m"
    DEFAULT_MEMORY_LIMIT = "1Gi"

    _name: str
    _namespace: str
    _uid: Optional[str]
    _labels: Labels

    def __init__(self, name: str, namespace: str, uid: str, labels: Labels):
        self._name = name
        self._namespace = namespace
        self._uid = uid
        self._labels = labels

    @property
    def name(self) -> str:
        return self._name

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def uid(self) -> Optional[str]:
        return self._uid

    @property
    def labels(self) -> Labels:
        return self._labels

    def compute_hash(self, data: Any) -> str:
        return compute_hash(data)

    def prepare_resource_requirements(
        self, cpu: Optional[str], memory: Optional[str]
    ) -> V1ResourceRequirements:
        """Limits as declared, requests a quarter of the cpu and half the memory."""
        cpu = cpu or self.DEFAULT_CPU_LIMIT
        memory = memory or self.DEFAULT_MEMORY_LIMIT
        cpu_request = f"{int(parse_quantity(cpu) * 1000) // 4}m"
        memory_request = str(int(parse_quantity(memory)) // 2)
        return V1ResourceRequirements(
            limits={"cpu": cpu, "memory": memory},
            requests={"cpu": cpu_request, "memory": memory_request},
        )

    def prepare_owner_references(self) -> List[V1OwnerReference]:
        """Owner reference making the app the controller of a child object."""
        return [
            V1OwnerReference(
                api_version=f"{self.GROUP_NAME}/{self.GROUP_VERSION}",
                kind=self.KIND,
                name=self.name,
                uid=self.uid,
                controller=True,
                block_owner_deletion=True,
            )
        ]

    async def fetch_deployment(
        self, apps_v1_api: AppsV1Api, name: str, namespace: str
    ) -> Optional[V1Deployment]:
        try:
            return await apps_v1_api.read_namespaced_deployment(
                name=name, namespace=namespace
            )
        except ApiException as ex:
            if ex.status == 404:
                return None
            raise

    async def create_deployment(
        self, apps_v1_api: AppsV1Api, namespace: str, deployment: V1Deployment
    ) -> None:
        try:
            await apps_v1_api.create_namespaced_deployment(
                namespace=namespace, body=deployment
            )
        except ApiException as ex:
            if already_exists_error(ex):
                await apps_v1_api.replace_namespaced_deployment(
                    name=deployment.metadata.name, namespace=namespace, body=deployment
                )
            else:
                raise

    async def patch_deployment(
        self, apps_v1_api: AppsV1Api, name: str, namespace: str, patch: List[Dict]
    ) -> None:
        await apps_v1_api.patch_namespaced_deployment(
            name=name, namespace=namespace, body=patch
        )

    async def fetch_service(
        self, core_v1_api: CoreV1Api, name: str, namespace: str
    ) -> Optional[V1Service]:
        """Retrieve the latest state of a service"""
        try:
            return await core_v1_api.read_namespaced_service(
                name=name, namespace=namespace
            )
        except ApiException as ex:
            if ex.status == 404:
                return None
            raise

    async def create_service(
        self, core_v1_api: CoreV1Api, namespace: str, service: V1Service
    ) -> None:
        try:
            await core_v1_api.create_namespaced_service(namespace=namespace, body=service)
        except ApiException as ex:
            if already_exists_error(ex):
                await core_v1_api.replace_namespaced_service(
                    name=service.metadata.name, namespace=namespace, body=service
                )
            else:
                raise

    async def patch_service(
        self, core_v1_api: CoreV1Api, name: str, namespace: str, patch: List[Dict]
    ) -> None:
        await core_v1_api.patch_namespaced_service(
            name=name, namespace=namespace, body=patch
        )

    async def fetch_ingress(
        self, networking_v1_api: NetworkingV1Api, name: str, namespace: str
    ) -> Optional[V1Ingress]:
        try:
            return await networking_v1_api.read_namespaced_ingress(
                name=name, namespace=namespace
            )
        except ApiException as ex:
            if ex.status == 404:
                return None
            raise

    async def create_ingress(
        self, networking_v1_api: NetworkingV1Api, namespace: str, ingress: V1Ingress
    ) -> None:
        try:
            await networking_v1_api.create_namespaced_ingress(
                namespace=namespace, body=ingress
            )
        except ApiException as ex:
            if already_exists_error(ex):
                await networking_v1_api.replace_namespaced_ingress(
                    name=ingress.metadata.name, namespace=namespace, body=ingress
                )
            else:
                raise

    async def patch_ingress(
        self,
        networking_v1_api: NetworkingV1Api,
        name: str,
        namespace: str,
        patch: List[Dict],
    ) -> None:
        await networking_v1_api.patch_namespaced_ingress(
            name=name, namespace=namespace, body=patch
        )

    async def delete_ingress(
        self, networking_v1_api: NetworkingV1Api, name: str, namespace: str
    ) -> None:
        try:
            await networking_v1_api.delete_namespaced_ingress(
                name=name, namespace=namespace
            )
        except ApiException as ex:
            if ex.status == 404:
                return
            raise

    async def fetch_persistent_volume_claim(
        self, core_v1_api: CoreV1Api, name: str, namespace: str
    ) -> Optional[V1PersistentVolumeClaim]:
        try:
            return await core_v1_api.read_namespaced_persistent_volume_claim(
                name=name, namespace=namespace
            )
        except ApiException as ex:
            if ex.status == 404:
                return None
            raise

    async def create_persistent_volume_claim(
        self, core_v1_api: CoreV1Api, namespace: str, pvc: V1PersistentVolumeClaim
    ) -> None:
        try:
            await core_v1_api.create_namespaced_persistent_volume_claim(
                namespace=namespace, body=pvc
            )
        except ApiException as ex:
            # PVC specs are mostly immutable, an existing claim is left as is
            if not already_exists_error(ex):
                raise

    async def patch_persistent_volume_claim(
        self, core_v1_api: CoreV1Api, name: str, namespace: str, patch: List[Dict]
    ) -> None:
        await core_v1_api.patch_namespaced_persistent_volume_claim(
            name=name, namespace=namespace, body=patch
        )

    async def fetch_secret(
        self, core_v1_api: CoreV1Api, name: str, namespace: str
    ) -> Optional[V1Secret]:
        try:
            return await core_v1_api.read_namespaced_secret(
                name=name, namespace=namespace
            )
        except ApiException as ex:
            if ex.status == 404:
                return None
            raise

    async def create_secret(
        self, core_v1_api: CoreV1Api, namespace: str, secret: V1Secret
    ) -> None:
        try:
            await core_v1_api.create_namespaced_secret(namespace=namespace, body=secret)
        except ApiException as ex:
            # Never overwrite generated credentials
            if not already_exists_error(ex):
                raise

    async def fetch_job(
        self, batch_v1_api: BatchV1Api, name: str, namespace: str
    ) -> Optional[V1Job]:
        try:
            return await batch_v1_api.read_namespaced_job(name=name, namespace=namespace)
        except ApiException as ex:
            if ex.status == 404:
                return None
            raise

    async def create_job(
        self, batch_v1_api: BatchV1Api, namespace: str, job: V1Job
    ) -> bool:
        """Create a job, returns False when it already existed."""
        try:
            await batch_v1_api.create_namespaced_job(namespace=namespace, body=job)
        except ApiException as ex:
            if already_exists_error(ex):
                return False
            raise
        return True

    async def delete_job(
        self, batch_v1_api: BatchV1Api, name: str, namespace: str
    ) -> None:
        try:
            await batch_v1_api.delete_namespaced_job(
                name=name,
                namespace=namespace,
                body=V1DeleteOptions(propagation_policy="Background"),
            )
        except ApiException as ex:
            if ex.status == 404:
                return
            raise

    async def list_pods(
        self, core_v1_api: CoreV1Api, namespace: str, label_selector: dict = None
    ) -> V1PodList:
        """List pods in namespace, optionally filtered by label selector.

        Args:
            core_v1_api: CoreV1Api instance
            namespace: Namespace to list pods in
            label_selector: Dictionary of label key-value pairs to filter pods

        Returns:
            V1PodList object containing matching pods
        """
        label_selector_str = None
        if label_selector:
            label_selector_str = ",".join(
                [f"{k}={v}" for k, v in label_selector.items()]
            )
        return await core_v1_api.list_namespaced_pod(
            namespace=namespace, label_selector=label_selector_str
        )

    async def get_custom_object(
        self,
        custom_objects_api: CustomObjectsApi,
        namespace: str,
        group: str,
        version: str,
        plural: str,
        name: str,
    ) -> Optional[Dict]:
        try:
            return await custom_objects_api.get_namespaced_custom_object(
                group=group,
                version=version,
                namespace=namespace,
                plural=plural,
                name=name,
            )
        except ApiException as ex:
            if ex.status == 404:
                return None
            raise

    async def patch_custom_object_status(
        self,
        custom_objects_api: CustomObjectsApi,
        namespace: str,
        name: str,
        status: Dict,
    ) -> None:
        await custom_objects_api.patch_namespaced_custom_object_status(
            group=self.GROUP_NAME,
            version=self.GROUP_VERSION,
            namespace=namespace,
            plural=self.PLURAL_NAME,
            name=name,
            body={"status": status},
            _content_type=MERGE_PATCH,
        )
