import secrets
from typing import Callable, Dict, List, NamedTuple

from kubernetes_asyncio.client import (
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvVar,
    V1EnvVarSource,
    V1LabelSelector,
    V1ObjectMeta,
    V1OwnerReference,
    V1PodSpec,
    V1PodTemplateSpec,
    V1ResourceRequirements,
    V1Secret,
    V1SecretKeySelector,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)

from gitship.common.models.labels import Labels
from gitship.types.models.enums import AddonKind, AddonSize

PASSWORD_KEY = "password"
URL_KEY = "url"


class AddonSizing(NamedTuple):
    cpu: str
    memory: str


ADDON_SIZES: Dict[AddonSize, AddonSizing] = {
    AddonSize.SMALL: AddonSizing(cpu="250m", memory="256Mi"),
    AddonSize.MEDIUM: AddonSizing(cpu="500m", memory="512Mi"),
    AddonSize.LARGE: AddonSizing(cpu="1", memory="1Gi"),
}


class AddonHandler(NamedTuple):
    """How one addon kind is provisioned and wired into the app."""

    kind: AddonKind
    image: str
    port: int
    #: Env var the app container receives the connection string in
    env_var: str
    #: Connection string, formatted with ``host``, ``port`` and ``password``
    url_template: str
    #: Container env of the addon itself, given the auth secret name
    container_env: Callable[[str], List[V1EnvVar]]

    def connection_url(self, host: str, password: str) -> str:
        return self.url_template.format(host=host, port=self.port, password=password)

    def prepare_secret(
        self,
        name: str,
        secret_name: str,
        namespace: str,
        labels: Labels,
        owner_references: List[V1OwnerReference],
    ) -> V1Secret:
        """Auth secret with a freshly generated password."""
        password = secrets.token_urlsafe(24)
        return V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=V1ObjectMeta(
                name=secret_name,
                namespace=namespace,
                labels=labels.as_dict(),
                owner_references=owner_references,
            ),
            type="Opaque",
            string_data={
                PASSWORD_KEY: password,
                URL_KEY: self.connection_url(name, password),
            },
        )

    def prepare_service(
        self,
        name: str,
        namespace: str,
        labels: Labels,
        owner_references: List[V1OwnerReference],
    ) -> V1Service:
        return V1Service(
            api_version="v1",
            kind="Service",
            metadata=V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=labels.as_dict(),
                owner_references=owner_references,
            ),
            spec=V1ServiceSpec(
                selector=Labels.addon_selector(name).as_dict(),
                type="ClusterIP",
                ports=[
                    V1ServicePort(
                        name=self.kind.value,
                        port=self.port,
                        target_port=self.port,
                        protocol="TCP",
                    )
                ],
            ),
        )

    def prepare_deployment(
        self,
        name: str,
        secret_name: str,
        namespace: str,
        size: AddonSize,
        labels: Labels,
        owner_references: List[V1OwnerReference],
    ) -> V1Deployment:
        sizing = ADDON_SIZES[AddonSize(size)]
        selector = Labels.addon_selector(name)
        pod_labels = Labels(labels.as_dict()).update(selector.as_dict())
        return V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=pod_labels.as_dict(),
                owner_references=owner_references,
            ),
            spec=V1DeploymentSpec(
                replicas=1,
                selector=V1LabelSelector(match_labels=selector.as_dict()),
                template=V1PodTemplateSpec(
                    metadata=V1ObjectMeta(labels=pod_labels.as_dict()),
                    spec=V1PodSpec(
                        containers=[
                            V1Container(
                                name=self.kind.value,
                                image=self.image,
                                ports=[
                                    V1ContainerPort(
                                        container_port=self.port, protocol="TCP"
                                    )
                                ],
                                env=self.container_env(secret_name),
                                resources=V1ResourceRequirements(
                                    limits={"cpu": sizing.cpu, "memory": sizing.memory},
                                    requests={
                                        "cpu": sizing.cpu,
                                        "memory": sizing.memory,
                                    },
                                ),
                            )
                        ]
                    ),
                ),
            ),
        )

    def prepare_app_env(self, secret_name: str) -> V1EnvVar:
        """Env var handing the connection string to the app container."""
        return V1EnvVar(
            name=self.env_var,
            value_from=V1EnvVarSource(
                secret_key_ref=V1SecretKeySelector(name=secret_name, key=URL_KEY)
            ),
        )


def _secret_env(name: str, secret_name: str, key: str) -> V1EnvVar:
    return V1EnvVar(
        name=name,
        value_from=V1EnvVarSource(
            secret_key_ref=V1SecretKeySelector(name=secret_name, key=key)
        ),
    )


def _postgres_env(secret_name: str) -> List[V1EnvVar]:
    return [
        _secret_env("POSTGRES_PASSWORD", secret_name, PASSWORD_KEY),
        V1EnvVar(name="POSTGRES_DB", value="app"),
    ]


def _redis_env(secret_name: str) -> List[V1EnvVar]:
    return []


ADDON_HANDLERS: Dict[AddonKind, AddonHandler] = {
    AddonKind.POSTGRES: AddonHandler(
        kind=AddonKind.POSTGRES,
        image="postgres:15-alpine",
        port=5432,
        env_var="DATABASE_URL",
        url_template="postgresql://postgres:{password}@{host}:{port}/app",
        container_env=_postgres_env,
    ),
    AddonKind.REDIS: AddonHandler(
        kind=AddonKind.REDIS,
        image="redis:7-alpine",
        port=6379,
        env_var="REDIS_URL",
        url_template="redis://{host}:{port}",
        container_env=_redis_env,
    ),
}


def addon_handler(kind: str) -> AddonHandler:
    """Look up the handler of an addon kind, raises ValueError when unsupported."""
    try:
        return ADDON_HANDLERS[AddonKind(kind)]
    except (ValueError, KeyError):
        raise ValueError(f"Unsupported addon type: {kind}")
