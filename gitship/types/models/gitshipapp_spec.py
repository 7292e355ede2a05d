from typing import Dict, List, Optional
from gitship.types.base import BaseModel


class SourceConfig(BaseModel):
    """Revision selector: branch, tag or fixed commit."""

    type: str
    value: str


class PortConfig(BaseModel):
    name: Optional[str]
    port: int
    target_port: int
    protocol: str


class ResourceConfig(BaseModel):
    """Container limits, requests are derived from them."""

    cpu: str
    memory: str
    storage: str


class IngressRuleConfig(BaseModel):
    host: str
    path: str
    service_port: int
    tls: bool


class HealthCheckConfig(BaseModel):
    path: Optional[str]
    port: int
    initial_delay: int
    timeout: int


class VolumeConfig(BaseModel):
    name: str
    mount_path: str
    size: str
    storage_class: Optional[str]


class UpdateStrategy(BaseModel):
    type: str
    interval: Optional[str]


class TLSConfig(BaseModel):
    issuer: Optional[str]


class SecretMountConfig(BaseModel):
    secret_name: str
    mount_path: str


class AddonConfig(BaseModel):
    type: str
    name: str
    size: str


class GitshipAppSpec(BaseModel):
    """GitshipApp CRD spec"""

    repo_url: str
    source: SourceConfig
    auth_method: str
    ssh_key_secret_ref: Optional[str]
    token_secret_ref: Optional[str]
    registry_secret_ref: Optional[str]
    image_name: str
    ports: List[PortConfig]
    env: Dict[str, str]
    resources: ResourceConfig
    replicas: int
    ingresses: List[IngressRuleConfig]
    health_check: HealthCheckConfig
    volumes: List[VolumeConfig]
    update_strategy: UpdateStrategy
    tls: TLSConfig
    secret_refs: List[str]
    secret_mounts: List[SecretMountConfig]
    addons: List[AddonConfig]
