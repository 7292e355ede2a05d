from .enums import SourceType, UpdateStrategyType, AddonKind, AddonSize
from .gitshipapp_resources import GitshipAppResources
from .gitshipapp_spec import (
    GitshipAppSpec,
    SourceConfig,
    PortConfig,
    ResourceConfig,
    IngressRuleConfig,
    HealthCheckConfig,
    VolumeConfig,
    UpdateStrategy,
    TLSConfig,
    SecretMountConfig,
    AddonConfig,
)

__all__ = [
    "SourceType",
    "UpdateStrategyType",
    "AddonKind",
    "AddonSize",
    "GitshipAppResources",
    "GitshipAppSpec",
    "SourceConfig",
    "PortConfig",
    "ResourceConfig",
    "IngressRuleConfig",
    "HealthCheckConfig",
    "VolumeConfig",
    "UpdateStrategy",
    "TLSConfig",
    "SecretMountConfig",
    "AddonConfig",
]
