from .gitshipapp_spec import (
    GitshipAppSpecSchema,
    SourceConfigSchema,
    PortConfigSchema,
    ResourceConfigSchema,
    IngressRuleConfigSchema,
    HealthCheckConfigSchema,
    VolumeConfigSchema,
    UpdateStrategySchema,
    TLSConfigSchema,
    SecretMountConfigSchema,
    AddonConfigSchema,
)
