from enum import Enum


class SourceType(str, Enum):
    BRANCH = "branch"
    TAG = "tag"
    COMMIT = "commit"


class UpdateStrategyType(str, Enum):
    POLLING = "polling"
    WEBHOOK = "webhook"


class AddonKind(str, Enum):
    """Supported addon services."""

    POSTGRES = "postgres"
    REDIS = "redis"


class AddonSize(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
