"""Public API for audit runtime configuration."""

from .loader import load_settings
from .models import (
    DEFAULT_CONFIG_PATH,
    ENV_PREFIX,
    AuditBehaviorSettings,
    AuditSettings,
    AuditStoreSettings,
    EnrichmentSettings,
    LoggingSettings,
    NestedOperationSettings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ENV_PREFIX",
    "AuditBehaviorSettings",
    "AuditSettings",
    "AuditStoreSettings",
    "EnrichmentSettings",
    "LoggingSettings",
    "NestedOperationSettings",
    "load_settings",
]
