from __future__ import annotations

from .api import ApiConfig
from .metadata import DEFAULT_USER_AGENT, MetadataConfig
from .settings import AppConfig, RuntimeConfig, Settings, load_config
from .sync import OutboxConfig, ReconciliationConfig

__all__ = [
    "DEFAULT_USER_AGENT",
    "ApiConfig",
    "AppConfig",
    "MetadataConfig",
    "OutboxConfig",
    "ReconciliationConfig",
    "RuntimeConfig",
    "Settings",
    "load_config",
]
