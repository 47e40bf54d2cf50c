from __future__ import annotations

from flemma.errors import ConfigError

from .loader import load_config, merge_mappings
from .model import (
    LoggingSettings,
    ProviderSettings,
    SandboxSettings,
    Settings,
    ToolsSettings,
    load_settings,
)

__all__ = [
    "ConfigError",
    "LoggingSettings",
    "ProviderSettings",
    "SandboxSettings",
    "Settings",
    "ToolsSettings",
    "load_config",
    "load_settings",
    "merge_mappings",
]
