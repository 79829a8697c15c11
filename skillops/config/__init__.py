"""Unified configuration system for SkillOps."""

from skillops.config.loader import ConfigLoadError, YAMLConfigLoader
from skillops.config.manager import ConfigManager
from skillops.config.models import (
    APIConfig,
    DatabaseConfig,
    DispatcherConfig,
    EngineConfig,
    InvokerConfig,
    LedgerConfig,
    SkillConfig,
    SkillOpsConfig,
)

__all__ = [
    "APIConfig",
    "ConfigLoadError",
    "ConfigManager",
    "DatabaseConfig",
    "DispatcherConfig",
    "EngineConfig",
    "InvokerConfig",
    "LedgerConfig",
    "SkillConfig",
    "SkillOpsConfig",
    "YAMLConfigLoader",
]
