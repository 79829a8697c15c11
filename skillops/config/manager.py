"""Process-wide access to the loaded SkillOps configuration."""

from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from typing import Any, ClassVar

from skillops.config.loader import YAMLConfigLoader
from skillops.config.models import SkillOpsConfig

logger = logging.getLogger(__name__)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        current = merged.get(key)
        merged[key] = _deep_merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


class ConfigManager:
    """Holds the current :class:`SkillOpsConfig` snapshot.

    Precedence, lowest first: model defaults, skillops.yaml, ``SKILLOPS_*``
    environment variables (nested with ``__``), runtime overrides passed to
    :meth:`load`. Snapshots are immutable; :meth:`load` swaps them atomically.
    """

    _instance: ClassVar[ConfigManager | None] = None
    _class_lock: ClassVar[Lock] = Lock()

    def __init__(self) -> None:
        self._lock = Lock()
        self._config = SkillOpsConfig()
        self._source: Path | None = None

    @classmethod
    def instance(cls) -> ConfigManager:
        if cls._instance is None:
            with cls._class_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset_for_tests(cls) -> None:
        with cls._class_lock:
            cls._instance = None

    @classmethod
    def load(
        cls,
        config_path: str | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> ConfigManager:
        """Read skillops.yaml, apply environment and ``overrides``, publish the result.

        Raises:
            ConfigLoadError: the YAML file is malformed.
            pydantic.ValidationError: the merged values are invalid.
        """
        source = YAMLConfigLoader.resolve_path(config_path)
        # Environment sources outrank init kwargs on SkillOpsConfig.
        config = SkillOpsConfig(**YAMLConfigLoader.load_dict(source))
        if overrides:
            config = SkillOpsConfig.model_validate(_deep_merge(config.model_dump(), overrides))
        manager = cls.instance()
        with manager._lock:
            manager._config = config
            manager._source = source
        logger.debug("config_loaded source=%s skills=%d", source, len(config.skills))
        return manager

    @property
    def source(self) -> Path | None:
        """Path the current snapshot was resolved from, if loaded from disk."""
        return self._source

    def get(self) -> SkillOpsConfig:
        with self._lock:
            return self._config
