"""
Config sources — where the dispatch cycle reads its SystemConfig snapshot.

The core only ever calls get_config(). Writing configuration (pausing the
flow, editing exclusions) belongs to whoever owns the source.
"""
from __future__ import annotations

import abc
from typing import Any, Optional

import structlog

from config.settings import Settings, build_system_config, get_settings
from models.schemas import SystemConfig

logger = structlog.get_logger()


class ConfigSource(abc.ABC):
    """Supplies a SystemConfig snapshot on demand."""

    @abc.abstractmethod
    async def get_config(self) -> SystemConfig:
        ...


class StaticConfigSource(ConfigSource):
    """Holds one config in memory. Owners swap it via update()."""

    def __init__(self, config: Optional[SystemConfig] = None):
        self._config = config or SystemConfig()

    async def get_config(self) -> SystemConfig:
        return self._config

    def update(self, **changes: Any) -> SystemConfig:
        merged = {**self._config.model_dump(), **changes}
        self._config = build_system_config(merged)
        logger.info("system_config_updated", fields=sorted(changes))
        return self._config


class SettingsConfigSource(ConfigSource):
    """Reads the `system:` block of the loaded settings on every call."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings

    async def get_config(self) -> SystemConfig:
        settings = self._settings or get_settings()
        return settings.system
