"""
Configuration loader for the WaitWatch system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import ValidationError

from models.schemas import ChannelDefinition, SystemConfig

logger = structlog.get_logger()


class ConfigError(Exception):
    """Raised when configuration cannot be used even after falling back to defaults."""


@dataclass
class SchedulerConfig:
    interval_ms: int = 60000
    auto_start: bool = True
    inter_dispatch_delay_s: float = 1.0     # rate limit against the vendor gateway
    dispatch_timeout_s: float = 30.0
    daily_reset_enabled: bool = True


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./waitwatch.db"     # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"              # "sql" | "memory" | "file"
    store_file_dir: str = "./data"             # directory for file backend
    retry_after_minutes: int = 5               # failed reservations block this long
    max_attempts: int = 3                      # then stay blocked for the day


@dataclass
class GatewayConfig:
    type: str = "rest"                         # "rest" | "mock"
    base_url: str = ""
    token: str = ""
    timeout_s: float = 10.0
    sector_cache_ttl_s: float = 300.0
    endpoints: dict[str, str] = field(default_factory=lambda: {
        "list_waiting": "/core/v2/api/chats/list-lite",
        "send_action_card": "/core/v2/api/chats/send-action-card",
        "list_channels": "/core/v2/api/channel/list",
        "list_sectors": "/core/v2/api/sectors",
    })


@dataclass
class BalancerConfig:
    max_fallback_attempts: int = 3
    conversation_max_idle_hours: float = 24.0
    default_department: str = "oficial"
    sector_departments: dict[str, str] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "WaitWatch"
    debug: bool = False
    system: SystemConfig = field(default_factory=SystemConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    balancer: BalancerConfig = field(default_factory=BalancerConfig)
    channels: list[ChannelDefinition] = field(default_factory=list)


_settings: Optional[Settings] = None

# (low, high, may_be_equal): pairs reset together when they disagree
_THRESHOLD_PAIRS = (
    ("min_wait_minutes", "max_wait_minutes", True),
    ("business_start_hour", "business_end_hour", False),
    ("saturday_start_hour", "saturday_end_hour", False),
)


def _inconsistent_fields(data: dict[str, Any]) -> set[str]:
    fields = SystemConfig.model_fields
    bad: set[str] = set()
    for low, high, may_be_equal in _THRESHOLD_PAIRS:
        lo = int(data.get(low, fields[low].default))
        hi = int(data.get(high, fields[high].default))
        if lo > hi or (lo == hi and not may_be_equal):
            bad.update(f for f in (low, high) if f in data)
    return bad


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def build_system_config(raw: Optional[dict[str, Any]]) -> SystemConfig:
    """
    Validate a raw `system:` block into a SystemConfig.

    Invalid fields fall back to their defaults instead of failing the load.
    The fallback is logged once per call with the offending field names.
    """
    data = dict(raw or {})
    dropped: list[str] = []
    for _ in range(len(data) + 1):
        try:
            config = SystemConfig(**data)
        except ValidationError as e:
            bad = {str(err["loc"][0]) for err in e.errors() if err.get("loc")}
            if not bad:
                # model-level check failed: thresholds disagree with each other
                bad = _inconsistent_fields(data)
            if not bad:
                raise ConfigError(f"Unusable system config: {e}") from e
            for name in bad:
                data.pop(name, None)
            dropped.extend(sorted(bad))
            continue
        if dropped:
            logger.warning("config_invalid_using_defaults", fields=dropped)
        return config
    raise ConfigError("Unusable system config")


def _build_channels(raw: list[dict[str, Any]]) -> list[ChannelDefinition]:
    channels = []
    for item in raw or []:
        try:
            channels.append(ChannelDefinition(**item))
        except ValidationError as e:
            logger.warning("channel_config_invalid", channel=item.get("id"), error=str(e))
    return channels


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "WAITWATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "system" in raw:
            settings.system = build_system_config(raw["system"])

        if "scheduler" in raw:
            sc = raw["scheduler"]
            settings.scheduler = SchedulerConfig(
                interval_ms=sc.get("interval_ms", 60000),
                auto_start=sc.get("auto_start", True),
                inter_dispatch_delay_s=sc.get("inter_dispatch_delay_s", 1.0),
                dispatch_timeout_s=sc.get("dispatch_timeout_s", 30.0),
                daily_reset_enabled=sc.get("daily_reset_enabled", True),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
                retry_after_minutes=db.get("retry_after_minutes", 5),
                max_attempts=db.get("max_attempts", 3),
            )

        if "gateway" in raw:
            gw = raw["gateway"]
            defaults = GatewayConfig()
            settings.gateway = GatewayConfig(
                type=gw.get("type", "rest"),
                base_url=gw.get("base_url", ""),
                token=gw.get("token", ""),
                timeout_s=gw.get("timeout_s", 10.0),
                sector_cache_ttl_s=gw.get("sector_cache_ttl_s", 300.0),
                endpoints={**defaults.endpoints, **gw.get("endpoints", {})},
            )

        if "balancer" in raw:
            lb = raw["balancer"]
            settings.balancer = BalancerConfig(
                max_fallback_attempts=lb.get("max_fallback_attempts", 3),
                conversation_max_idle_hours=lb.get("conversation_max_idle_hours", 24.0),
                default_department=lb.get("default_department", "oficial"),
                sector_departments=lb.get("sector_departments", {}),
            )

        settings.channels = _build_channels(raw.get("channels", []))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
