"""
FastAPI Application — process host for the dispatch scheduler.

Provides:
- Lifespan that wires the store, channels, gateway and snapshot source,
  then starts and stops the DispatchScheduler
- Read-only /health and /status endpoints for monitoring

Configuration and admin surfaces live elsewhere; nothing here writes state.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI

from backend.connector import create_snapshot_source
from channels.balancer import LoadBalancer
from channels.base import ChannelRegistry
from channels.gateway import create_gateway
from config.settings import get_settings
from config.source import SettingsConfigSource
from core.dispatcher import Dispatcher
from core.scheduler import DispatchScheduler
from database.store_factory import create_store
from rules.calendar import BusinessCalendar

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()

store = create_store({
    "store_backend": _settings_boot.database.store_backend,
    "store_file_dir": _settings_boot.database.store_file_dir,
    "retry_after_minutes": _settings_boot.database.retry_after_minutes,
    "max_attempts": _settings_boot.database.max_attempts,
})
channel_registry = ChannelRegistry(
    _settings_boot.channels,
    sector_departments=_settings_boot.balancer.sector_departments,
    default_department=_settings_boot.balancer.default_department,
)
gateway = create_gateway(_settings_boot.gateway)
snapshot_source = create_snapshot_source(_settings_boot.gateway)
balancer = LoadBalancer(
    channel_registry, gateway,
    max_fallback_attempts=_settings_boot.balancer.max_fallback_attempts,
)
config_source = SettingsConfigSource()

dispatcher = Dispatcher(
    store=store,
    source=snapshot_source,
    gateway=gateway,
    balancer=balancer,
    config_source=config_source,
    inter_dispatch_delay_s=_settings_boot.scheduler.inter_dispatch_delay_s,
    dispatch_timeout_s=_settings_boot.scheduler.dispatch_timeout_s,
    daily_reset_enabled=_settings_boot.scheduler.daily_reset_enabled,
    conversation_max_idle_hours=_settings_boot.balancer.conversation_max_idle_hours,
)
scheduler = DispatchScheduler(dispatcher.run_cycle, interval_ms=_settings_boot.scheduler.interval_ms)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        from database.session import init_db
        await init_db()

    if settings.scheduler.auto_start:
        await scheduler.start()

    logger.info("waitwatch_started",
                store=type(store).__name__,
                gateway=type(gateway).__name__,
                channels=len(channel_registry.all()))
    yield

    await scheduler.stop()
    await snapshot_source.close()
    await gateway.close()
    if settings.database.store_backend == "sql":
        from database.session import close_db
        await close_db()
    logger.info("waitwatch_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="WaitWatch",
    description="Waiting-queue notification scheduler",
    version="1.0.0",
    lifespan=lifespan,
)


# ══════════════════════════════════════════════════════════════
#  HEALTH & STATUS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy" if balancer.has_healthy_channels() else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "scheduler": scheduler.state,
        "channels": [ch.id for ch in channel_registry.active()],
        "unhealthy_channels": [h.model_dump(mode="json") for h in balancer.unhealthy_channels()],
    }


@app.get("/status")
async def status():
    config = await config_source.get_config()
    return {
        "scheduler": scheduler.status(),
        "dispatcher": dispatcher.status(),
        "store": await store.stats(),
        "time": BusinessCalendar(config).time_info(datetime.now(timezone.utc)),
        "flow_paused": config.flow_paused,
        "end_of_day_paused": config.end_of_day_paused,
        "channels": balancer.load_stats(),
        "conversations": balancer.conversation_stats(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
