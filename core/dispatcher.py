"""
Dispatcher — one polling cycle, end to end.

Flow:
    Config source → SystemConfig snapshot
    → Snapshot source lists everyone waiting
    → Store diffs and persists the snapshot (removed → processed)
    → Conversations of removed entities end, idle ones are evicted
    → Eligible for the wait message, then eligible for end-of-day
    → per entity: reserve tag → pick channel → send
                  → on failure, one retry on a fallback channel
                  → record outcome → confirm tag

Entities are dispatched one at a time with a delay between sends. The tag
is reserved before the send and confirmed after it, so a crash mid-send
leaves a RESERVED tag that blocks a duplicate on the next cycle.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Optional

from backend.connector import SnapshotSource
from channels.balancer import LoadBalancer
from channels.base import MessageGateway, NoChannelAvailableError
from config.source import ConfigSource
from database.store_base import BasePatientStore, StorageError, dedupe_snapshot
from models.schemas import (
    ChannelDefinition, DispatchOutcome, MessageKind, SystemConfig, WaitingEntity,
)
from rules.calendar import BusinessCalendar
from rules.engine import EligibilityEngine
from utils.clock import Clock

logger = structlog.get_logger()

STAT_KEYS = (
    "fetched", "new", "updated", "removed",
    "eligible_wait", "eligible_end_of_day",
    "sent", "failed", "skipped", "errors",
)

SENT, FAILED, SKIPPED = "sent", "failed", "skipped"


class Dispatcher:
    """
    The scheduler's cycle callback. Every collaborator is injected.

    Usage:
        dispatcher = Dispatcher(store, source, gateway, balancer, config_source)
        stats = await dispatcher.run_cycle()
    """

    def __init__(
        self,
        store: BasePatientStore,
        source: SnapshotSource,
        gateway: MessageGateway,
        balancer: LoadBalancer,
        config_source: ConfigSource,
        engine: Optional[EligibilityEngine] = None,
        clock: Optional[Clock] = None,
        inter_dispatch_delay_s: float = 1.0,
        dispatch_timeout_s: float = 30.0,
        daily_reset_enabled: bool = True,
        conversation_max_idle_hours: float = 24.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.source = source
        self.gateway = gateway
        self.balancer = balancer
        self.config_source = config_source
        self.clock = clock or Clock()
        self.engine = engine or EligibilityEngine(self.clock)
        self.inter_dispatch_delay_s = inter_dispatch_delay_s
        self.dispatch_timeout_s = dispatch_timeout_s
        self.daily_reset_enabled = daily_reset_enabled
        self.conversation_max_idle_hours = conversation_max_idle_hours
        self._sleep = sleep

        self._last_day: Optional[date] = None
        self.cycles = 0
        self.last_cycle_at: Optional[datetime] = None
        self.last_stats: dict[str, int] = {}

    # ── Cycle ─────────────────────────────────────────────

    async def run_cycle(self) -> dict[str, int]:
        """
        Single dispatch cycle.

        Returns counts: fetched/new/updated/removed, eligible_wait,
        eligible_end_of_day, sent/failed/skipped and errors.
        """
        stats = dict.fromkeys(STAT_KEYS, 0)
        self.cycles += 1
        self.last_cycle_at = self.clock.now()

        try:
            config = await self.config_source.get_config()
        except Exception as e:
            logger.error("config_fetch_failed", error=str(e))
            stats["errors"] = 1
            return self._finish(stats)

        now = self.clock.now()
        calendar = BusinessCalendar(config)
        await self._maybe_daily_reset(calendar, now)

        try:
            entities = dedupe_snapshot(await self.source.list_waiting_entities())
            stats["fetched"] = len(entities)
        except Exception as e:
            logger.error("snapshot_fetch_failed", error=str(e))
            stats["errors"] = 1
            return self._finish(stats)

        try:
            diff = await self.store.apply_snapshot(entities)
        except StorageError as e:
            logger.error("snapshot_persist_failed", error=str(e))
            stats["errors"] = 1
            return self._finish(stats)
        stats.update(diff.counts())

        for gone in diff.removed:
            self.balancer.end_conversation(gone.phone)
        self.balancer.cleanup_inactive_conversations(self.conversation_max_idle_hours)

        try:
            tags = await self.store.tag_snapshot(e.key for e in entities)
        except StorageError as e:
            logger.error("tag_snapshot_failed", error=str(e))
            stats["errors"] = 1
            return self._finish(stats)

        def lookup(entity_key: str, kind: MessageKind) -> bool:
            return kind in tags.get(entity_key, ())

        wait_set = self.engine.select_eligible(entities, config, MessageKind.WAIT, lookup, now)
        eod_set = self.engine.select_eligible(entities, config, MessageKind.END_OF_DAY, lookup, now)
        stats["eligible_wait"] = len(wait_set)
        stats["eligible_end_of_day"] = len(eod_set)

        first = True
        for kind, batch in ((MessageKind.WAIT, wait_set), (MessageKind.END_OF_DAY, eod_set)):
            for entity in batch:
                if not first and self.inter_dispatch_delay_s > 0:
                    await self._sleep(self.inter_dispatch_delay_s)
                first = False
                try:
                    result = await self.dispatch_one(entity, kind, config)
                    stats[result] += 1
                except Exception as e:
                    logger.error("dispatch_error", entity=entity.key, kind=kind.value, error=str(e))
                    stats["errors"] += 1

        return self._finish(stats)

    def _finish(self, stats: dict[str, int]) -> dict[str, int]:
        self.last_stats = stats
        if stats["sent"] or stats["failed"] or stats["errors"]:
            logger.info("dispatch_cycle_complete", **stats)
        else:
            logger.debug("dispatch_cycle_complete", **stats)
        return stats

    async def _maybe_daily_reset(self, calendar: BusinessCalendar, now: datetime) -> None:
        today = calendar.to_local(now).date()
        if self._last_day is None:
            self._last_day = today
            return
        if today == self._last_day:
            return
        self._last_day = today
        if not self.daily_reset_enabled:
            return
        try:
            cleared = await self.store.clear_all()
            logger.info("daily_reset", day=today.isoformat(), **cleared)
        except StorageError as e:
            logger.error("daily_reset_failed", day=today.isoformat(), error=str(e))

    # ── Per entity ────────────────────────────────────────

    async def dispatch_one(self, entity: WaitingEntity, kind: MessageKind,
                           config: SystemConfig) -> str:
        """Reserve, send (with one fallback), confirm. Returns sent/failed/skipped."""
        try:
            reserved = await self.store.reserve_tag(entity.key, kind)
        except StorageError as e:
            logger.warning("reservation_storage_error", entity=entity.key, kind=kind.value, error=str(e))
            return SKIPPED
        if not reserved:
            logger.debug("reservation_exists", entity=entity.key, kind=kind.value)
            return SKIPPED

        template_id = config.template_for(kind)
        channel = self.balancer.select_channel(entity)
        if channel is None:
            outcome = DispatchOutcome(success=False, error=str(NoChannelAvailableError(entity.key)))
        else:
            outcome = await self._send(entity, template_id, channel)
            self.balancer.record_outcome(channel.id, outcome.success)
            if not outcome.success:
                fallback = await self.balancer.select_fallback(channel.id)
                if fallback is not None:
                    outcome = await self._send(entity, template_id, fallback)
                    self.balancer.record_outcome(fallback.id, outcome.success)

        if outcome.success and outcome.channel_id:
            self._track_conversation(entity.phone, outcome.channel_id)

        try:
            await self.store.confirm_tag(entity.key, kind, outcome.success,
                                         channel_id=outcome.channel_id, error=outcome.error)
        except StorageError as e:
            # the tag stays RESERVED, which still blocks a resend
            logger.error("confirm_storage_error", entity=entity.key, kind=kind.value, error=str(e))

        if outcome.success:
            logger.info("dispatch_sent", entity=entity.key, kind=kind.value, channel=outcome.channel_id)
            return SENT
        logger.warning("dispatch_failed", entity=entity.key, kind=kind.value,
                       channel=outcome.channel_id, error=outcome.error)
        return FAILED

    async def _send(self, entity: WaitingEntity, template_id: str,
                    channel: ChannelDefinition) -> DispatchOutcome:
        try:
            outcome = await asyncio.wait_for(
                self.gateway.send(entity, template_id, channel),
                timeout=self.dispatch_timeout_s,
            )
        except asyncio.TimeoutError:
            return DispatchOutcome(success=False, channel_id=channel.id,
                                   error=f"timed out after {self.dispatch_timeout_s}s")
        except Exception as e:
            return DispatchOutcome(success=False, channel_id=channel.id,
                                   error=f"{type(e).__name__}: {e}")
        if outcome.channel_id is None:
            outcome.channel_id = channel.id
        return outcome

    def _track_conversation(self, phone: str, channel_id: str) -> None:
        current = self.balancer.channel_for_conversation(phone)
        if current is None or current.id != channel_id:
            self.balancer.register_conversation(phone, channel_id)
        self.balancer.touch_conversation(phone)

    # ── Introspection ─────────────────────────────────────

    def status(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_stats": self.last_stats,
        }
