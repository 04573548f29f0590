"""
Load Balancer — picks the outbound channel for each dispatch.

Selection order:
  1. Sticky routing: a phone with a live conversation keeps its channel
     while that channel is active. A context pointing at an inactive or
     unknown channel is dropped.
  2. Department affinity: active channels tagged with the entity's
     department; if none, every active channel.
  3. Scoring (lower wins, ties go to declaration order):
       0.4 * active_conversations
     + 0.3 * priority
     + 0.2 * (100 - success_rate)      0 for channels with no history
     + 0.1 * recency                   max(0, 24 - hours since last use)

Health (0..100, higher is better) starts at 100 and loses:
  50 if inactive, min(30, failure%) above 20% failures,
  min(20, idle_hours/24*10) past 24h idle, min(25, active/2) past 50 active.
Bands: <30 critical, <60 warning, <80 degraded, else healthy.

Load and conversation maps are only mutated from inside a dispatch cycle.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from channels.base import ChannelRegistry, MessageGateway
from models.schemas import (
    ChannelDefinition, ChannelHealth, ChannelLoadState, ConversationContext,
    HealthStatus, WaitingEntity, normalize_phone,
)
from utils.clock import Clock

logger = structlog.get_logger()

FALLBACK_HEALTH = (HealthStatus.HEALTHY, HealthStatus.DEGRADED)


class LoadBalancer:
    def __init__(self, registry: ChannelRegistry, gateway: Optional[MessageGateway] = None,
                 clock: Optional[Clock] = None, max_fallback_attempts: int = 3):
        self.registry = registry
        self.gateway = gateway
        self.clock = clock or Clock()
        self.max_fallback_attempts = max_fallback_attempts
        self._load: dict[str, ChannelLoadState] = {}
        self._conversations: dict[str, ConversationContext] = {}

    def load_state(self, channel_id: str) -> ChannelLoadState:
        if channel_id not in self._load:
            self._load[channel_id] = ChannelLoadState()
        return self._load[channel_id]

    def _hours_since(self, at: Optional[datetime]) -> Optional[float]:
        if at is None:
            return None
        return (self.clock.now() - at).total_seconds() / 3600

    # ── Scoring ───────────────────────────────────────────

    def score(self, channel: ChannelDefinition) -> float:
        load = self.load_state(channel.id)
        success_term = 0.0 if load.total_messages <= 0 else 100 - load.success_rate
        hours = self._hours_since(load.last_used_at)
        recency = 0.0 if hours is None else max(0.0, 24 - hours)
        return (
            0.4 * load.active_conversations
            + 0.3 * channel.priority
            + 0.2 * success_term
            + 0.1 * recency
        )

    def _best(self, candidates: list[ChannelDefinition]) -> Optional[ChannelDefinition]:
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0]
        # min() keeps the first of equal scores, i.e. declaration order
        return min(candidates, key=self.score)

    # ── Selection ─────────────────────────────────────────

    def channel_for_conversation(self, phone: str) -> Optional[ChannelDefinition]:
        phone = normalize_phone(phone)
        ctx = self._conversations.get(phone)
        if ctx is None:
            return None
        channel = self.registry.get(ctx.channel_id)
        if channel is None or not channel.active:
            logger.info("conversation_context_dropped", phone=phone, channel=ctx.channel_id)
            self._drop_conversation(phone)
            return None
        return channel

    def select_channel(self, entity: WaitingEntity) -> Optional[ChannelDefinition]:
        sticky = self.channel_for_conversation(entity.phone)
        if sticky is not None:
            return sticky

        department = self.registry.department_for(entity)
        candidates = self.registry.by_department(department) or self.registry.active()
        channel = self._best(candidates)
        if channel is None:
            logger.warning("no_active_channel", entity=entity.key)
        else:
            logger.debug("channel_selected", entity=entity.key, channel=channel.id,
                         department=department)
        return channel

    async def select_fallback(self, exclude_channel_id: str,
                              excluded: Optional[Iterable[str]] = None) -> Optional[ChannelDefinition]:
        """
        Best healthy/degraded active channel other than the failed one.

        Each pick is probed with the gateway; a channel that fails the probe
        is excluded and the search continues, at most max_fallback_attempts
        times. Returns None when no candidate is left.
        """
        skip = {exclude_channel_id, *(excluded or ())}
        for attempt in range(1, self.max_fallback_attempts + 1):
            candidates = [
                ch for ch in self.registry.active()
                if ch.id not in skip and self.channel_health(ch.id).status in FALLBACK_HEALTH
            ]
            channel = self._best(candidates)
            if channel is None:
                break
            if self.gateway is None or await self.gateway.test_connectivity(channel):
                logger.info("fallback_selected", failed=exclude_channel_id,
                            channel=channel.id, attempt=attempt)
                return channel
            logger.warning("fallback_connectivity_failed", channel=channel.id, attempt=attempt)
            skip.add(channel.id)

        logger.warning("fallback_exhausted", failed=exclude_channel_id, tried=sorted(skip))
        return None

    # ── Health ────────────────────────────────────────────

    def channel_health(self, channel_id: str) -> ChannelHealth:
        channel = self.registry.get(channel_id)
        if channel is None:
            return ChannelHealth(channel_id=channel_id, status=HealthStatus.UNKNOWN, score=0,
                                 issues=["channel not found"])

        load = self.load_state(channel_id)
        issues: list[str] = []
        score = 100.0

        if not channel.active:
            issues.append("channel inactive")
            score -= 50

        if load.total_messages > 0 and load.failure_rate > 20:
            issues.append(f"high failure rate: {load.failure_rate:.1f}%")
            score -= min(30, load.failure_rate)

        idle = self._hours_since(load.last_used_at)
        if idle is not None and idle > 24:
            issues.append(f"idle for {round(idle)} hours")
            score -= min(20, idle / 24 * 10)

        if load.active_conversations > 50:
            issues.append(f"overloaded: {load.active_conversations} active conversations")
            score -= min(25, load.active_conversations / 2)

        if score < 30:
            status = HealthStatus.CRITICAL
        elif score < 60:
            status = HealthStatus.WARNING
        elif score < 80:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return ChannelHealth(channel_id=channel_id, status=status,
                             score=max(0, round(score)), issues=issues,
                             checked_at=self.clock.now())

    def unhealthy_channels(self) -> list[ChannelHealth]:
        return [
            h for h in (self.channel_health(ch.id) for ch in self.registry.all())
            if h.status != HealthStatus.HEALTHY
        ]

    def has_healthy_channels(self) -> bool:
        return any(
            self.channel_health(ch.id).status in FALLBACK_HEALTH
            for ch in self.registry.active()
        )

    # ── Conversations ─────────────────────────────────────

    def register_conversation(self, phone: str, channel_id: str) -> Optional[ConversationContext]:
        if self.registry.get(channel_id) is None:
            logger.warning("conversation_unknown_channel", channel=channel_id)
            return None
        phone = normalize_phone(phone)
        previous = self._conversations.get(phone)
        if previous is not None:
            self._drop_conversation(phone)

        now = self.clock.now()
        ctx = ConversationContext(phone=phone, channel_id=channel_id,
                                  started_at=now, last_message_at=now)
        self._conversations[phone] = ctx
        load = self.load_state(channel_id)
        load.active_conversations += 1
        load.last_used_at = now
        logger.debug("conversation_registered", phone=phone, channel=channel_id)
        return ctx

    def touch_conversation(self, phone: str) -> None:
        ctx = self._conversations.get(normalize_phone(phone))
        if ctx is not None:
            ctx.last_message_at = self.clock.now()
            ctx.message_count += 1

    def end_conversation(self, phone: str) -> bool:
        phone = normalize_phone(phone)
        if phone not in self._conversations:
            return False
        self._drop_conversation(phone)
        logger.debug("conversation_ended", phone=phone)
        return True

    def _drop_conversation(self, phone: str) -> None:
        ctx = self._conversations.pop(phone, None)
        if ctx is None:
            return
        load = self.load_state(ctx.channel_id)
        if load.active_conversations > 0:
            load.active_conversations -= 1

    def cleanup_inactive_conversations(self, max_idle_hours: float = 24.0) -> int:
        cutoff = self.clock.now() - timedelta(hours=max_idle_hours)
        stale = [p for p, ctx in self._conversations.items() if ctx.last_message_at < cutoff]
        for phone in stale:
            self._drop_conversation(phone)
        if stale:
            logger.info("conversations_cleaned", removed=len(stale))
        return len(stale)

    # ── Outcomes ──────────────────────────────────────────

    def record_outcome(self, channel_id: str, success: bool) -> None:
        load = self.load_state(channel_id)
        load.total_messages += 1
        if not success:
            load.failed_messages += 1
        load.last_used_at = self.clock.now()

    # ── Stats ─────────────────────────────────────────────

    def load_stats(self) -> dict[str, dict[str, Any]]:
        stats = {}
        for ch in self.registry.all():
            load = self.load_state(ch.id)
            stats[ch.id] = {
                "name": ch.display_name,
                "number": ch.number,
                "departments": ch.department_tags,
                "active_conversations": load.active_conversations,
                "total_messages": load.total_messages,
                "failed_messages": load.failed_messages,
                "last_used_at": load.last_used_at.isoformat() if load.last_used_at else None,
                "success_rate": round(load.success_rate, 2),
                "health": self.channel_health(ch.id).model_dump(mode="json"),
            }
        return stats

    def conversation_stats(self) -> dict[str, Any]:
        by_channel: dict[str, int] = {}
        for ctx in self._conversations.values():
            by_channel[ctx.channel_id] = by_channel.get(ctx.channel_id, 0) + 1
        return {"total": len(self._conversations), "by_channel": by_channel}
