"""
InMemoryPatientStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlPatientStore
  - Safe under asyncio: no await between check and write in reserve_tag
  - All data lost on process restart

Partitions are kept as JSON-ready dicts so FilePatientStore can write
them to disk unchanged.
"""
from __future__ import annotations

from typing import Optional

import structlog

from database.store_base import (
    BasePatientStore, ReservationPolicy, dedupe_snapshot, snapshot_diff, tag_id,
)
from models.schemas import (
    MessageKind, MessageReservation, ProcessedRecord, ReservationStatus,
    SnapshotDiff, WaitingEntity,
)
from utils.clock import Clock

logger = structlog.get_logger()


class InMemoryPatientStore(BasePatientStore):
    """
    Full-featured in-memory store with the same interface as SqlPatientStore.
    """

    def __init__(self, policy: Optional[ReservationPolicy] = None, clock: Optional[Clock] = None):
        self.policy = policy or ReservationPolicy()
        self.clock = clock or Clock()
        self._active: dict[str, dict] = {}       # entity_key → {"entity", "first_seen_at"}
        self._processed: list[dict] = []         # ProcessedRecord dicts, oldest first
        self._tags: dict[str, dict] = {}         # "entity_key::kind" → reservation dict
        logger.info("inmemory_store_initialized")

    # ── Snapshot partitions ───────────────────────────────

    async def apply_snapshot(self, incoming: list[WaitingEntity]) -> SnapshotDiff:
        previous = [WaitingEntity(**item["entity"]) for item in self._active.values()]
        diff = snapshot_diff(previous, incoming)
        now = self.clock.now()

        active = {}
        for e in dedupe_snapshot(incoming):
            old = self._active.get(e.key)
            active[e.key] = {
                "entity": e.model_dump(mode="json"),
                "first_seen_at": old["first_seen_at"] if old else now.isoformat(),
            }

        for e in diff.removed:
            old = self._active.get(e.key, {})
            record = ProcessedRecord(
                entity=e,
                first_seen_at=old.get("first_seen_at"),
                processed_at=now,
                tags=self.sent_kinds(self._reservations_for(e.key)),
            )
            self._processed.append(record.model_dump(mode="json"))

        self._active = active
        if not diff.is_empty:
            logger.debug("snapshot_applied", **diff.counts())
        return diff

    async def get_active(self) -> list[WaitingEntity]:
        return [WaitingEntity(**item["entity"]) for item in self._active.values()]

    async def get_processed(self, limit: int = 100) -> list[ProcessedRecord]:
        recent = self._processed[-limit:] if limit else self._processed
        return [ProcessedRecord(**item) for item in reversed(recent)]

    # ── Reservation ledger ────────────────────────────────

    def _reservation(self, entity_key: str, kind: MessageKind) -> Optional[MessageReservation]:
        data = self._tags.get(tag_id(entity_key, kind))
        return MessageReservation(**data) if data else None

    def _reservations_for(self, entity_key: str) -> list[MessageReservation]:
        return [r for r in (self._reservation(entity_key, k) for k in MessageKind) if r]

    async def has_tag(self, entity_key: str, kind: MessageKind) -> bool:
        existing = self._reservation(entity_key, kind)
        return existing is not None and self.policy.blocks(existing, self.clock.now())

    async def reserve_tag(self, entity_key: str, kind: MessageKind) -> bool:
        now = self.clock.now()
        existing = self._reservation(entity_key, kind)
        if existing is not None and self.policy.blocks(existing, now):
            return False

        reservation = MessageReservation(
            entity_key=entity_key,
            kind=kind,
            attempts=existing.attempts + 1 if existing else 1,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self._tags[tag_id(entity_key, kind)] = reservation.model_dump(mode="json")
        logger.debug("tag_reserved", entity_key=entity_key, kind=kind.value,
                     attempts=reservation.attempts)
        return True

    async def confirm_tag(self, entity_key: str, kind: MessageKind, success: bool,
                          channel_id: Optional[str] = None, error: str = "") -> bool:
        existing = self._reservation(entity_key, kind)
        if existing is None or existing.status != ReservationStatus.RESERVED:
            logger.warning("tag_confirm_without_reservation",
                           entity_key=entity_key, kind=kind.value)
            return False

        existing.status = ReservationStatus.SENT if success else ReservationStatus.FAILED
        existing.channel_id = channel_id
        existing.error = "" if success else error
        existing.updated_at = self.clock.now()
        self._tags[tag_id(entity_key, kind)] = existing.model_dump(mode="json")
        return True

    async def get_reservations(self, entity_key: str) -> list[MessageReservation]:
        return self._reservations_for(entity_key)

    # ── Housekeeping ──────────────────────────────────────

    async def clear_all(self) -> dict[str, int]:
        counts = {
            "active": len(self._active),
            "processed": len(self._processed),
            "reservations": len(self._tags),
        }
        self._active = {}
        self._processed = []
        self._tags = {}
        logger.info("store_cleared", **counts)
        return counts

    async def stats(self) -> dict[str, int]:
        statuses = [t.get("status") for t in self._tags.values()]
        return {
            "active": len(self._active),
            "processed": len(self._processed),
            "reservations": len(self._tags),
            "sent": statuses.count(ReservationStatus.SENT.value),
            "failed": statuses.count(ReservationStatus.FAILED.value),
        }
