"""
Abstract Patient State Store — Interface for all storage backends.

Implementations:
  - SqlPatientStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryPatientStore (dict-based, single-process, no persistence)
  - FilePatientStore     (JSON files on disk, single-process, durable)

Partitions:
  active      entities in the latest upstream snapshot, keyed by identity
  processed   entities that left the queue (history)
  tags        reservation ledger, one row per (entity_key, kind)

reserve_tag() is the only operation allowed to race. It must be durable
before it returns True, and it never reports a storage failure as "already
sent": failures raise StorageError and the caller skips the dispatch.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from models.schemas import (
    MessageKind, MessageReservation, ProcessedRecord, ReservationStatus,
    SnapshotDiff, WaitingEntity,
)


class StorageError(Exception):
    """Persistence failed. A reservation that raised this was NOT made."""


@dataclass
class ReservationPolicy:
    """
    What a failed reservation means for the next cycle.

    A FAILED tag blocks its kind for `retry_after_minutes`, then the kind can
    be reserved again, up to `max_attempts` total attempts. RESERVED and SENT
    always block; a RESERVED tag left behind by a crash is never retried.
    """
    retry_after_minutes: int = 5
    max_attempts: int = 3

    def blocks(self, reservation: MessageReservation, now: datetime) -> bool:
        if reservation.is_blocking:
            return True
        if reservation.attempts >= self.max_attempts:
            return True
        updated = reservation.updated_at
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return now - updated < timedelta(minutes=self.retry_after_minutes)


def tag_id(entity_key: str, kind: MessageKind) -> str:
    return f"{entity_key}::{MessageKind(kind).value}"


def snapshot_diff(previous: Iterable[WaitingEntity], incoming: Iterable[WaitingEntity]) -> SnapshotDiff:
    """
    Compare two snapshots by identity key.

    `updated` holds only entities whose fields changed, so diffing a snapshot
    against itself is empty. Duplicate keys in `incoming` keep the first one.
    """
    prev_map: dict[str, WaitingEntity] = {}
    for e in previous:
        prev_map.setdefault(e.key, e)

    seen: set[str] = set()
    diff = SnapshotDiff()
    for e in incoming:
        if e.key in seen:
            continue
        seen.add(e.key)
        old = prev_map.get(e.key)
        if old is None:
            diff.new.append(e)
        elif old.tracked_fields() != e.tracked_fields():
            diff.updated.append(e)

    diff.removed = [e for k, e in prev_map.items() if k not in seen]
    return diff


def dedupe_snapshot(incoming: Iterable[WaitingEntity]) -> list[WaitingEntity]:
    seen: set[str] = set()
    out = []
    for e in incoming:
        if e.key not in seen:
            seen.add(e.key)
            out.append(e)
    return out


class BasePatientStore(ABC):
    """Interface that all patient state backends must implement."""

    policy: ReservationPolicy

    # ── Snapshot partitions ───────────────────────────────────

    @abstractmethod
    async def apply_snapshot(self, incoming: list[WaitingEntity]) -> SnapshotDiff:
        """Diff against the active partition, persist, move removed to processed."""
        ...

    @abstractmethod
    async def get_active(self) -> list[WaitingEntity]:
        ...

    @abstractmethod
    async def get_processed(self, limit: int = 100) -> list[ProcessedRecord]:
        ...

    # ── Reservation ledger ────────────────────────────────────

    @abstractmethod
    async def has_tag(self, entity_key: str, kind: MessageKind) -> bool:
        ...

    @abstractmethod
    async def reserve_tag(self, entity_key: str, kind: MessageKind) -> bool:
        ...

    @abstractmethod
    async def confirm_tag(self, entity_key: str, kind: MessageKind, success: bool,
                          channel_id: Optional[str] = None, error: str = "") -> bool:
        ...

    @abstractmethod
    async def get_reservations(self, entity_key: str) -> list[MessageReservation]:
        ...

    async def tag_snapshot(self, entity_keys: Iterable[str]) -> dict[str, set[MessageKind]]:
        """Blocking tags for many entities at once, for the eligibility lookup."""
        result: dict[str, set[MessageKind]] = {}
        for key in entity_keys:
            kinds = {kind for kind in MessageKind if await self.has_tag(key, kind)}
            if kinds:
                result[key] = kinds
        return result

    # ── Housekeeping ──────────────────────────────────────────

    @abstractmethod
    async def clear_all(self) -> dict[str, int]:
        """Empty every partition (daily reset). Returns the counts removed."""
        ...

    @abstractmethod
    async def stats(self) -> dict[str, int]:
        ...

    @staticmethod
    def sent_kinds(reservations: Iterable[MessageReservation]) -> list[MessageKind]:
        return [r.kind for r in reservations if r.status == ReservationStatus.SENT]
