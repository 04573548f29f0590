"""
SqlPatientStore — Portable SQL persistence for PostgreSQL, MySQL, SQLite.

Reservation atomicity comes from the database, not from Python:
  - first reservation   INSERT, guarded by UNIQUE (entity_key, kind);
                        a concurrent duplicate raises IntegrityError → False
  - retry after failure UPDATE ... WHERE status='failed' AND attempts=N;
                        zero rows updated means someone else won → False

Any other SQLAlchemy error is raised as StorageError. It is never
reported as "already reserved".
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from database.models import ActiveEntityRow, MessageTagRow, ProcessedEntityRow
from database.session import (
    create_engine_for, create_session_factory, get_session, init_db, session_scope,
)
from database.store_base import (
    BasePatientStore, ReservationPolicy, StorageError, dedupe_snapshot, snapshot_diff,
)
from models.schemas import (
    MessageKind, MessageReservation, ProcessedRecord, ReservationStatus,
    SnapshotDiff, WaitingEntity,
)
from utils.clock import Clock

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json(value: Any) -> Any:
    # Handle both dict and string (SQLite may hand back JSON as text)
    return json.loads(value) if isinstance(value, str) else value


class _LostRace(Exception):
    pass


class SqlPatientStore(BasePatientStore):
    """
    Persistent patient store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.

    With no `url` it uses the global engine from database.session;
    with a `url` it owns a private engine (tests, embedded use).
    """

    def __init__(self, url: Optional[str] = None, policy: Optional[ReservationPolicy] = None,
                 clock: Optional[Clock] = None):
        self.policy = policy or ReservationPolicy()
        self.clock = clock or Clock()
        self._engine: Optional[AsyncEngine] = create_engine_for(url) if url else None
        self._factory = create_session_factory(self._engine) if self._engine else None

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._factory is None:
            async with get_session() as db:
                yield db
        else:
            async with session_scope(self._factory) as db:
                yield db

    async def init(self) -> None:
        """Create tables on this store's engine."""
        await init_db(self._engine)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # ── Snapshot partitions ────────────────────────────────

    async def apply_snapshot(self, incoming: list[WaitingEntity]) -> SnapshotDiff:
        now = self.clock.now()
        try:
            async with self._session() as db:
                rows = {r.entity_key: r for r in (await db.execute(select(ActiveEntityRow))).scalars()}
                previous = [WaitingEntity(**_json(r.data)) for r in rows.values()]
                diff = snapshot_diff(previous, incoming)

                changed = {e.key for e in diff.new} | {e.key for e in diff.updated}
                for e in dedupe_snapshot(incoming):
                    if e.key not in changed:
                        continue
                    row = rows.get(e.key)
                    if row is None:
                        db.add(ActiveEntityRow(entity_key=e.key, data=e.model_dump(mode="json"),
                                               first_seen_at=now, updated_at=now))
                    else:
                        row.data = e.model_dump(mode="json")
                        row.updated_at = now

                for e in diff.removed:
                    row = rows[e.key]
                    sent = await db.execute(
                        select(MessageTagRow.kind).where(
                            MessageTagRow.entity_key == e.key,
                            MessageTagRow.status == ReservationStatus.SENT.value,
                        )
                    )
                    db.add(ProcessedEntityRow(
                        entity_key=e.key,
                        data=e.model_dump(mode="json"),
                        tags=list(sent.scalars()),
                        first_seen_at=row.first_seen_at,
                        processed_at=now,
                    ))
                    await db.delete(row)
        except SQLAlchemyError as e:
            logger.error("sql_store_snapshot_failed", error=str(e))
            raise StorageError(f"Could not apply snapshot: {e}") from e

        if not diff.is_empty:
            logger.debug("snapshot_applied", **diff.counts())
        return diff

    async def get_active(self) -> list[WaitingEntity]:
        async with self._session() as db:
            result = await db.execute(select(ActiveEntityRow).order_by(ActiveEntityRow.first_seen_at))
            return [WaitingEntity(**_json(r.data)) for r in result.scalars()]

    async def get_processed(self, limit: int = 100) -> list[ProcessedRecord]:
        async with self._session() as db:
            stmt = select(ProcessedEntityRow).order_by(ProcessedEntityRow.processed_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [
                ProcessedRecord(
                    entity=WaitingEntity(**_json(r.data)),
                    first_seen_at=_aware(r.first_seen_at),
                    processed_at=_aware(r.processed_at),
                    tags=_json(r.tags) or [],
                )
                for r in result.scalars()
            ]

    # ── Reservation ledger ─────────────────────────────────

    async def _get_tag(self, db: AsyncSession, entity_key: str, kind: MessageKind) -> Optional[MessageTagRow]:
        stmt = select(MessageTagRow).where(
            MessageTagRow.entity_key == entity_key,
            MessageTagRow.kind == MessageKind(kind).value,
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def has_tag(self, entity_key: str, kind: MessageKind) -> bool:
        try:
            async with self._session() as db:
                row = await self._get_tag(db, entity_key, kind)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not read tag: {e}") from e
        return row is not None and self.policy.blocks(self._row_to_reservation(row), self.clock.now())

    async def reserve_tag(self, entity_key: str, kind: MessageKind) -> bool:
        now = self.clock.now()
        try:
            async with self._session() as db:
                row = await self._get_tag(db, entity_key, kind)
                if row is None:
                    db.add(MessageTagRow(entity_key=entity_key, kind=kind.value,
                                         status=ReservationStatus.RESERVED.value,
                                         attempts=1, created_at=now, updated_at=now))
                    await db.flush()
                    attempts = 1
                else:
                    if self.policy.blocks(self._row_to_reservation(row), now):
                        return False
                    attempts = row.attempts + 1
                    result = await db.execute(
                        update(MessageTagRow)
                        .where(
                            MessageTagRow.id == row.id,
                            MessageTagRow.status == ReservationStatus.FAILED.value,
                            MessageTagRow.attempts == row.attempts,
                        )
                        .values(status=ReservationStatus.RESERVED.value, attempts=attempts,
                                channel_id=None, error="", updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise _LostRace()
        except (IntegrityError, _LostRace):
            logger.info("tag_reservation_conflict", entity_key=entity_key, kind=kind.value)
            return False
        except SQLAlchemyError as e:
            logger.error("tag_reservation_failed", entity_key=entity_key, kind=kind.value, error=str(e))
            raise StorageError(f"Could not reserve tag: {e}") from e

        logger.debug("tag_reserved", entity_key=entity_key, kind=kind.value, attempts=attempts)
        return True

    async def confirm_tag(self, entity_key: str, kind: MessageKind, success: bool,
                          channel_id: Optional[str] = None, error: str = "") -> bool:
        status = ReservationStatus.SENT if success else ReservationStatus.FAILED
        try:
            async with self._session() as db:
                result = await db.execute(
                    update(MessageTagRow)
                    .where(
                        MessageTagRow.entity_key == entity_key,
                        MessageTagRow.kind == kind.value,
                        MessageTagRow.status == ReservationStatus.RESERVED.value,
                    )
                    .values(status=status.value, channel_id=channel_id,
                            error="" if success else error, updated_at=self.clock.now())
                    .execution_options(synchronize_session=False)
                )
                updated = result.rowcount
        except SQLAlchemyError as e:
            raise StorageError(f"Could not confirm tag: {e}") from e

        if updated != 1:
            logger.warning("tag_confirm_without_reservation", entity_key=entity_key, kind=kind.value)
            return False
        return True

    async def get_reservations(self, entity_key: str) -> list[MessageReservation]:
        async with self._session() as db:
            result = await db.execute(select(MessageTagRow).where(MessageTagRow.entity_key == entity_key))
            return [self._row_to_reservation(r) for r in result.scalars()]

    # ── Housekeeping ───────────────────────────────────────

    async def clear_all(self) -> dict[str, int]:
        counts = {}
        try:
            async with self._session() as db:
                for name, model in (("active", ActiveEntityRow),
                                    ("processed", ProcessedEntityRow),
                                    ("reservations", MessageTagRow)):
                    result = await db.execute(delete(model))
                    counts[name] = result.rowcount
        except SQLAlchemyError as e:
            raise StorageError(f"Could not clear store: {e}") from e
        logger.info("store_cleared", **counts)
        return counts

    async def stats(self) -> dict[str, int]:
        async with self._session() as db:
            active = await db.scalar(select(func.count()).select_from(ActiveEntityRow))
            processed = await db.scalar(select(func.count()).select_from(ProcessedEntityRow))
            by_status = dict((await db.execute(
                select(MessageTagRow.status, func.count()).group_by(MessageTagRow.status)
            )).all())
        return {
            "active": active or 0,
            "processed": processed or 0,
            "reservations": sum(by_status.values()),
            "sent": by_status.get(ReservationStatus.SENT.value, 0),
            "failed": by_status.get(ReservationStatus.FAILED.value, 0),
        }

    # ── Conversions ────────────────────────────────────────

    @staticmethod
    def _row_to_reservation(row: MessageTagRow) -> MessageReservation:
        return MessageReservation(
            entity_key=row.entity_key,
            kind=MessageKind(row.kind),
            status=ReservationStatus(row.status),
            attempts=row.attempts,
            channel_id=row.channel_id,
            error=row.error or "",
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )
