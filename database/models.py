"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB; on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - The tag ledger's UNIQUE (entity_key, kind) is what makes reserve_tag
    atomic across processes: the second INSERT fails with IntegrityError.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, DateTime, Text, Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Active snapshot
# ──────────────────────────────────────────────────────────────

class ActiveEntityRow(Base):
    __tablename__ = "patients_active"

    entity_key: Mapped[str] = mapped_column(String(512), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  History
# ──────────────────────────────────────────────────────────────

class ProcessedEntityRow(Base):
    __tablename__ = "patients_processed"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    entity_key: Mapped[str] = mapped_column(String(512), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    first_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_processed_at", "processed_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Reservation ledger
# ──────────────────────────────────────────────────────────────

class MessageTagRow(Base):
    __tablename__ = "message_tags"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    entity_key: Mapped[str] = mapped_column(String(512), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="reserved")
    attempts: Mapped[int] = mapped_column(Integer, default=1)
    channel_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("entity_key", "kind", name="uq_message_tag_entity_kind"),
        Index("ix_message_tags_status", "status"),
    )
