"""
Core data models for the WaitWatch system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageKind(str, Enum):
    WAIT = "wait"
    END_OF_DAY = "end_of_day"


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    SENT = "sent"
    FAILED = "failed"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


# ──────────────────────────────────────────────────────────────
#  Waiting entity: a person waiting in a tracked queue
# ──────────────────────────────────────────────────────────────

def normalize_phone(phone: str) -> str:
    """Digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


class WaitingEntity(BaseModel):
    """
    A person currently waiting in a queue, as reported by the upstream snapshot.

    `id` is the vendor's attendance id and may be reassigned between polls,
    so identity across snapshots is the normalized (name, phone, sector) key.
    """
    id: str = ""
    contact_id: str = ""                      # vendor contact id, used for sending
    name: str = ""
    phone: str = ""
    sector_id: str = ""
    sector_name: str = ""
    channel_id: str = ""                      # channel the chat arrived on
    channel_type: str = ""
    wait_start_time: Optional[datetime] = None
    wait_minutes: Optional[int] = None        # derived; None when unknown

    @property
    def key(self) -> str:
        return "|".join((
            (self.name or "").strip().lower(),
            normalize_phone(self.phone),
            (self.sector_id or "").strip(),
        ))

    def tracked_fields(self) -> dict[str, Any]:
        """Fields compared by the snapshot diff to decide "updated"."""
        return self.model_dump(mode="json")


class ProcessedRecord(BaseModel):
    """An entity that left the waiting queue, with the tags it held."""
    entity: WaitingEntity
    first_seen_at: Optional[datetime] = None
    processed_at: datetime = Field(default_factory=_utcnow)
    tags: list[MessageKind] = []


class SnapshotDiff(BaseModel):
    new: list[WaitingEntity] = []
    updated: list[WaitingEntity] = []
    removed: list[WaitingEntity] = []

    @property
    def is_empty(self) -> bool:
        return not (self.new or self.updated or self.removed)

    def counts(self) -> dict[str, int]:
        return {"new": len(self.new), "updated": len(self.updated), "removed": len(self.removed)}


# ──────────────────────────────────────────────────────────────
#  Reservation ledger
# ──────────────────────────────────────────────────────────────

class MessageReservation(BaseModel):
    """
    A durable claim that a message kind was reserved or sent for an entity.

    At most one reservation per (entity_key, kind) may be RESERVED or SENT.
    """
    entity_key: str
    kind: MessageKind
    status: ReservationStatus = ReservationStatus.RESERVED
    attempts: int = 1
    channel_id: Optional[str] = None
    error: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_blocking(self) -> bool:
        return self.status in (ReservationStatus.RESERVED, ReservationStatus.SENT)


# ──────────────────────────────────────────────────────────────
#  Channels
# ──────────────────────────────────────────────────────────────

class ChannelDefinition(BaseModel):
    """An outbound delivery path (credential + identity)."""
    id: str
    display_name: str = ""
    number: str = ""
    priority: int = 1                         # lower = preferred
    active: bool = True
    department_tags: list[str] = []
    credential: str = Field(default="", repr=False)

    @field_validator("department_tags")
    @classmethod
    def _lower_tags(cls, v: list[str]) -> list[str]:
        return [t.strip().lower() for t in v if t and t.strip()]


class ChannelLoadState(BaseModel):
    active_conversations: int = 0
    total_messages: int = 0
    failed_messages: int = 0
    last_used_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        """Percentage of successful sends; 100 when there is no history."""
        if self.total_messages <= 0:
            return 100.0
        return (self.total_messages - self.failed_messages) / self.total_messages * 100

    @property
    def failure_rate(self) -> float:
        if self.total_messages <= 0:
            return 0.0
        return self.failed_messages / self.total_messages * 100


class ConversationContext(BaseModel):
    """Pins a phone number to one channel for the life of a conversation."""
    phone: str
    channel_id: str
    started_at: datetime = Field(default_factory=_utcnow)
    last_message_at: datetime = Field(default_factory=_utcnow)
    message_count: int = 0


class ChannelHealth(BaseModel):
    channel_id: str
    status: HealthStatus
    score: int
    issues: list[str] = []
    checked_at: datetime = Field(default_factory=_utcnow)


class DispatchOutcome(BaseModel):
    success: bool
    channel_id: Optional[str] = None
    provider_response: dict[str, Any] = {}
    error: str = ""


# ──────────────────────────────────────────────────────────────
#  System config: runtime knobs read once per cycle
# ──────────────────────────────────────────────────────────────

class SystemConfig(BaseModel):
    """
    Runtime configuration snapshot. Owned by the config source; the core
    only reads it. Python weekday numbering (Monday=0 ... Sunday=6).
    """
    timezone: str = "America/Sao_Paulo"
    business_start_hour: int = Field(default=8, ge=0, le=23)
    business_end_hour: int = Field(default=18, ge=1, le=24)
    saturday_start_hour: int = Field(default=8, ge=0, le=23)
    saturday_end_hour: int = Field(default=12, ge=1, le=24)
    working_days: list[int] = [0, 1, 2, 3, 4, 5]

    min_wait_minutes: int = Field(default=30, ge=0)
    max_wait_minutes: int = Field(default=40, ge=0)
    end_of_day_tolerance_minutes: int = Field(default=1, ge=0)

    flow_paused: bool = False
    end_of_day_paused: bool = False
    excluded_sectors: list[str] = []
    excluded_channels: list[str] = []

    wait_template_id: str = ""
    end_of_day_template_id: str = ""

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {v!r}") from e
        return v

    @field_validator("working_days")
    @classmethod
    def _valid_weekdays(cls, v: list[int]) -> list[int]:
        bad = [d for d in v if d < 0 or d > 6]
        if bad:
            raise ValueError(f"working_days out of range: {bad}")
        return sorted(set(v))

    @model_validator(mode="after")
    def _check_bounds(self) -> "SystemConfig":
        if self.min_wait_minutes > self.max_wait_minutes:
            raise ValueError("min_wait_minutes must not exceed max_wait_minutes")
        if self.business_start_hour >= self.business_end_hour:
            raise ValueError("business_start_hour must be before business_end_hour")
        if self.saturday_start_hour >= self.saturday_end_hour:
            raise ValueError("saturday_start_hour must be before saturday_end_hour")
        return self

    def template_for(self, kind: MessageKind) -> str:
        if kind == MessageKind.END_OF_DAY:
            return self.end_of_day_template_id
        return self.wait_template_id

    def is_excluded(self, entity: WaitingEntity) -> bool:
        return entity.sector_id in self.excluded_sectors or entity.channel_id in self.excluded_channels
