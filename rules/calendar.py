"""
Business Calendar — answers "is it business time?" in one civil timezone.

Every instant is converted to the configured timezone before any comparison,
so host timezone and daylight-saving shifts cannot move the window.

Order of checks matters: a non-working day is never business hours,
whatever the clock says.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from models.schemas import SystemConfig

SATURDAY = 5


class BusinessCalendar:
    def __init__(self, config: Optional[SystemConfig] = None):
        self.config = config or SystemConfig()
        self.tz = ZoneInfo(self.config.timezone)

    def to_local(self, at: datetime) -> datetime:
        """Convert to the civil timezone. Naive datetimes are taken as UTC."""
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        return at.astimezone(self.tz)

    # ── Day / window ──────────────────────────────────────────

    def is_working_day(self, now: datetime) -> bool:
        return self.to_local(now).weekday() in self.config.working_days

    def business_window(self, now: datetime) -> tuple[int, int]:
        if self.to_local(now).weekday() == SATURDAY:
            return self.config.saturday_start_hour, self.config.saturday_end_hour
        return self.config.business_start_hour, self.config.business_end_hour

    def window_end(self, now: datetime) -> datetime:
        local = self.to_local(now)
        _, end_hour = self.business_window(local)
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight + timedelta(hours=end_hour)

    def is_business_hours(self, now: datetime) -> bool:
        if not self.is_working_day(now):
            return False
        local = self.to_local(now)
        start, end = self.business_window(local)
        return start <= local.hour < end

    def is_end_of_day_window(self, now: datetime, tolerance_minutes: Optional[int] = None) -> bool:
        if tolerance_minutes is None:
            tolerance_minutes = self.config.end_of_day_tolerance_minutes
        local = self.to_local(now)
        diff = abs((local - self.window_end(local)).total_seconds()) / 60
        return diff <= tolerance_minutes

    # ── Durations ─────────────────────────────────────────────

    def minutes_elapsed(self, start: datetime, now: datetime) -> int:
        """Whole minutes from start to now (negative if start is in the future)."""
        # subtract in UTC; same-zone aware subtraction ignores DST offsets
        delta = self.to_local(now).astimezone(timezone.utc) - self.to_local(start).astimezone(timezone.utc)
        return math.floor(delta.total_seconds() / 60)

    def next_end_of_day(self, now: datetime) -> datetime:
        """Next window end on a working day, strictly after now."""
        origin = self.to_local(now)
        day = origin
        for _ in range(8):
            candidate = self.window_end(day)
            if candidate > origin and self.is_working_day(day):
                return candidate
            day = (day + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return candidate

    def time_info(self, now: datetime) -> dict[str, Any]:
        local = self.to_local(now)
        return {
            "now": local.isoformat(),
            "timezone": self.config.timezone,
            "is_working_day": self.is_working_day(local),
            "is_business_hours": self.is_business_hours(local),
            "is_end_of_day_window": self.is_end_of_day_window(local),
            "business_window": list(self.business_window(local)),
            "next_end_of_day": self.next_end_of_day(local).isoformat(),
        }
