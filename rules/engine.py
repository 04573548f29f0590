"""
Eligibility Engine — decides who gets which message this cycle.

Two predicates over (entity, config, tag lookup):

  wait message        min_wait <= waited <= max_wait, flow running,
                      business hours on a working day, not excluded,
                      no `wait` tag yet.
  end-of-day message  inside the end-of-day window on a working day,
                      end-of-day not paused, not excluded,
                      no `end_of_day` tag yet.

The end-of-day predicate deliberately ignores the `wait` tag: everyone still
waiting at the cutoff gets the end-of-shift notice, including people who
already received the wait message.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, Optional

import structlog

from models.schemas import MessageKind, SystemConfig, WaitingEntity
from rules.calendar import BusinessCalendar
from utils.clock import Clock

logger = structlog.get_logger()

TagLookup = Callable[[str, MessageKind], bool]


def no_tags(entity_key: str, kind: MessageKind) -> bool:
    return False


class EligibilityEngine:
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()

    def wait_minutes(self, entity: WaitingEntity, calendar: BusinessCalendar,
                     now: Optional[datetime] = None) -> Optional[int]:
        """Reported wait, or minutes since wait_start_time; None if neither is known."""
        if entity.wait_minutes is not None:
            return entity.wait_minutes
        if entity.wait_start_time is None:
            return None
        return calendar.minutes_elapsed(entity.wait_start_time, now or self.clock.now())

    def eligible_for_wait_message(
        self,
        entity: WaitingEntity,
        config: SystemConfig,
        tag_lookup: TagLookup = no_tags,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or self.clock.now()
        calendar = BusinessCalendar(config)

        waited = self.wait_minutes(entity, calendar, now)
        if waited is None or waited < 0:
            return False
        if not (config.min_wait_minutes <= waited <= config.max_wait_minutes):
            return False
        if config.flow_paused:
            return False
        if not calendar.is_working_day(now) or not calendar.is_business_hours(now):
            return False
        if config.is_excluded(entity):
            return False
        return not tag_lookup(entity.key, MessageKind.WAIT)

    def eligible_for_end_of_day_message(
        self,
        entity: WaitingEntity,
        config: SystemConfig,
        tag_lookup: TagLookup = no_tags,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or self.clock.now()
        calendar = BusinessCalendar(config)

        if not calendar.is_end_of_day_window(now, config.end_of_day_tolerance_minutes):
            return False
        if not calendar.is_working_day(now):
            return False
        if config.end_of_day_paused:
            return False
        if config.is_excluded(entity):
            return False
        return not tag_lookup(entity.key, MessageKind.END_OF_DAY)

    def is_eligible(self, kind: MessageKind, entity: WaitingEntity, config: SystemConfig,
                    tag_lookup: TagLookup = no_tags, now: Optional[datetime] = None) -> bool:
        if kind == MessageKind.END_OF_DAY:
            return self.eligible_for_end_of_day_message(entity, config, tag_lookup, now)
        return self.eligible_for_wait_message(entity, config, tag_lookup, now)

    def select_eligible(
        self,
        entities: Iterable[WaitingEntity],
        config: SystemConfig,
        kind: MessageKind,
        tag_lookup: TagLookup = no_tags,
        now: Optional[datetime] = None,
    ) -> list[WaitingEntity]:
        """Eligible entities for one message kind, in snapshot order."""
        now = now or self.clock.now()
        selected = [e for e in entities if self.is_eligible(kind, e, config, tag_lookup, now)]
        logger.debug("eligibility_evaluated", kind=kind.value, eligible=len(selected))
        return selected
