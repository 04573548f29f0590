"""
Channels — base infrastructure shared by every delivery path.

Provides:
- ChannelError / GatewayError: structured error hierarchy
- MessageGateway: abstract vendor boundary (send + connectivity probe)
- ChannelRegistry: channel definitions, department lookup, active filtering

A channel here is a configured outbound identity (number + credential) on
one vendor gateway, not a transport type. Several channels share one
gateway and are chosen between by the LoadBalancer.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Iterable, Optional

from models.schemas import ChannelDefinition, DispatchOutcome, WaitingEntity

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class GatewayError(ChannelError):
    """The vendor gateway rejected or failed a request."""

    def __init__(self, message: str, channel: str = "", status_code: Optional[int] = None,
                 retryable: bool = True):
        self.status_code = status_code
        super().__init__(message, channel, retryable=retryable)


class NoChannelAvailableError(ChannelError):
    def __init__(self, entity_key: str = ""):
        super().__init__(f"No active channel available for {entity_key or 'entity'}", retryable=True)


# ══════════════════════════════════════════════════════════════
#  MESSAGE GATEWAY
# ══════════════════════════════════════════════════════════════

class MessageGateway(abc.ABC):
    """
    The vendor messaging API, as seen by the dispatcher.

    send() reports delivery problems in the returned DispatchOutcome; it
    raises only for failures it cannot classify. test_connectivity() must
    never raise.
    """

    @abc.abstractmethod
    async def send(self, entity: WaitingEntity, template_id: str,
                   channel: ChannelDefinition) -> DispatchOutcome:
        ...

    @abc.abstractmethod
    async def test_connectivity(self, channel: ChannelDefinition) -> bool:
        ...

    async def close(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

# Known departments map to themselves; anything else goes to the default.
DEFAULT_SECTOR_DEPARTMENTS = {
    "estoque": "estoque",
    "ti": "ti",
    "oficial": "oficial",
    "confirmacao": "confirmacao",
    "carla": "carla",
}


class ChannelRegistry:
    """Channel definitions in declaration order, plus sector→department routing."""

    def __init__(self, channels: Iterable[ChannelDefinition] = (),
                 sector_departments: Optional[dict[str, str]] = None,
                 default_department: str = "oficial"):
        self._channels: dict[str, ChannelDefinition] = {}
        self.default_department = default_department.lower()
        self._sector_departments = {
            **DEFAULT_SECTOR_DEPARTMENTS,
            **{k.strip().lower(): v.strip().lower() for k, v in (sector_departments or {}).items()},
        }
        self.load(channels)

    def load(self, channels: Iterable[ChannelDefinition]) -> None:
        """Replace all definitions. Duplicate ids keep the first declaration."""
        self._channels = {}
        for ch in channels:
            if ch.id in self._channels:
                logger.warning("channel_duplicate_id", channel=ch.id)
                continue
            self._channels[ch.id] = ch
        logger.info("channels_loaded", total=len(self._channels), active=len(self.active()))

    def get(self, channel_id: str) -> Optional[ChannelDefinition]:
        return self._channels.get(channel_id)

    def all(self) -> list[ChannelDefinition]:
        return list(self._channels.values())

    def active(self) -> list[ChannelDefinition]:
        return [ch for ch in self._channels.values() if ch.active]

    def by_department(self, tag: str) -> list[ChannelDefinition]:
        tag = (tag or "").lower()
        return [ch for ch in self.active() if tag in ch.department_tags]

    def set_active(self, channel_id: str, active: bool) -> bool:
        ch = self._channels.get(channel_id)
        if ch is None:
            return False
        self._channels[channel_id] = ch.model_copy(update={"active": active})
        logger.info("channel_active_changed", channel=channel_id, active=active)
        return True

    def department_for(self, entity: WaitingEntity) -> str:
        """Department for an entity's sector, by sector name then sector id."""
        for candidate in (entity.sector_name, entity.sector_id):
            dept = self._sector_departments.get((candidate or "").strip().lower())
            if dept:
                return dept
        return self.default_department

    def summary(self) -> list[dict[str, Any]]:
        return [
            {
                "id": ch.id, "name": ch.display_name, "active": ch.active,
                "priority": ch.priority, "departments": ch.department_tags,
            }
            for ch in self._channels.values()
        ]
