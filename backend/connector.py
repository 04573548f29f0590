"""
Snapshot Source — where the waiting queue comes from.

The dispatcher only calls list_waiting_entities(). Absence of a previously
seen entity in a later snapshot means that person has been served.

REST implementation calls the vendor chat API:
  POST {list_waiting}   {"typeChat": 2, "status": 1}
       → {"chats": [{"attendanceId", "contact": {"id", "name", "number"},
                     "sectorId", "channel": {"id", "type"},
                     "utcDhStartChat", "timeInWaiting"}, ...]}
  GET  {list_sectors}   sector id → name, cached for sector_cache_ttl_s
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import GatewayConfig, get_settings
from models.schemas import WaitingEntity

logger = structlog.get_logger()

CHANNEL_TYPES = {
    1: "whatsapp_personal",
    2: "whatsapp_business",
    3: "whatsapp_business_api",
    4: "whatsapp_business_main",
    5: "telegram",
    6: "instagram",
    7: "facebook_messenger",
    8: "sms",
    9: "email",
    10: "external_api",
}


class SnapshotError(Exception):
    """The upstream queue could not be read this cycle."""


class SnapshotSource(abc.ABC):
    """Abstract base for all upstream queue sources."""

    @abc.abstractmethod
    async def list_waiting_entities(self) -> list[WaitingEntity]:
        """Everyone currently waiting, in queue order."""
        ...

    async def close(self):
        pass

    def normalize_chat(self, chat: dict[str, Any], sector_name: str = "") -> WaitingEntity:
        """
        Convert one vendor chat into a WaitingEntity.
        Override this in vendor-specific subclasses for custom mapping.
        """
        contact = chat.get("contact") or {}
        channel = chat.get("channel") or {}
        seconds = chat.get("timeInWaiting")
        return WaitingEntity(
            id=str(chat.get("attendanceId", "")),
            contact_id=str(contact.get("id", "")),
            name=contact.get("name") or chat.get("description") or "",
            phone=str(contact.get("number", "")),
            sector_id=str(chat.get("sectorId") or ""),
            sector_name=sector_name,
            channel_id=str(channel.get("id", "")),
            channel_type=CHANNEL_TYPES.get(channel.get("type"), "normal"),
            wait_start_time=chat.get("utcDhStartChat") or None,
            wait_minutes=int(seconds) // 60 if isinstance(seconds, (int, float)) else None,
        )


class RESTSnapshotSource(SnapshotSource):
    """
    Vendor REST API snapshot source.
    Lists waiting chats and resolves sector names through a TTL cache.
    """

    def __init__(self, config: GatewayConfig = None):
        self.config = config or get_settings().gateway
        self.client: Optional[httpx.AsyncClient] = None
        self._sectors: dict[str, str] = {}
        self._sectors_loaded_at: Optional[float] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={
                    "accept": "application/json",
                    "access-token": self.config.token,
                },
                timeout=self.config.timeout_s,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10), reraise=True)
    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()

    async def _sector_name(self, sector_id: str) -> str:
        if not sector_id:
            return ""
        loaded_at = self._sectors_loaded_at
        if loaded_at is None or time.monotonic() - loaded_at > self.config.sector_cache_ttl_s:
            await self._load_sectors()
        return self._sectors.get(sector_id, f"sector {sector_id}")

    async def _load_sectors(self):
        try:
            result = await self._request("GET", "list_sectors")
        except httpx.HTTPError as e:
            logger.warning("sector_list_failed", error=str(e))
            self._sectors_loaded_at = time.monotonic()
            return
        items = result if isinstance(result, list) else result.get("data", result.get("sectors", []))
        self._sectors = {str(s.get("id")): s.get("name", "") for s in items if isinstance(s, dict)}
        self._sectors_loaded_at = time.monotonic()
        logger.debug("sector_cache_loaded", sectors=len(self._sectors))

    async def list_waiting_entities(self) -> list[WaitingEntity]:
        try:
            result = await self._request(
                "POST", "list_waiting",
                json={"typeChat": 2, "status": 1},
                headers={"Content-Type": "application/json-patch+json"},
            )
        except httpx.HTTPError as e:
            logger.error("snapshot_fetch_failed", error=str(e))
            raise SnapshotError(str(e)) from e

        chats = (result.get("chats") or []) if isinstance(result, dict) else []
        entities = []
        for chat in chats:
            try:
                sector_name = await self._sector_name(str(chat.get("sectorId") or ""))
                entities.append(self.normalize_chat(chat, sector_name))
            except (ValueError, TypeError) as e:
                logger.warning("snapshot_chat_invalid", attendance_id=chat.get("attendanceId"),
                               error=str(e))
        logger.debug("snapshot_fetched", waiting=len(entities))
        return entities

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockSnapshotSource(SnapshotSource):
    """
    Fixed queue for development and testing.
    Tests swap the queue between cycles with set_entities().
    """

    def __init__(self, entities: list[WaitingEntity] = None):
        self._entities = list(entities or [])
        self.calls = 0
        self.fail_next = False

    def set_entities(self, entities: list[WaitingEntity]):
        self._entities = list(entities)

    async def list_waiting_entities(self) -> list[WaitingEntity]:
        self.calls += 1
        if self.fail_next:
            self.fail_next = False
            raise SnapshotError("mock snapshot failure")
        return list(self._entities)


def create_snapshot_source(config: GatewayConfig = None) -> SnapshotSource:
    """Factory function to create the appropriate snapshot source."""
    config = config or get_settings().gateway
    if config.type == "rest" and config.base_url:
        return RESTSnapshotSource(config)
    logger.warning("using_mock_snapshot_source", reason="no gateway configured or base_url empty")
    return MockSnapshotSource()
