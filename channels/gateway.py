"""
Message Gateways — concrete MessageGateway implementations.

RESTMessageGateway talks to the vendor chat API:
  POST {send_action_card}   {"number", "contactId", "action_card_id", "forceSend"}
  GET  {list_channels}      used as a cheap connectivity probe
Auth is the `access-token` header, per channel credential when the channel
has one, else the gateway token.

Transport errors and 5xx responses are retried (tenacity); 4xx are not.
Whatever still fails comes back as DispatchOutcome(success=False) so the
dispatcher can try a fallback channel.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from channels.base import GatewayError, MessageGateway
from config.settings import GatewayConfig, get_settings
from models.schemas import ChannelDefinition, DispatchOutcome, WaitingEntity

logger = structlog.get_logger()


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, GatewayError) and exc.retryable


class RESTMessageGateway(MessageGateway):
    """Vendor REST API gateway (httpx + tenacity)."""

    def __init__(self, config: GatewayConfig = None):
        self.config = config or get_settings().gateway
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"accept": "application/json"},
                timeout=self.config.timeout_s,
            )
        return self.client

    def _headers(self, channel: ChannelDefinition) -> dict[str, str]:
        return {
            "access-token": channel.credential or self.config.token,
            "Content-Type": "application/json-patch+json",
        }

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10),
           retry=retry_if_exception(_is_transient), reraise=True)
    async def _request(self, method: str, endpoint: str, channel: ChannelDefinition,
                       **kwargs) -> Any:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        response = await client.request(method, url, headers=self._headers(channel), **kwargs)
        if response.status_code >= 400:
            raise GatewayError(
                f"{method} {url} returned {response.status_code}: {response.text[:200]}",
                channel=channel.id,
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )
        return response.json() if response.content else {}

    async def send(self, entity: WaitingEntity, template_id: str,
                   channel: ChannelDefinition) -> DispatchOutcome:
        if not (entity.phone and entity.contact_id and template_id):
            logger.warning("gateway_payload_incomplete", entity=entity.key, channel=channel.id)
            return DispatchOutcome(success=False, channel_id=channel.id,
                                   error="incomplete payload: phone, contact_id and template are required")

        payload = {
            "number": entity.phone,
            "contactId": entity.contact_id,
            "action_card_id": template_id,
            "forceSend": True,
        }
        try:
            data = await self._request("POST", "send_action_card", channel, json=payload)
        except GatewayError as e:
            logger.error("gateway_send_failed", entity=entity.key, channel=channel.id,
                         status=e.status_code, error=str(e))
            return DispatchOutcome(success=False, channel_id=channel.id, error=str(e))
        except httpx.HTTPError as e:
            logger.error("gateway_send_failed", entity=entity.key, channel=channel.id, error=str(e))
            return DispatchOutcome(success=False, channel_id=channel.id,
                                   error=f"{type(e).__name__}: {e}")

        logger.info("gateway_message_sent", entity=entity.key, channel=channel.id)
        return DispatchOutcome(success=True, channel_id=channel.id,
                               provider_response=data if isinstance(data, dict) else {"data": data})

    async def test_connectivity(self, channel: ChannelDefinition) -> bool:
        try:
            client = await self._get_client()
            url = self.config.endpoints.get("list_channels", "list_channels")
            response = await client.get(url, headers=self._headers(channel))
            ok = response.status_code < 400
        except httpx.HTTPError as e:
            logger.warning("gateway_connectivity_error", channel=channel.id, error=str(e))
            return False
        if not ok:
            logger.warning("gateway_connectivity_failed", channel=channel.id,
                           status=response.status_code)
        return ok

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockMessageGateway(MessageGateway):
    """
    In-process gateway for development and testing.

    Records every send; channels listed in `failing` return a failed
    outcome and channels in `unreachable` fail the connectivity probe.
    """

    def __init__(self, failing: set[str] = None, unreachable: set[str] = None):
        self.failing: set[str] = set(failing or ())
        self.unreachable: set[str] = set(unreachable or ())
        self.sent: list[dict[str, Any]] = []
        self.probes: list[str] = []

    async def send(self, entity: WaitingEntity, template_id: str,
                   channel: ChannelDefinition) -> DispatchOutcome:
        record = {"entity": entity.key, "template_id": template_id, "channel": channel.id}
        if channel.id in self.failing:
            record["status"] = "failed"
            self.sent.append(record)
            return DispatchOutcome(success=False, channel_id=channel.id, error="mock failure")
        record["status"] = "sent"
        self.sent.append(record)
        logger.info("mock_message_sent", entity=entity.key, channel=channel.id)
        return DispatchOutcome(success=True, channel_id=channel.id,
                               provider_response={"status": "mock_sent", "id": uuid.uuid4().hex[:12]})

    async def test_connectivity(self, channel: ChannelDefinition) -> bool:
        self.probes.append(channel.id)
        return channel.id not in self.unreachable

    def delivered(self) -> list[dict[str, Any]]:
        return [r for r in self.sent if r["status"] == "sent"]


def create_gateway(config: GatewayConfig = None) -> MessageGateway:
    config = config or get_settings().gateway
    if config.type == "mock":
        logger.info("gateway_created", type="mock")
        return MockMessageGateway()
    logger.info("gateway_created", type="rest", base_url=config.base_url)
    return RESTMessageGateway(config)
