"""
Tests for the vendor REST boundary: RESTMessageGateway and
RESTSnapshotSource over httpx.MockTransport, plus their mock
counterparts and factories.
"""
import json
import pytest
from unittest.mock import AsyncMock

import httpx

from backend.connector import (
    MockSnapshotSource, RESTSnapshotSource, SnapshotError, create_snapshot_source,
)
from channels.gateway import MockMessageGateway, RESTMessageGateway, create_gateway
from config.settings import GatewayConfig
from models.schemas import ChannelDefinition

BASE_URL = "https://vendor.test"


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(base_url=BASE_URL, token="gw-token")


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))


# ──────────────────────────────────────────────────────────────
#  RESTMessageGateway
# ──────────────────────────────────────────────────────────────

class TestRESTMessageGateway:
    @pytest.mark.asyncio
    async def test_send_posts_action_card(self, gateway_config, make_entity, registry):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"messageId": "m-1"})

        gw = RESTMessageGateway(gateway_config)
        gw.client = mock_client(handler)
        entity = make_entity(contact_id="contact-9")
        outcome = await gw.send(entity, "card-wait", registry.get("confirmacao1"))

        assert outcome.success
        assert outcome.channel_id == "confirmacao1"
        assert outcome.provider_response == {"messageId": "m-1"}
        [request] = seen
        assert request.method == "POST"
        assert request.url.path == "/core/v2/api/chats/send-action-card"
        assert request.headers["access-token"] == "tok-1"
        assert json.loads(request.content) == {
            "number": "+55 11 99999-0001",
            "contactId": "contact-9",
            "action_card_id": "card-wait",
            "forceSend": True,
        }
        await gw.close()

    @pytest.mark.asyncio
    async def test_channel_without_credential_uses_gateway_token(self, gateway_config, make_entity):
        tokens = []

        def handler(request: httpx.Request) -> httpx.Response:
            tokens.append(request.headers["access-token"])
            return httpx.Response(200, json={})

        gw = RESTMessageGateway(gateway_config)
        gw.client = mock_client(handler)
        await gw.send(make_entity(), "card-wait", ChannelDefinition(id="bare"))
        assert tokens == ["gw-token"]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, gateway_config, make_entity, registry):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, text="invalid contact")

        gw = RESTMessageGateway(gateway_config)
        gw.client = mock_client(handler)
        outcome = await gw.send(make_entity(), "card-wait", registry.get("confirmacao1"))

        assert not outcome.success
        assert "400" in outcome.error
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_incomplete_payload_is_rejected_locally(self, gateway_config, make_entity, registry):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("should not be called")

        gw = RESTMessageGateway(gateway_config)
        gw.client = mock_client(handler)
        outcome = await gw.send(make_entity(contact_id=""), "card-wait", registry.get("confirmacao1"))
        assert not outcome.success
        outcome = await gw.send(make_entity(), "", registry.get("confirmacao1"))
        assert not outcome.success

    @pytest.mark.asyncio
    async def test_connectivity(self, gateway_config, registry):
        status = {"code": 200}

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/core/v2/api/channel/list"
            return httpx.Response(status["code"], json=[])

        gw = RESTMessageGateway(gateway_config)
        gw.client = mock_client(handler)
        assert await gw.test_connectivity(registry.get("confirmacao1"))
        status["code"] = 401
        assert not await gw.test_connectivity(registry.get("confirmacao1"))

    @pytest.mark.asyncio
    async def test_connectivity_transport_error(self, gateway_config, registry):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        gw = RESTMessageGateway(gateway_config)
        gw.client = mock_client(handler)
        assert await gw.test_connectivity(registry.get("confirmacao1")) is False


class TestMockMessageGateway:
    @pytest.mark.asyncio
    async def test_records_sends_and_failures(self, make_entity, registry):
        gw = MockMessageGateway(failing={"confirmacao2-ti"})
        ok = await gw.send(make_entity(), "card-wait", registry.get("confirmacao1"))
        bad = await gw.send(make_entity(), "card-wait", registry.get("confirmacao2-ti"))
        assert ok.success and not bad.success
        assert len(gw.sent) == 2
        assert [r["channel"] for r in gw.delivered()] == ["confirmacao1"]

    def test_factory(self, gateway_config):
        assert isinstance(create_gateway(GatewayConfig(type="mock")), MockMessageGateway)
        assert isinstance(create_gateway(gateway_config), RESTMessageGateway)


# ──────────────────────────────────────────────────────────────
#  RESTSnapshotSource
# ──────────────────────────────────────────────────────────────

CHATS = {
    "chats": [
        {
            "attendanceId": "att-100",
            "contact": {"id": "c-1", "name": "Maria Silva", "number": "5511999990001"},
            "sectorId": "s-7",
            "channel": {"id": "inbound-1", "type": 4},
            "utcDhStartChat": "2026-10-14T12:25:00Z",
            "timeInWaiting": 2100,
        },
        {
            "attendanceId": "att-101",
            "contact": {"id": "c-2", "name": "João Souza", "number": "5511988880002"},
            "sectorId": "s-8",
            "channel": {"id": "inbound-1", "type": 99},
        },
    ]
}


class TestRESTSnapshotSource:
    @pytest.mark.asyncio
    async def test_lists_and_normalizes(self, gateway_config):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path.endswith("/sectors"):
                return httpx.Response(200, json=[{"id": "s-7", "name": "Estoque"}])
            return httpx.Response(200, json=CHATS)

        source = RESTSnapshotSource(gateway_config)
        source.client = mock_client(handler)
        entities = await source.list_waiting_entities()

        post = next(r for r in requests if r.method == "POST")
        assert post.url.path == "/core/v2/api/chats/list-lite"
        assert json.loads(post.content) == {"typeChat": 2, "status": 1}

        first, second = entities
        assert first.id == "att-100"
        assert first.contact_id == "c-1"
        assert first.sector_name == "Estoque"
        assert first.channel_type == "whatsapp_business_main"
        assert first.wait_minutes == 35
        assert first.wait_start_time is not None

        assert second.sector_name == "sector s-8"
        assert second.channel_type == "normal"
        assert second.wait_minutes is None

    @pytest.mark.asyncio
    async def test_sector_list_is_cached(self, gateway_config):
        sector_calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/sectors"):
                sector_calls.append(request)
                return httpx.Response(200, json={"data": [{"id": "s-7", "name": "Estoque"}]})
            return httpx.Response(200, json=CHATS)

        source = RESTSnapshotSource(gateway_config)
        source.client = mock_client(handler)
        await source.list_waiting_entities()
        await source.list_waiting_entities()
        assert len(sector_calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_chat_is_skipped(self, gateway_config):
        bad = {"chats": [{"attendanceId": "x", "contact": {"name": "A", "number": "1"},
                          "utcDhStartChat": "not-a-date"}] + CHATS["chats"][:1]}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/sectors"):
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=bad)

        source = RESTSnapshotSource(gateway_config)
        source.client = mock_client(handler)
        entities = await source.list_waiting_entities()
        assert [e.id for e in entities] == ["att-100"]

    @pytest.mark.asyncio
    async def test_http_failure_raises_snapshot_error(self, gateway_config):
        source = RESTSnapshotSource(gateway_config)
        source._request = AsyncMock(side_effect=httpx.ConnectError("down"))
        with pytest.raises(SnapshotError):
            await source.list_waiting_entities()

    @pytest.mark.asyncio
    async def test_empty_response(self, gateway_config):
        source = RESTSnapshotSource(gateway_config)
        source._request = AsyncMock(return_value={})
        assert await source.list_waiting_entities() == []


class TestMockSnapshotSource:
    @pytest.mark.asyncio
    async def test_fail_next_is_one_shot(self, make_entity):
        source = MockSnapshotSource([make_entity()])
        source.fail_next = True
        with pytest.raises(SnapshotError):
            await source.list_waiting_entities()
        assert len(await source.list_waiting_entities()) == 1
        assert source.calls == 2

    def test_factory(self, gateway_config):
        assert isinstance(create_snapshot_source(gateway_config), RESTSnapshotSource)
        assert isinstance(create_snapshot_source(GatewayConfig(type="rest", base_url="")), MockSnapshotSource)
