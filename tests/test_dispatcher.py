"""
Tests for the Dispatcher cycle — end to end over the in-memory store,
mock snapshot source and mock gateway.

Flow covered:
  snapshot → diff → eligibility → reserve → send (+ fallback) → confirm
"""
import asyncio
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from backend.connector import MockSnapshotSource
from channels.gateway import MockMessageGateway
from config.source import StaticConfigSource
from core.dispatcher import STAT_KEYS, Dispatcher
from database.store_base import StorageError
from models.schemas import DispatchOutcome, MessageKind, ReservationStatus

# 17:59 in São Paulo: still business hours and inside the end-of-day window
WEDNESDAY_5_59PM = datetime(2026, 10, 14, 20, 59, tzinfo=timezone.utc)


@pytest.fixture
def source() -> MockSnapshotSource:
    return MockSnapshotSource()


@pytest.fixture
def config_source(system_config) -> StaticConfigSource:
    return StaticConfigSource(system_config)


@pytest.fixture
def make_dispatcher(memory_store, source, gateway, balancer, config_source, clock):
    def _make(**kwargs) -> Dispatcher:
        params = dict(
            store=memory_store, source=source, gateway=gateway, balancer=balancer,
            config_source=config_source, clock=clock, inter_dispatch_delay_s=0,
        )
        params.update(kwargs)
        return Dispatcher(**params)
    return _make


@pytest.fixture
def dispatcher(make_dispatcher) -> Dispatcher:
    return make_dispatcher()


class HangingGateway(MockMessageGateway):
    async def send(self, entity, template_id, channel) -> DispatchOutcome:
        await asyncio.sleep(5)
        return await super().send(entity, template_id, channel)


# ──────────────────────────────────────────────────────────────
#  Happy path
# ──────────────────────────────────────────────────────────────

class TestWaitMessages:
    @pytest.mark.asyncio
    async def test_sends_wait_message(self, dispatcher, source, gateway, memory_store,
                                      balancer, make_entity):
        entity = make_entity(wait_minutes=35)
        source.set_entities([entity])

        stats = await dispatcher.run_cycle()

        assert set(stats) == set(STAT_KEYS)
        assert stats["fetched"] == 1
        assert stats["new"] == 1
        assert stats["eligible_wait"] == 1
        assert stats["sent"] == 1
        assert gateway.sent == [{"entity": entity.key, "template_id": "card-wait",
                                 "channel": "confirmacao1", "status": "sent"}]
        [tag] = await memory_store.get_reservations(entity.key)
        assert tag.status == ReservationStatus.SENT
        assert tag.channel_id == "confirmacao1"
        assert balancer.channel_for_conversation(entity.phone).id == "confirmacao1"

    @pytest.mark.asyncio
    async def test_never_sends_twice(self, dispatcher, source, gateway, make_entity):
        source.set_entities([make_entity(wait_minutes=35)])
        await dispatcher.run_cycle()
        stats = await dispatcher.run_cycle()
        assert stats["new"] == 0
        assert stats["eligible_wait"] == 0
        assert stats["sent"] == 0
        assert len(gateway.sent) == 1

    @pytest.mark.asyncio
    async def test_vendor_id_change_does_not_resend(self, dispatcher, source, gateway, make_entity):
        entity = make_entity(wait_minutes=35, id="att-1")
        source.set_entities([entity])
        await dispatcher.run_cycle()
        source.set_entities([entity.model_copy(update={"id": "att-77", "wait_minutes": 36})])
        stats = await dispatcher.run_cycle()
        assert stats["updated"] == 1
        assert stats["sent"] == 0

    @pytest.mark.asyncio
    async def test_only_window_entities_are_sent(self, dispatcher, source, gateway, make_entity):
        source.set_entities([
            make_entity(name="Ana", phone="1", wait_minutes=12),
            make_entity(name="Bruno", phone="2", wait_minutes=30),
            make_entity(name="Carla", phone="3", wait_minutes=55),
        ])
        stats = await dispatcher.run_cycle()
        assert stats["eligible_wait"] == 1
        assert stats["sent"] == 1
        assert gateway.sent[0]["entity"].startswith("bruno|")

    @pytest.mark.asyncio
    async def test_delay_between_dispatches(self, make_dispatcher, source, make_entity):
        sleep = AsyncMock()
        dispatcher = make_dispatcher(inter_dispatch_delay_s=1.5, sleep=sleep)
        source.set_entities([
            make_entity(name="Ana", phone="1"),
            make_entity(name="Bruno", phone="2"),
            make_entity(name="Carla", phone="3"),
        ])
        stats = await dispatcher.run_cycle()
        assert stats["sent"] == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.5)

    @pytest.mark.asyncio
    async def test_shared_phone_sticks_to_one_channel(self, dispatcher, source, gateway, make_entity):
        source.set_entities([
            make_entity(name="Maria Silva", sector_name="ti", sector_id="sector-ti"),
            make_entity(name="João Silva", sector_name="oficial"),
        ])
        stats = await dispatcher.run_cycle()
        assert stats["sent"] == 2
        assert [r["channel"] for r in gateway.sent] == ["confirmacao2-ti", "confirmacao2-ti"]

    @pytest.mark.asyncio
    async def test_flow_paused_sends_nothing(self, dispatcher, source, gateway, config_source, make_entity):
        config_source.update(flow_paused=True)
        source.set_entities([make_entity()])
        stats = await dispatcher.run_cycle()
        assert stats["fetched"] == 1
        assert stats["sent"] == 0
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_excluded_sector(self, dispatcher, source, gateway, config_source, make_entity):
        config_source.update(excluded_sectors=["sector-1"])
        source.set_entities([make_entity(sector_id="sector-1")])
        assert (await dispatcher.run_cycle())["sent"] == 0


# ──────────────────────────────────────────────────────────────
#  End of day
# ──────────────────────────────────────────────────────────────

class TestEndOfDay:
    @pytest.mark.asyncio
    async def test_wait_then_end_of_day_in_one_cycle(self, dispatcher, source, gateway, clock,
                                                     memory_store, make_entity):
        clock.set(WEDNESDAY_5_59PM)
        entity = make_entity(wait_minutes=35)
        source.set_entities([entity])

        stats = await dispatcher.run_cycle()

        assert stats["eligible_wait"] == 1
        assert stats["eligible_end_of_day"] == 1
        assert stats["sent"] == 2
        assert [r["template_id"] for r in gateway.sent] == ["card-wait", "card-eod"]
        kinds = {r.kind for r in await memory_store.get_reservations(entity.key)}
        assert kinds == {MessageKind.WAIT, MessageKind.END_OF_DAY}

    @pytest.mark.asyncio
    async def test_prior_wait_message_does_not_block_end_of_day(self, dispatcher, source, gateway,
                                                                clock, make_entity):
        entity = make_entity(wait_minutes=35)
        source.set_entities([entity])
        await dispatcher.run_cycle()

        clock.set(WEDNESDAY_5_59PM)
        source.set_entities([entity.model_copy(update={"wait_minutes": 480})])
        stats = await dispatcher.run_cycle()
        assert stats["eligible_wait"] == 0
        assert stats["eligible_end_of_day"] == 1
        assert gateway.sent[-1]["template_id"] == "card-eod"

    @pytest.mark.asyncio
    async def test_end_of_day_paused(self, dispatcher, source, config_source, clock, make_entity):
        config_source.update(end_of_day_paused=True)
        clock.set(WEDNESDAY_5_59PM)
        source.set_entities([make_entity(wait_minutes=300)])
        stats = await dispatcher.run_cycle()
        assert stats["eligible_end_of_day"] == 0


# ──────────────────────────────────────────────────────────────
#  Failures
# ──────────────────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_fallback_channel_used_on_failure(self, make_dispatcher, registry, balancer,
                                                    source, memory_store, make_entity):
        gw = MockMessageGateway(failing={"confirmacao1"})
        balancer.gateway = gw
        dispatcher = make_dispatcher(gateway=gw)
        entity = make_entity()
        source.set_entities([entity])

        stats = await dispatcher.run_cycle()

        assert stats["sent"] == 1
        assert [r["channel"] for r in gw.sent] == ["confirmacao1", "confirmacao2-ti"]
        [tag] = await memory_store.get_reservations(entity.key)
        assert tag.channel_id == "confirmacao2-ti"
        assert balancer.load_state("confirmacao1").failed_messages == 1
        assert balancer.load_state("confirmacao2-ti").total_messages == 1

    @pytest.mark.asyncio
    async def test_only_one_fallback_attempt(self, make_dispatcher, balancer, source,
                                             memory_store, clock, make_entity):
        gw = MockMessageGateway(failing={"confirmacao1", "confirmacao2-ti", "anexo1-estoque"})
        balancer.gateway = gw
        dispatcher = make_dispatcher(gateway=gw)
        entity = make_entity()
        source.set_entities([entity])

        stats = await dispatcher.run_cycle()
        assert stats["failed"] == 1
        assert len(gw.sent) == 2
        [tag] = await memory_store.get_reservations(entity.key)
        assert tag.status == ReservationStatus.FAILED
        assert tag.error == "mock failure"

        # blocked inside the retry window, retried after it
        assert (await dispatcher.run_cycle())["eligible_wait"] == 0
        clock.advance(minutes=5)
        stats = await dispatcher.run_cycle()
        assert stats["eligible_wait"] == 1
        [tag] = await memory_store.get_reservations(entity.key)
        assert tag.attempts == 2

    @pytest.mark.asyncio
    async def test_no_channel_available(self, dispatcher, registry, source, memory_store, make_entity):
        for ch in registry.all():
            registry.set_active(ch.id, False)
        entity = make_entity()
        source.set_entities([entity])
        stats = await dispatcher.run_cycle()
        assert stats["failed"] == 1
        [tag] = await memory_store.get_reservations(entity.key)
        assert tag.status == ReservationStatus.FAILED
        assert "No active channel" in tag.error

    @pytest.mark.asyncio
    async def test_send_timeout_counts_as_failure(self, make_dispatcher, balancer, source, make_entity):
        gw = HangingGateway()
        balancer.gateway = gw
        dispatcher = make_dispatcher(gateway=gw, dispatch_timeout_s=0.01)
        source.set_entities([make_entity()])
        stats = await dispatcher.run_cycle()
        assert stats["failed"] == 1
        assert gw.sent == []

    @pytest.mark.asyncio
    async def test_reservation_storage_error_skips(self, dispatcher, source, gateway,
                                                   memory_store, make_entity):
        memory_store.reserve_tag = AsyncMock(side_effect=StorageError("disk full"))
        source.set_entities([make_entity()])
        stats = await dispatcher.run_cycle()
        assert stats["skipped"] == 1
        assert stats["sent"] == 0
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_confirm_storage_error_still_reports_sent(self, dispatcher, source, gateway,
                                                           memory_store, make_entity):
        memory_store.confirm_tag = AsyncMock(side_effect=StorageError("disk full"))
        entity = make_entity()
        source.set_entities([entity])
        stats = await dispatcher.run_cycle()
        assert stats["sent"] == 1
        # tag left RESERVED keeps blocking
        assert await memory_store.has_tag(entity.key, MessageKind.WAIT)

    @pytest.mark.asyncio
    async def test_snapshot_failure(self, dispatcher, source, memory_store, make_entity):
        source.set_entities([make_entity()])
        source.fail_next = True
        stats = await dispatcher.run_cycle()
        assert stats["errors"] == 1
        assert stats["sent"] == 0
        assert await memory_store.get_active() == []

    @pytest.mark.asyncio
    async def test_config_failure(self, make_dispatcher, source):
        broken = StaticConfigSource()
        broken.get_config = AsyncMock(side_effect=RuntimeError("config store down"))
        dispatcher = make_dispatcher(config_source=broken)
        stats = await dispatcher.run_cycle()
        assert stats["errors"] == 1
        assert source.calls == 0

    @pytest.mark.asyncio
    async def test_snapshot_persist_failure(self, dispatcher, source, memory_store, make_entity):
        memory_store.apply_snapshot = AsyncMock(side_effect=StorageError("disk full"))
        source.set_entities([make_entity()])
        stats = await dispatcher.run_cycle()
        assert stats["errors"] == 1
        assert stats["eligible_wait"] == 0

    @pytest.mark.asyncio
    async def test_mistyped_timezone_keeps_cycle_running(self, dispatcher, source, config_source,
                                                         make_entity):
        config = config_source.update(timezone="America/Sao_Pualo")
        assert config.timezone == "America/Sao_Paulo"
        source.set_entities([make_entity(wait_minutes=35)])
        stats = await dispatcher.run_cycle()
        assert stats["errors"] == 0
        assert stats["sent"] == 1

    @pytest.mark.asyncio
    async def test_per_entity_error_does_not_abort_cycle(self, dispatcher, source, make_entity):
        dispatcher.dispatch_one = AsyncMock(side_effect=[RuntimeError("boom"), "sent"])
        source.set_entities([make_entity(name="Ana", phone="1"), make_entity(name="Bruno", phone="2")])
        stats = await dispatcher.run_cycle()
        assert stats["errors"] == 1
        assert stats["sent"] == 1


# ──────────────────────────────────────────────────────────────
#  Lifecycle of waiting entities
# ──────────────────────────────────────────────────────────────

class TestQueueChanges:
    @pytest.mark.asyncio
    async def test_removed_entity_ends_conversation(self, dispatcher, source, balancer,
                                                    memory_store, make_entity):
        entity = make_entity()
        source.set_entities([entity])
        await dispatcher.run_cycle()
        assert balancer.conversation_stats()["total"] == 1

        source.set_entities([])
        stats = await dispatcher.run_cycle()
        assert stats["removed"] == 1
        assert balancer.conversation_stats()["total"] == 0
        [record] = await memory_store.get_processed()
        assert record.tags == [MessageKind.WAIT]

    @pytest.mark.asyncio
    async def test_daily_reset_on_new_day(self, dispatcher, source, gateway, clock, memory_store,
                                          make_entity):
        entity = make_entity()
        source.set_entities([entity])
        await dispatcher.run_cycle()

        clock.advance(days=1)
        stats = await dispatcher.run_cycle()
        assert stats["new"] == 1
        assert stats["sent"] == 1
        assert len(gateway.sent) == 2

    @pytest.mark.asyncio
    async def test_daily_reset_disabled(self, make_dispatcher, source, gateway, clock, make_entity):
        dispatcher = make_dispatcher(daily_reset_enabled=False)
        source.set_entities([make_entity()])
        await dispatcher.run_cycle()
        clock.advance(days=1)
        stats = await dispatcher.run_cycle()
        assert stats["sent"] == 0

    @pytest.mark.asyncio
    async def test_no_reset_within_same_day(self, dispatcher, source, memory_store, clock, make_entity):
        entity = make_entity()
        source.set_entities([entity])
        await dispatcher.run_cycle()
        clock.advance(hours=6)
        await dispatcher.run_cycle()
        assert len(await memory_store.get_reservations(entity.key)) == 1

    @pytest.mark.asyncio
    async def test_status(self, dispatcher, source):
        await dispatcher.run_cycle()
        status = dispatcher.status()
        assert status["cycles"] == 1
        assert status["last_cycle_at"] is not None
        assert status["last_stats"]["fetched"] == 0
