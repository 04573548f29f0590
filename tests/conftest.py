"""Shared test fixtures for WaitWatch."""
import pytest
from datetime import datetime, timezone

from channels.balancer import LoadBalancer
from channels.base import ChannelRegistry
from channels.gateway import MockMessageGateway
from database.store_memory import InMemoryPatientStore
from models.schemas import ChannelDefinition, SystemConfig, WaitingEntity
from utils.clock import FixedClock


# Wednesday 2026-10-14, 10:00 in São Paulo (UTC-3, no DST)
WEDNESDAY_10AM = datetime(2026, 10, 14, 13, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(WEDNESDAY_10AM)


@pytest.fixture
def system_config() -> SystemConfig:
    return SystemConfig(
        wait_template_id="card-wait",
        end_of_day_template_id="card-eod",
    )


@pytest.fixture
def make_entity():
    """Build a WaitingEntity with sensible defaults; override any field."""
    counter = {"n": 0}

    def _make(name: str = "Maria Silva", phone: str = "+55 11 99999-0001",
              sector_id: str = "sector-1", wait_minutes=35, **kwargs) -> WaitingEntity:
        counter["n"] += 1
        defaults = {
            "id": f"att-{counter['n']}",
            "contact_id": f"contact-{counter['n']}",
            "sector_name": "oficial",
            "channel_id": "inbound-1",
        }
        defaults.update(kwargs)
        return WaitingEntity(name=name, phone=phone, sector_id=sector_id,
                             wait_minutes=wait_minutes, **defaults)

    return _make


@pytest.fixture
def channel_definitions() -> list[ChannelDefinition]:
    return [
        ChannelDefinition(id="confirmacao1", display_name="CONFIRMACAO 1", priority=1,
                          department_tags=["oficial"], credential="tok-1"),
        ChannelDefinition(id="confirmacao2-ti", display_name="CONFIRMACAO 2 - TI", priority=2,
                          department_tags=["ti"], credential="tok-2"),
        ChannelDefinition(id="anexo1-estoque", display_name="ANEXO 1 - ESTOQUE", priority=3,
                          department_tags=["estoque"], credential="tok-3"),
    ]


@pytest.fixture
def registry(channel_definitions) -> ChannelRegistry:
    return ChannelRegistry(channel_definitions)


@pytest.fixture
def gateway() -> MockMessageGateway:
    return MockMessageGateway()


@pytest.fixture
def balancer(registry, gateway, clock) -> LoadBalancer:
    return LoadBalancer(registry, gateway, clock=clock, max_fallback_attempts=3)


@pytest.fixture
def memory_store(clock) -> InMemoryPatientStore:
    return InMemoryPatientStore(clock=clock)
