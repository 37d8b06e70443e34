import os
from datetime import datetime
from unittest import mock

import pytest

from fleet_maintenance.models import StockItem, Technician
from fleet_maintenance.stock import StockLedger
from fleet_maintenance.store import InMemoryBackend
from fleet_maintenance.sync import FleetStore

FIXED_NOW = datetime(2024, 3, 15, 9, 30)


class FakeClock:
    """Callable clock returning a settable time."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def store(backend):
    fleet_store = FleetStore(backend, writer_id="test-client")
    yield fleet_store
    fleet_store.close()


@pytest.fixture
def ledger(store, clock):
    return StockLedger(store, actor="tester", now=clock)


@pytest.fixture
def fungible_item():
    return StockItem(
        id="STK-FUNG", code="SCRAP-FE", name="Scrap iron", category="Used items",
        quantity=0, unit="kg", is_fungible_used_item=True,
    )


@pytest.fixture
def brake_pad():
    return StockItem(
        id="STK-BRAKE", code="BRK-001", name="Brake pad", category="Brakes",
        quantity=20, unit="set", min_stock=5, price=850.0, storage_location="Shelf A1",
    )


@pytest.fixture
def seeded_store(store, fungible_item, brake_pad):
    store.stock.set([fungible_item, brake_pad])
    store.technicians.set([
        Technician(id="T1", name="Somchai"),
        Technician(id="T2", name="Anan"),
    ])
    return store


@pytest.fixture
def no_dotenv():
    """Keep a developer's .env file out of configuration tests."""
    with mock.patch('fleet_maintenance.config.load_dotenv') as mocked:
        yield mocked


@pytest.fixture
def json_store_env(tmp_path, no_dotenv):
    env = {
        "FLEET_STORE_BACKEND": "json",
        "FLEET_STORE_PATH": str(tmp_path / "store.json"),
        "FLEET_ACTOR": "cli-user",
    }
    with mock.patch.dict(os.environ, env, clear=True):
        yield tmp_path / "store.json"
