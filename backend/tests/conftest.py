"""
Test Configuration — Fixtures for async DB, test client, fake Redis and seed data.

Each test gets its own file-backed SQLite database (partial unique indexes
and SAVEPOINTs behave as they do on PostgreSQL). Seed fixtures commit through
their own session and hand back primary keys, so tests always load fresh rows.
"""

import json

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event

from core.config import Settings
from db.models import LoyaltyCard, Store, Trolley
from db.session import Database

# Johannesburg CBD store used throughout the suite
STORE_LAT = -26.2041
STORE_LON = 28.0473
STORE_RADIUS = 500

INSIDE_POINT = (-26.2045, 28.0475)
OUTSIDE_POINT = (-26.2141, 28.0573)


def _enable_sqlite_savepoints(engine) -> None:
    """pysqlite/aiosqlite only get working SAVEPOINTs with explicit BEGIN."""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


class FakeLock:
    def __init__(self, redis: "FakeRedis", name: str):
        self.redis = redis
        self.name = name

    async def acquire(self) -> bool:
        if self.name in self.redis.held_locks:
            return False
        self.redis.held_locks.add(self.name)
        return True

    async def release(self) -> None:
        self.redis.held_locks.discard(self.name)


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the publisher and the sweep lock."""

    def __init__(self):
        self.published: list[tuple[str, dict]] = []
        self.held_locks: set[str] = set()

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    def lock(self, name: str, timeout: int | None = None, blocking: bool = True) -> FakeLock:
        return FakeLock(self, name)


@pytest.fixture
def settings():
    return Settings(app_env="test", database_url="sqlite+aiosqlite://", redis_url="redis://test")


@pytest.fixture
async def database(tmp_path):
    """Fresh schema per test."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'trolleyops.db'}")
    _enable_sqlite_savepoints(database.engine)
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
async def db(database):
    async with database.session() as session:
        yield session


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
async def seeded(database):
    """One geofenced store, two active trolleys, a maintenance trolley and two loyalty cards."""
    async with database.session() as session:
        store = Store(
            name="Shoprite Johannesburg CBD",
            brand="Shoprite",
            city="Johannesburg",
            province="Gauteng",
            latitude=STORE_LAT,
            longitude=STORE_LON,
            geofence_radius=STORE_RADIUS,
        )
        session.add(store)
        await session.flush()

        trolley = Trolley(store_id=store.store_id, rfid_tag="RFID-0001", barcode="TRL-0001")
        second = Trolley(store_id=store.store_id, rfid_tag="RFID-0002", barcode="TRL-0002")
        broken = Trolley(store_id=store.store_id, rfid_tag="RFID-0003", status="maintenance")
        card = LoyaltyCard(
            card_number="XS1000000001",
            customer_name="Thandi Nkosi",
            phone_number="+27821234567",
            points_balance=100,
        )
        blocked = LoyaltyCard(
            card_number="XS1000000002",
            customer_name="Pieter van Wyk",
            is_active=False,
            blocked_reason="3 unreturned trolleys. Please return all trolleys to reactivate card.",
        )
        session.add_all([trolley, second, broken, card, blocked])
        await session.commit()

        return {
            "store_id": store.store_id,
            "trolley_id": trolley.trolley_id,
            "second_trolley_id": second.trolley_id,
            "maintenance_trolley_id": broken.trolley_id,
            "card_number": card.card_number,
            "blocked_card_number": blocked.card_number,
        }


@pytest.fixture
async def client(database, fake_redis):
    """Async test client wired to the per-test database and fake Redis."""
    from api.main import app

    app.state.database = database
    app.state.redis = fake_redis

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
