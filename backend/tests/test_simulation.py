"""
Tests for the GPS simulator — movement model and simulated tracker traffic.
"""

import random
import uuid
from types import SimpleNamespace

import pytest

from core.errors import InvalidStateError, NotFoundError
from geo.geofence import calculate_distance
from geo.simulation import METERS_PER_DEGREE, GPSSimulator, simulate_movement
from geo.tracking import LocationTracker
from workers.simulation import run_simulation_tick, simulate_gps_tick

STORE = SimpleNamespace(latitude=-26.2041, longitude=28.0473, geofence_radius=500)


def _trolley(lat=None, lon=None):
    return SimpleNamespace(current_lat=lat, current_lon=lon)


# ── Movement model ─────────────────────────────────────────────────────


class TestSimulateMovement:
    def test_unpositioned_trolley_starts_at_store(self):
        lat, lon = simulate_movement(_trolley(), STORE, distance_meters=50, rng=random.Random(7))
        assert abs(lat - STORE.latitude) <= 50 / METERS_PER_DEGREE
        assert calculate_distance(lat, lon, STORE.latitude, STORE.longitude) < 100

    def test_jitter_around_cached_position(self):
        trolley = _trolley(-26.2050, 28.0480)
        lat, lon = simulate_movement(trolley, STORE, distance_meters=20, rng=random.Random(1))
        assert calculate_distance(lat, lon, trolley.current_lat, trolley.current_lon) < 40

    def test_seeded_rng_is_deterministic(self):
        a = simulate_movement(_trolley(), STORE, rng=random.Random(42))
        b = simulate_movement(_trolley(), STORE, rng=random.Random(42))
        assert a == b

    def test_forced_breach_lands_at_one_and_a_half_radius(self):
        trolley = _trolley(-26.2045, 28.0475)
        lat, lon = simulate_movement(trolley, STORE, move_outside=True, rng=random.Random(3))
        assert calculate_distance(lat, lon, STORE.latitude, STORE.longitude) == pytest.approx(750, rel=0.01)

    def test_forced_breach_keeps_bearing(self):
        trolley = _trolley(-26.2045, 28.0473)  # due south of the store
        lat, lon = simulate_movement(trolley, STORE, move_outside=True, rng=random.Random(3))
        assert lat < STORE.latitude
        assert lon == pytest.approx(STORE.longitude)

    def test_forced_breach_from_store_position_picks_a_bearing(self):
        trolley = _trolley(STORE.latitude, STORE.longitude)
        lat, lon = simulate_movement(trolley, STORE, move_outside=True, rng=random.Random(11))
        assert calculate_distance(lat, lon, STORE.latitude, STORE.longitude) == pytest.approx(750, rel=0.01)

    def test_default_radius_when_store_has_none(self):
        store = SimpleNamespace(latitude=STORE.latitude, longitude=STORE.longitude, geofence_radius=None)
        lat, lon = simulate_movement(_trolley(), store, move_outside=True, default_radius=200, rng=random.Random(5))
        assert calculate_distance(lat, lon, STORE.latitude, STORE.longitude) == pytest.approx(300, rel=0.01)


# ── Simulator over real trolleys ───────────────────────────────────────


@pytest.fixture
def simulator(db, settings):
    return GPSSimulator(LocationTracker(db, settings=settings), rng=random.Random(1234))


@pytest.mark.asyncio
class TestGPSSimulator:
    async def test_simulate_single(self, simulator, seeded):
        result = await simulator.simulate_single(seeded["trolley_id"])

        assert result.trolley.has_position
        assert result.geofence_status.is_within_geofence is True
        assert 50 <= result.location_history.battery_level <= 99
        assert 70 <= result.location_history.signal_strength <= 99

    async def test_maintenance_trolley_rejected(self, simulator, seeded):
        with pytest.raises(InvalidStateError) as exc_info:
            await simulator.simulate_single(seeded["maintenance_trolley_id"])
        assert exc_info.value.code == "TROLLEY_NOT_SIMULATABLE"

    async def test_unknown_trolley(self, simulator, seeded):
        with pytest.raises(NotFoundError):
            await simulator.simulate_single(uuid.uuid4())

    async def test_breach_then_force_inside(self, simulator, seeded):
        breach = await simulator.simulate_geofence_breach(seeded["trolley_id"])
        assert breach.geofence_status.breach_detected is True

        back = await simulator.simulate_geofence_breach(seeded["trolley_id"], force_inside=True)
        assert back.geofence_status.reentry_detected is True
        assert back.geofence_status.distance_from_store < 60

    async def test_multiple_all_breach(self, simulator, seeded):
        report = await simulator.simulate_multiple(count=10, breach_percentage=100)

        assert report.total == 2
        assert report.updated == 2
        assert report.breaches == 2
        assert report.errors == 0
        assert [d["rfid_tag"] for d in report.details] == ["RFID-0001", "RFID-0002"]

    async def test_multiple_without_breaches(self, simulator, seeded):
        report = await simulator.simulate_multiple(count=10, store_id=seeded["store_id"], breach_percentage=0)
        assert report.updated == 2
        assert report.breaches == 0

    async def test_multiple_respects_count(self, simulator, seeded):
        report = await simulator.simulate_multiple(count=1)
        assert report.to_dict()["total"] == 1


# ── Beat tick ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestSimulationTick:
    async def test_tick_publishes_breach_alerts(self, database, seeded, settings, fake_redis):
        report = await run_simulation_tick(
            settings,
            count=5,
            breach_percentage=100,
            store_id=str(seeded["store_id"]),
            database=database,
            redis=fake_redis,
        )

        assert report["updated"] == 2
        assert report["breaches"] == 2
        channels = {channel for channel, _ in fake_redis.published}
        assert channels == {f"alerts:{seeded['store_id']}"}


def test_failed_tick_reports_status(monkeypatch):
    async def _boom(*args, **kwargs):
        raise RuntimeError("redis unavailable")

    monkeypatch.setattr("workers.simulation.run_simulation_tick", _boom)

    result = simulate_gps_tick.run()

    assert result == {"status": "failed", "error": "redis unavailable"}
