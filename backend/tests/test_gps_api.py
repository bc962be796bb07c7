"""
API Integration Tests — GPS ingestion, positions and simulation endpoints.
"""

import uuid

import pytest
from httpx import AsyncClient

INSIDE = {"latitude": -26.2045, "longitude": 28.0475}
OUTSIDE = {"latitude": -26.2141, "longitude": 28.0573}


def _fix(trolley_id, point, **extra):
    return {"trolley_id": str(trolley_id), **point, **extra}


@pytest.mark.asyncio
class TestGPSUpdate:
    async def test_update_inside(self, client: AsyncClient, seeded):
        resp = await client.post("/api/v1/gps/update", json=_fix(seeded["trolley_id"], INSIDE, battery_level=80))
        assert resp.status_code == 200
        data = resp.json()
        assert data["geofence_status"]["is_within_geofence"] is True
        assert data["geofence_status"]["breach_detected"] is False
        assert data["trolley"]["rfid_tag"] == "RFID-0001"
        assert data["location"]["battery_level"] == 80
        assert data["speed_kmh"] is None

    async def test_breach_publishes_alert(self, client: AsyncClient, seeded, fake_redis):
        resp = await client.post("/api/v1/gps/update", json=_fix(seeded["trolley_id"], OUTSIDE))
        assert resp.status_code == 200
        assert resp.json()["geofence_status"]["breach_detected"] is True

        channel, message = fake_redis.published[0]
        assert channel == f"alerts:{seeded['store_id']}"
        assert message["payload"]["alert_type"] == "geofence_breach"

    async def test_timezone_aware_timestamp(self, client: AsyncClient, seeded):
        resp = await client.post(
            "/api/v1/gps/update",
            json=_fix(seeded["trolley_id"], INSIDE, timestamp="2026-03-01T11:00:00+02:00"),
        )
        assert resp.status_code == 200
        assert resp.json()["location"]["recorded_at"].startswith("2026-03-01T09:00:00")

    async def test_invalid_coordinates(self, client: AsyncClient, seeded):
        resp = await client.post("/api/v1/gps/update", json=_fix(seeded["trolley_id"], {"latitude": 95, "longitude": 28}))
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_COORDINATES"

    async def test_unknown_trolley(self, client: AsyncClient, seeded):
        resp = await client.post("/api/v1/gps/update", json=_fix(uuid.uuid4(), INSIDE))
        assert resp.status_code == 404
        assert resp.json()["error"]["kind"] == "not_found"

    async def test_batch_partial_failure(self, client: AsyncClient, seeded):
        resp = await client.post(
            "/api/v1/gps/batch-update",
            json={
                "updates": [
                    _fix(seeded["trolley_id"], INSIDE),
                    _fix(uuid.uuid4(), INSIDE),
                    _fix(seeded["second_trolley_id"], OUTSIDE),
                ]
            },
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["summary"] == {"total": 3, "successful": 2, "failed": 1}
        assert data["failed"][0]["kind"] == "not_found"

    async def test_empty_batch_rejected(self, client: AsyncClient):
        resp = await client.post("/api/v1/gps/batch-update", json={"updates": []})
        assert resp.status_code == 422


@pytest.mark.asyncio
class TestGPSQueries:
    async def test_history_and_stats(self, client: AsyncClient, seeded):
        trolley_id = seeded["trolley_id"]
        for point in (INSIDE, OUTSIDE, INSIDE):
            await client.post("/api/v1/gps/update", json=_fix(trolley_id, point))

        history = (await client.get(f"/api/v1/gps/history/{trolley_id}?limit=2")).json()
        assert len(history["history"]) == 2
        assert history["pagination"]["total"] == 3

        violations = (await client.get(f"/api/v1/gps/history/{trolley_id}?violations_only=true")).json()
        assert violations["pagination"]["total"] == 1

        stats = (await client.get(f"/api/v1/gps/stats/{trolley_id}")).json()
        assert stats["total_location_updates"] == 3
        assert stats["geofence_breaches"] == 1

    async def test_outside_and_all_locations(self, client: AsyncClient, seeded):
        await client.post("/api/v1/gps/update", json=_fix(seeded["trolley_id"], OUTSIDE))
        await client.post("/api/v1/gps/update", json=_fix(seeded["second_trolley_id"], INSIDE))

        outside = (await client.get(f"/api/v1/gps/outside-geofence?store_id={seeded['store_id']}")).json()
        assert outside["count"] == 1
        assert outside["trolleys"][0]["trolley_id"] == str(seeded["trolley_id"])
        assert outside["trolleys"][0]["distance_from_store"] > 500

        everywhere = (await client.get("/api/v1/gps/locations")).json()
        assert everywhere["count"] == 2


@pytest.mark.asyncio
class TestGPSSimulation:
    async def test_simulate_single(self, client: AsyncClient, seeded):
        resp = await client.post("/api/v1/gps/simulate/single", json={"trolley_id": str(seeded["trolley_id"])})
        assert resp.status_code == 200
        assert resp.json()["trolley"]["current_lat"] is not None

    async def test_simulate_single_maintenance_trolley(self, client: AsyncClient, seeded):
        resp = await client.post(
            "/api/v1/gps/simulate/single", json={"trolley_id": str(seeded["maintenance_trolley_id"])}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "TROLLEY_NOT_SIMULATABLE"

    async def test_simulate_breach(self, client: AsyncClient, seeded):
        resp = await client.post("/api/v1/gps/simulate/breach", json={"trolley_id": str(seeded["trolley_id"])})
        assert resp.status_code == 200
        assert resp.json()["geofence_status"]["breach_detected"] is True

    async def test_simulate_multiple(self, client: AsyncClient, seeded):
        resp = await client.post("/api/v1/gps/simulate/multiple", json={"count": 5, "breach_percentage": 0})
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 2
        assert data["updated"] == 2
        assert data["breaches"] == 0
