"""
GPS Router — tracker ingestion, trolley positions and demo simulation.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.deps import get_gps_simulator, get_location_tracker
from db.models import to_naive_utc
from geo.simulation import GPSSimulator
from geo.tracking import LocationSample, LocationTracker, LocationUpdateResult

router = APIRouter(prefix="/api/v1/gps", tags=["gps"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class GPSUpdateRequest(BaseModel):
    trolley_id: UUID
    latitude: float
    longitude: float
    battery_level: int | None = None
    signal_strength: int | None = None
    timestamp: datetime | None = None

    def to_sample(self) -> LocationSample:
        return LocationSample(
            latitude=self.latitude,
            longitude=self.longitude,
            battery_level=self.battery_level,
            signal_strength=self.signal_strength,
            recorded_at=to_naive_utc(self.timestamp),
        )


class BatchGPSUpdateRequest(BaseModel):
    updates: list[GPSUpdateRequest] = Field(min_length=1, max_length=500)


class TrolleyPositionResponse(BaseModel):
    trolley_id: UUID
    rfid_tag: str
    store_id: UUID | None
    status: str
    current_lat: float | None
    current_lon: float | None
    is_within_geofence: bool | None
    last_location_update: datetime | None

    model_config = {"from_attributes": True}


class LocationHistoryResponse(BaseModel):
    id: UUID
    trolley_id: UUID
    latitude: float
    longitude: float
    is_within_geofence: bool
    distance_from_store: float
    speed_kmh: float | None
    battery_level: int | None
    signal_strength: int | None
    recorded_at: datetime

    model_config = {"from_attributes": True}


class GeofenceStatusResponse(BaseModel):
    is_within_geofence: bool
    distance_from_store: float
    geofence_radius: int
    breach_detected: bool
    reentry_detected: bool
    out_of_order: bool = False

    model_config = {"from_attributes": True}


class LocationUpdateResponse(BaseModel):
    trolley: TrolleyPositionResponse
    location: LocationHistoryResponse
    geofence_status: GeofenceStatusResponse
    speed_kmh: float | None


class SimulateSingleRequest(BaseModel):
    trolley_id: UUID
    distance_meters: float = Field(50, gt=0, le=5000)
    move_outside: bool = False


class SimulateMultipleRequest(BaseModel):
    count: int = Field(10, ge=1, le=200)
    store_id: UUID | None = None
    breach_percentage: float = Field(20, ge=0, le=100)


class SimulateBreachRequest(BaseModel):
    trolley_id: UUID
    force_inside: bool = False


def _update_response(result: LocationUpdateResult) -> LocationUpdateResponse:
    return LocationUpdateResponse(
        trolley=TrolleyPositionResponse.model_validate(result.trolley),
        location=LocationHistoryResponse.model_validate(result.location_history),
        geofence_status=GeofenceStatusResponse.model_validate(result.geofence_status),
        speed_kmh=result.speed_kmh,
    )


def _position_rows(rows: list[dict]) -> list[dict]:
    return [
        {
            **TrolleyPositionResponse.model_validate(row["trolley"]).model_dump(),
            "distance_from_store": row["distance_from_store"],
        }
        for row in rows
    ]


# ─── Ingestion ──────────────────────────────────────────────────────────────


@router.post("/update", response_model=LocationUpdateResponse)
async def update_location(
    body: GPSUpdateRequest,
    tracker: LocationTracker = Depends(get_location_tracker),
):
    """Record one tracker fix and run geofence transition checks."""
    result = await tracker.update_location(body.trolley_id, body.to_sample())
    return _update_response(result)


@router.post("/batch-update")
async def batch_update_locations(
    body: BatchGPSUpdateRequest,
    tracker: LocationTracker = Depends(get_location_tracker),
):
    """Record many fixes. Failing items are reported, never fatal to the batch."""
    result = await tracker.batch_update_locations([(u.trolley_id, u.to_sample()) for u in body.updates])
    return {
        "successful": [
            {"trolley_id": item["trolley_id"], **_update_response(item["result"]).model_dump()}
            for item in result.successful
        ],
        "failed": result.failed,
        "summary": {
            "total": len(body.updates),
            "successful": len(result.successful),
            "failed": len(result.failed),
        },
    }


# ─── Queries ────────────────────────────────────────────────────────────────


@router.get("/history/{trolley_id}")
async def get_location_history(
    trolley_id: UUID,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    violations_only: bool = False,
    tracker: LocationTracker = Depends(get_location_tracker),
):
    page = await tracker.get_location_history(
        trolley_id,
        limit=limit,
        offset=offset,
        start=to_naive_utc(start_date),
        end=to_naive_utc(end_date),
        violations_only=violations_only,
    )
    return {
        "history": [LocationHistoryResponse.model_validate(h) for h in page["history"]],
        "pagination": page["pagination"],
    }


@router.get("/outside-geofence")
async def get_trolleys_outside_geofence(
    store_id: UUID | None = None,
    tracker: LocationTracker = Depends(get_location_tracker),
):
    rows = await tracker.get_trolleys_outside_geofence(store_id)
    return {"count": len(rows), "trolleys": _position_rows(rows)}


@router.get("/locations")
async def get_all_trolley_locations(
    store_id: UUID | None = None,
    tracker: LocationTracker = Depends(get_location_tracker),
):
    rows = await tracker.get_all_trolley_locations(store_id)
    return {"count": len(rows), "trolleys": _position_rows(rows)}


@router.get("/stats/{trolley_id}")
async def get_location_stats(
    trolley_id: UUID,
    days: int = Query(7, ge=1, le=90),
    tracker: LocationTracker = Depends(get_location_tracker),
):
    return await tracker.get_location_stats(trolley_id, days=days)


# ─── Simulation ─────────────────────────────────────────────────────────────


@router.post("/simulate/single", response_model=LocationUpdateResponse)
async def simulate_single(
    body: SimulateSingleRequest,
    simulator: GPSSimulator = Depends(get_gps_simulator),
):
    result = await simulator.simulate_single(
        body.trolley_id,
        distance_meters=body.distance_meters,
        move_outside=body.move_outside,
    )
    return _update_response(result)


@router.post("/simulate/multiple")
async def simulate_multiple(
    body: SimulateMultipleRequest,
    simulator: GPSSimulator = Depends(get_gps_simulator),
):
    report = await simulator.simulate_multiple(
        count=body.count,
        store_id=body.store_id,
        breach_percentage=body.breach_percentage,
    )
    return report.to_dict()


@router.post("/simulate/breach", response_model=LocationUpdateResponse)
async def simulate_breach(
    body: SimulateBreachRequest,
    simulator: GPSSimulator = Depends(get_gps_simulator),
):
    result = await simulator.simulate_geofence_breach(body.trolley_id, force_inside=body.force_inside)
    return _update_response(result)
