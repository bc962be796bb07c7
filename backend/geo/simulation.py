"""
GPS Simulation — synthetic tracker fixes for demos and load exercises.

Two movement models:
  - random walk: jitter up to ±distance_meters on each axis around the
    trolley's cached position (or the store when it has none)
  - forced breach: a point at 1.5× the geofence radius from the store,
    along the store → trolley bearing

Generated fixes go through LocationTracker exactly like real tracker
traffic, so simulated breaches raise real alerts.
"""

import math
import random
import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import select

from core.config import Settings
from core.enums import SIMULATABLE_TROLLEY_STATUSES
from core.errors import InvalidStateError, NotFoundError, TrolleyOpsError
from db.models import Store, Trolley
from geo.tracking import LocationSample, LocationTracker, LocationUpdateResult

logger = structlog.get_logger()

METERS_PER_DEGREE = 111_000
BREACH_RADIUS_FACTOR = 1.5


def simulate_movement(
    trolley: Trolley,
    store: Store,
    distance_meters: float = 50,
    move_outside: bool = False,
    default_radius: int = 500,
    rng: random.Random | None = None,
) -> tuple[float, float]:
    """Next (latitude, longitude) for a trolley. Pure apart from `rng`."""
    rng = rng or random.Random()
    radius = store.geofence_radius or default_radius
    current_lat = trolley.current_lat if trolley.current_lat is not None else store.latitude
    current_lon = trolley.current_lon if trolley.current_lon is not None else store.longitude

    if not move_outside:
        lat_change = (distance_meters / METERS_PER_DEGREE) * (rng.random() - 0.5) * 2
        lon_scale = METERS_PER_DEGREE * math.cos(math.radians(current_lat))
        lon_change = (distance_meters / lon_scale) * (rng.random() - 0.5) * 2
        return current_lat + lat_change, current_lon + lon_change

    # Work in local meters so the target lands outside the fence on any bearing
    cos_lat = math.cos(math.radians(store.latitude))
    north = (current_lat - store.latitude) * METERS_PER_DEGREE
    east = (current_lon - store.longitude) * METERS_PER_DEGREE * cos_lat
    magnitude = math.hypot(north, east)
    if magnitude == 0:
        angle = rng.random() * 2 * math.pi
        north, east, magnitude = math.cos(angle), math.sin(angle), 1.0

    target = radius * BREACH_RADIUS_FACTOR
    new_lat = store.latitude + (north / magnitude) * target / METERS_PER_DEGREE
    new_lon = store.longitude + (east / magnitude) * target / (METERS_PER_DEGREE * cos_lat)
    return new_lat, new_lon


@dataclass
class SimulationReport:
    total: int = 0
    updated: int = 0
    breaches: int = 0
    errors: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "updated": self.updated,
            "breaches": self.breaches,
            "errors": self.errors,
            "details": self.details,
        }


class GPSSimulator:
    """Feeds generated fixes for real trolleys through a LocationTracker."""

    def __init__(
        self,
        tracker: LocationTracker,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ):
        self.tracker = tracker
        self.db = tracker.db
        self.settings = settings or tracker.settings
        self.rng = rng or random.Random()

    async def _load(self, trolley_id: uuid.UUID) -> tuple[Trolley, Store]:
        trolley = await self.db.get(Trolley, trolley_id)
        if trolley is None:
            raise NotFoundError.for_resource("Trolley", trolley_id)
        store = await self.db.get(Store, trolley.store_id) if trolley.store_id is not None else None
        if store is None or store.latitude is None or store.longitude is None:
            raise InvalidStateError("Trolley has no store location to simulate around", code="STORE_WITHOUT_LOCATION")
        return trolley, store

    async def simulate_single(
        self,
        trolley_id: uuid.UUID,
        distance_meters: float = 50,
        move_outside: bool = False,
        battery_level: int | None = None,
        signal_strength: int | None = None,
    ) -> LocationUpdateResult:
        trolley, store = await self._load(trolley_id)
        if trolley.status not in SIMULATABLE_TROLLEY_STATUSES:
            raise InvalidStateError(
                "Can only simulate GPS for active or recovered trolleys", code="TROLLEY_NOT_SIMULATABLE"
            )

        latitude, longitude = simulate_movement(
            trolley,
            store,
            distance_meters=distance_meters,
            move_outside=move_outside,
            default_radius=self.settings.default_geofence_radius_m,
            rng=self.rng,
        )
        sample = LocationSample(
            latitude=latitude,
            longitude=longitude,
            battery_level=battery_level if battery_level is not None else self.rng.randint(50, 99),
            signal_strength=signal_strength if signal_strength is not None else self.rng.randint(70, 99),
        )
        return await self.tracker.update_location(trolley.trolley_id, sample)

    async def simulate_multiple(
        self,
        count: int = 10,
        store_id: uuid.UUID | None = None,
        breach_percentage: float = 20,
    ) -> SimulationReport:
        """Move up to `count` trolleys; each rolls its own breach decision. Never aborts."""
        query = select(Trolley.trolley_id, Trolley.rfid_tag).where(
            Trolley.status.in_([s.value for s in SIMULATABLE_TROLLEY_STATUSES])
        )
        if store_id is not None:
            query = query.where(Trolley.store_id == store_id)
        rows = (await self.db.execute(query.order_by(Trolley.rfid_tag).limit(count))).all()

        report = SimulationReport(total=len(rows))
        for trolley_id, rfid_tag in rows:
            should_breach = self.rng.random() * 100 < breach_percentage
            try:
                result = await self.simulate_single(
                    trolley_id,
                    distance_meters=self.rng.randint(20, 119),
                    move_outside=should_breach,
                )
            except TrolleyOpsError as exc:
                report.errors += 1
                report.details.append(
                    {"trolley_id": str(trolley_id), "rfid_tag": rfid_tag, "success": False, "error": exc.message}
                )
                continue

            report.updated += 1
            if result.geofence_status.breach_detected:
                report.breaches += 1
            report.details.append(
                {
                    "trolley_id": str(trolley_id),
                    "rfid_tag": rfid_tag,
                    "success": True,
                    "geofence_breach": result.geofence_status.breach_detected,
                    "distance_from_store": result.geofence_status.distance_from_store,
                }
            )

        logger.info(
            "simulation.batch_complete",
            total=report.total,
            updated=report.updated,
            breaches=report.breaches,
            errors=report.errors,
        )
        return report

    async def simulate_geofence_breach(self, trolley_id: uuid.UUID, force_inside: bool = False) -> LocationUpdateResult:
        """Force a 200 m breach, or with `force_inside` put the trolley back within ~50 m of the store."""
        if not force_inside:
            return await self.simulate_single(
                trolley_id,
                distance_meters=200,
                move_outside=True,
                battery_level=self.rng.randint(40, 69),
                signal_strength=self.rng.randint(50, 79),
            )

        _, store = await self._load(trolley_id)
        offset = 50 / METERS_PER_DEGREE
        latitude = store.latitude + (self.rng.random() - 0.5) * offset
        longitude = store.longitude + (self.rng.random() - 0.5) * offset / math.cos(math.radians(store.latitude))
        sample = LocationSample(
            latitude=latitude,
            longitude=longitude,
            battery_level=self.rng.randint(70, 99),
            signal_strength=self.rng.randint(80, 99),
        )
        return await self.tracker.update_location(trolley_id, sample)
