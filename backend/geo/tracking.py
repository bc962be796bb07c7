"""
GPS Location Tracking — sample ingestion and geofence transition detection.

Per sample:
  1. Validate coordinates (and battery/signal ranges)
  2. Distance to the anchor store + containment against its radius
  3. Speed from the previous cached fix, when one exists
  4. Append an immutable TrolleyLocationHistory row
  5. Update the trolley's cached position / containment
  6. breach (inside → outside) / reentry (outside → inside) / low battery
     → GeofenceAlertManager

A trolley that has never reported a position counts as inside its fence,
so its first out-of-fence fix raises a breach.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import GeofenceAlertManager
from core.config import Settings, get_settings
from core.errors import InternalError, InvalidStateError, NotFoundError, TrolleyOpsError, ValidationError
from db.models import Store, Trolley, TrolleyLocationHistory, to_naive_utc, utcnow
from geo.geofence import calculate_distance, calculate_speed, is_valid_coordinates, is_within_geofence

logger = structlog.get_logger()

MAX_HISTORY_PAGE = 1000


@dataclass
class LocationSample:
    """One GPS fix as reported by a tracker."""

    latitude: float
    longitude: float
    battery_level: int | None = None
    signal_strength: int | None = None
    recorded_at: datetime | None = None


@dataclass
class GeofenceOutcome:
    is_within_geofence: bool
    distance_from_store: float
    geofence_radius: int
    breach_detected: bool
    reentry_detected: bool
    out_of_order: bool = False


@dataclass
class LocationUpdateResult:
    trolley: Trolley
    location_history: TrolleyLocationHistory
    geofence_status: GeofenceOutcome
    speed_kmh: float | None


@dataclass
class BatchUpdateResult:
    successful: list[dict[str, Any]] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)


def _check_percentage(name: str, value: int | None) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
        raise ValidationError(f"{name} must be an integer between 0 and 100", code=f"INVALID_{name.upper()}")


class LocationTracker:
    """Ingests GPS samples for trolleys and keeps their cached state current."""

    def __init__(
        self,
        db: AsyncSession,
        alerts: GeofenceAlertManager | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.alerts = alerts or GeofenceAlertManager(db, critical_overdue_hours=self.settings.critical_overdue_hours)

    async def _get_trolley(self, trolley_id: uuid.UUID) -> Trolley:
        trolley = await self.db.get(Trolley, trolley_id)
        if trolley is None:
            raise NotFoundError.for_resource("Trolley", trolley_id)
        return trolley

    async def _apply_sample(self, trolley_id: uuid.UUID, sample: LocationSample) -> LocationUpdateResult:
        if not is_valid_coordinates(sample.latitude, sample.longitude):
            raise ValidationError("Invalid GPS coordinates", code="INVALID_COORDINATES")
        _check_percentage("battery_level", sample.battery_level)
        _check_percentage("signal_strength", sample.signal_strength)

        trolley = await self._get_trolley(trolley_id)
        store = await self.db.get(Store, trolley.store_id) if trolley.store_id is not None else None
        if store is None:
            raise InvalidStateError("Trolley has no assigned store", code="TROLLEY_WITHOUT_STORE")
        if store.latitude is None or store.longitude is None:
            raise InvalidStateError("Trolley's store has no location", code="STORE_WITHOUT_LOCATION")

        recorded_at = to_naive_utc(sample.recorded_at) or utcnow()
        # An older fix than the cached one is history only.
        out_of_order = trolley.last_location_update is not None and recorded_at < trolley.last_location_update
        distance = calculate_distance(sample.latitude, sample.longitude, store.latitude, store.longitude)
        radius = store.geofence_radius or self.settings.default_geofence_radius_m
        is_inside = is_within_geofence(distance, radius)
        was_inside = trolley.is_within_geofence if trolley.has_position and trolley.is_within_geofence is not None else True

        speed = None
        if not out_of_order and trolley.has_position and trolley.last_location_update is not None:
            speed = calculate_speed(
                trolley.current_lat,
                trolley.current_lon,
                sample.latitude,
                sample.longitude,
                trolley.last_location_update,
                recorded_at,
            )

        history = TrolleyLocationHistory(
            trolley_id=trolley.trolley_id,
            latitude=sample.latitude,
            longitude=sample.longitude,
            is_within_geofence=is_inside,
            distance_from_store=distance,
            speed_kmh=speed,
            battery_level=sample.battery_level,
            signal_strength=sample.signal_strength,
            recorded_at=recorded_at,
        )
        self.db.add(history)

        if out_of_order:
            await self.db.flush()
            logger.info(
                "gps.out_of_order_sample",
                trolley_id=str(trolley.trolley_id),
                recorded_at=recorded_at.isoformat(),
                last_update=trolley.last_location_update.isoformat(),
            )
            return LocationUpdateResult(
                trolley=trolley,
                location_history=history,
                geofence_status=GeofenceOutcome(
                    is_within_geofence=is_inside,
                    distance_from_store=distance,
                    geofence_radius=radius,
                    breach_detected=False,
                    reentry_detected=False,
                    out_of_order=True,
                ),
                speed_kmh=None,
            )

        trolley.current_lat = sample.latitude
        trolley.current_lon = sample.longitude
        trolley.last_location_update = recorded_at
        trolley.is_within_geofence = is_inside
        await self.db.flush()

        breach = was_inside and not is_inside
        reentry = not was_inside and is_inside
        if breach:
            await self.alerts.on_breach(trolley, distance)
        if reentry:
            await self.alerts.on_reentry(trolley)
        if sample.battery_level is not None and sample.battery_level <= self.settings.low_battery_threshold:
            await self.alerts.on_low_battery(trolley, sample.battery_level)

        logger.info(
            "gps.location_updated",
            trolley_id=str(trolley.trolley_id),
            distance_m=distance,
            inside=is_inside,
            breach=breach,
            reentry=reentry,
            speed_kmh=speed,
        )
        return LocationUpdateResult(
            trolley=trolley,
            location_history=history,
            geofence_status=GeofenceOutcome(
                is_within_geofence=is_inside,
                distance_from_store=distance,
                geofence_radius=radius,
                breach_detected=breach,
                reentry_detected=reentry,
            ),
            speed_kmh=speed,
        )

    async def update_location(self, trolley_id: uuid.UUID, sample: LocationSample) -> LocationUpdateResult:
        """Ingest one GPS sample, commit, then publish any new alerts."""
        mark = self.alerts.pending_mark()
        try:
            async with self.db.begin_nested():
                result = await self._apply_sample(trolley_id, sample)
            await self.db.commit()
        except TrolleyOpsError:
            self.alerts.discard_pending(mark)
            raise
        except SQLAlchemyError as exc:
            await self.db.rollback()
            self.alerts.discard_pending(mark)
            logger.error("gps.update_failed", trolley_id=str(trolley_id), error=str(exc), exc_info=True)
            raise InternalError("Failed to record GPS location") from exc
        await self.alerts.publish_pending()
        return result

    async def batch_update_locations(self, updates: list[tuple[uuid.UUID, LocationSample]]) -> BatchUpdateResult:
        """
        Apply many samples; one bad item never aborts the batch.

        Each item runs in its own SAVEPOINT, in input order, so samples for
        the same trolley are applied sequentially.
        """
        results = BatchUpdateResult()
        for trolley_id, sample in updates:
            mark = self.alerts.pending_mark()
            try:
                async with self.db.begin_nested():
                    outcome = await self._apply_sample(trolley_id, sample)
            except TrolleyOpsError as exc:
                self.alerts.discard_pending(mark)
                results.failed.append({"trolley_id": trolley_id, "error": exc.message, "kind": exc.kind.value})
                continue
            except Exception as exc:
                self.alerts.discard_pending(mark)
                logger.error("gps.batch_item_failed", trolley_id=str(trolley_id), error=str(exc), exc_info=True)
                results.failed.append(
                    {"trolley_id": trolley_id, "error": "Failed to record GPS location", "kind": InternalError.kind.value}
                )
                continue
            results.successful.append({"trolley_id": trolley_id, "result": outcome})

        await self.db.commit()
        await self.alerts.publish_pending()
        logger.info("gps.batch_complete", successful=len(results.successful), failed=len(results.failed))
        return results

    # ──────────────────────────────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────────────────────────────

    async def get_location_history(
        self,
        trolley_id: uuid.UUID,
        limit: int = 100,
        offset: int = 0,
        start: datetime | None = None,
        end: datetime | None = None,
        violations_only: bool = False,
    ) -> dict[str, Any]:
        limit = max(1, min(limit, MAX_HISTORY_PAGE))
        conditions = [TrolleyLocationHistory.trolley_id == trolley_id]
        if start is not None:
            conditions.append(TrolleyLocationHistory.recorded_at >= start)
        if end is not None:
            conditions.append(TrolleyLocationHistory.recorded_at <= end)
        if violations_only:
            conditions.append(TrolleyLocationHistory.is_within_geofence.is_(False))

        total = (await self.db.execute(select(func.count(TrolleyLocationHistory.id)).where(*conditions))).scalar() or 0
        result = await self.db.execute(
            select(TrolleyLocationHistory)
            .where(*conditions)
            .order_by(TrolleyLocationHistory.recorded_at.desc())
            .offset(offset)
            .limit(limit)
        )
        history = list(result.scalars().all())
        return {
            "history": history,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": total > offset + len(history),
            },
        }

    async def get_trolleys_outside_geofence(self, store_id: uuid.UUID | None = None) -> list[dict[str, Any]]:
        query = select(Trolley, Store).outerjoin(Store, Trolley.store_id == Store.store_id)
        query = query.where(Trolley.is_within_geofence.is_(False))
        if store_id is not None:
            query = query.where(Trolley.store_id == store_id)
        result = await self.db.execute(query.order_by(Trolley.last_location_update.desc()))
        return [self._with_distance(trolley, store) for trolley, store in result.all()]

    async def get_all_trolley_locations(self, store_id: uuid.UUID | None = None) -> list[dict[str, Any]]:
        query = select(Trolley, Store).outerjoin(Store, Trolley.store_id == Store.store_id)
        query = query.where(Trolley.current_lat.isnot(None), Trolley.current_lon.isnot(None))
        if store_id is not None:
            query = query.where(Trolley.store_id == store_id)
        result = await self.db.execute(query.order_by(Trolley.last_location_update.desc()))
        return [self._with_distance(trolley, store) for trolley, store in result.all()]

    @staticmethod
    def _with_distance(trolley: Trolley, store: Store | None) -> dict[str, Any]:
        distance = None
        if trolley.has_position and store is not None and store.latitude is not None and store.longitude is not None:
            distance = calculate_distance(trolley.current_lat, trolley.current_lon, store.latitude, store.longitude)
        return {"trolley": trolley, "distance_from_store": distance}

    async def get_location_stats(self, trolley_id: uuid.UUID, days: int = 7) -> dict[str, Any]:
        await self._get_trolley(trolley_id)
        since = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            select(TrolleyLocationHistory)
            .where(TrolleyLocationHistory.trolley_id == trolley_id, TrolleyLocationHistory.recorded_at >= since)
            .order_by(TrolleyLocationHistory.recorded_at.asc())
        )
        samples = result.scalars().all()

        total = len(samples)
        if total == 0:
            return {
                "period_days": days,
                "total_location_updates": 0,
                "geofence_breaches": 0,
                "geofence_compliance_rate": None,
                "average_distance_from_store": None,
                "max_distance_from_store": None,
                "average_speed_kmh": None,
            }

        breaches = sum(1 for s in samples if not s.is_within_geofence)
        distances = [s.distance_from_store for s in samples]
        speeds = [s.speed_kmh for s in samples if s.speed_kmh]
        return {
            "period_days": days,
            "total_location_updates": total,
            "geofence_breaches": breaches,
            "geofence_compliance_rate": round((total - breaches) / total * 100, 2),
            "average_distance_from_store": round(sum(distances) / total),
            "max_distance_from_store": round(max(distances)),
            "average_speed_kmh": round(sum(speeds) / len(speeds), 2) if speeds else 0.0,
        }
