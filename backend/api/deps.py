"""
TrolleyOps API Dependencies

Dependency injection for DB sessions, the Redis client and the domain
services built on top of them. The Database and Redis client live on
app.state (created and closed by the lifespan in api/main.py).
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import AlertPublisher, GeofenceAlertManager
from core.config import Settings, get_settings
from geo.simulation import GPSSimulator
from geo.tracking import LocationTracker
from loyalty.assignments import AssignmentLedger
from loyalty.ledger import DatabaseLoyaltyLedger, LoyaltyLedger


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with request.app.state.database.session() as session:
        yield session


def get_alert_publisher(request: Request) -> AlertPublisher | None:
    redis = getattr(request.app.state, "redis", None)
    return AlertPublisher(redis) if redis is not None else None


def get_alert_manager(
    db: AsyncSession = Depends(get_db),
    publisher: AlertPublisher | None = Depends(get_alert_publisher),
    settings: Settings = Depends(get_settings),
) -> GeofenceAlertManager:
    return GeofenceAlertManager(db, publisher=publisher, critical_overdue_hours=settings.critical_overdue_hours)


def get_loyalty_ledger(db: AsyncSession = Depends(get_db)) -> LoyaltyLedger:
    return DatabaseLoyaltyLedger(db)


def get_location_tracker(
    db: AsyncSession = Depends(get_db),
    alerts: GeofenceAlertManager = Depends(get_alert_manager),
    settings: Settings = Depends(get_settings),
) -> LocationTracker:
    return LocationTracker(db, alerts=alerts, settings=settings)


def get_gps_simulator(tracker: LocationTracker = Depends(get_location_tracker)) -> GPSSimulator:
    return GPSSimulator(tracker)


def get_assignment_ledger(
    db: AsyncSession = Depends(get_db),
    loyalty: LoyaltyLedger = Depends(get_loyalty_ledger),
    alerts: GeofenceAlertManager = Depends(get_alert_manager),
    settings: Settings = Depends(get_settings),
) -> AssignmentLedger:
    return AssignmentLedger(db, loyalty, alerts=alerts, settings=settings)
