"""
GPS Simulation Worker — periodic synthetic fixes for demo environments.

Registered in the beat schedule only when GPS_SIMULATION_ENABLED is set.
"""

import asyncio
import uuid

import redis.asyncio as aioredis
import structlog

from alerts.engine import AlertPublisher, GeofenceAlertManager
from core.config import Settings, get_settings
from db.session import Database
from geo.simulation import GPSSimulator
from geo.tracking import LocationTracker
from workers.celery_app import celery_app

logger = structlog.get_logger()


async def run_simulation_tick(
    settings: Settings,
    count: int,
    breach_percentage: float,
    store_id: str | None = None,
    database: Database | None = None,
    redis=None,
) -> dict:
    owns_database = database is None
    owns_redis = redis is None
    database = database or Database.from_settings(settings)
    redis = redis or aioredis.from_url(settings.redis_url)

    try:
        async with database.session() as db:
            alerts = GeofenceAlertManager(
                db,
                publisher=AlertPublisher(redis),
                critical_overdue_hours=settings.critical_overdue_hours,
            )
            simulator = GPSSimulator(LocationTracker(db, alerts=alerts, settings=settings))
            report = await simulator.simulate_multiple(
                count=count,
                store_id=uuid.UUID(store_id) if store_id else None,
                breach_percentage=breach_percentage,
            )
        return report.to_dict()
    finally:
        if owns_redis:
            await redis.aclose()
        if owns_database:
            await database.dispose()


@celery_app.task(
    name="workers.simulation.simulate_gps_tick",
    bind=True,
    ignore_result=True,
)
def simulate_gps_tick(self, count: int = 5, breach_percentage: float = 15.0, store_id: str | None = None):
    run_id = self.request.id or "manual"
    try:
        report = asyncio.run(run_simulation_tick(get_settings(), count, breach_percentage, store_id=store_id))
    except Exception as exc:
        logger.error("simulation.tick_failed", run_id=run_id, error=str(exc), exc_info=True)
        return {"status": "failed", "error": str(exc)}

    logger.info(
        "simulation.tick",
        run_id=run_id,
        updated=report["updated"],
        total=report["total"],
        breaches=report["breaches"],
        errors=report["errors"],
    )
    return report
