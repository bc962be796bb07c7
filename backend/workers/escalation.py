"""
Escalation Worker — hourly overdue / unreturned sweep.

Only one sweep may run at a time: the task takes a non-blocking Redis lock
and a run that cannot get it is skipped. A failed sweep is logged and left
for the next hourly tick instead of being retried straight away.

Schedule: See celery_app.py beat_schedule
"""

import asyncio
from datetime import datetime

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from alerts.engine import AlertPublisher, GeofenceAlertManager
from core.config import Settings, get_settings
from db.session import Database
from loyalty.escalation import LifecycleEscalator
from loyalty.ledger import DatabaseLoyaltyLedger
from workers.celery_app import celery_app

logger = structlog.get_logger()

ESCALATION_LOCK_NAME = "locks:escalation-sweep"


async def run_escalation(
    settings: Settings,
    database: Database | None = None,
    redis=None,
    now: datetime | None = None,
) -> dict:
    """One guarded sweep. Engine / Redis client are created here unless injected."""
    owns_database = database is None
    owns_redis = redis is None
    database = database or Database.from_settings(settings)
    redis = redis or aioredis.from_url(settings.redis_url)

    try:
        lock = redis.lock(
            ESCALATION_LOCK_NAME,
            timeout=settings.escalation_lock_timeout_seconds,
            blocking=False,
        )
        if not await lock.acquire():
            logger.info("escalation.skipped", reason="sweep_in_progress")
            return {"status": "skipped", "reason": "sweep_in_progress"}

        try:
            async with database.session() as db:
                alerts = GeofenceAlertManager(
                    db,
                    publisher=AlertPublisher(redis),
                    critical_overdue_hours=settings.critical_overdue_hours,
                )
                escalator = LifecycleEscalator(db, DatabaseLoyaltyLedger(db), alerts=alerts, settings=settings)
                summary = await escalator.run_escalation_sweep(now=now)
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("escalation.lock_expired", lock=ESCALATION_LOCK_NAME)

        return {"status": "success", **summary.to_dict()}
    finally:
        if owns_redis:
            await redis.aclose()
        if owns_database:
            await database.dispose()


@celery_app.task(
    name="workers.escalation.check_overdue_assignments",
    bind=True,
    acks_late=True,
)
def check_overdue_assignments(self):
    """Hourly job: promote overdue checkouts, apply penalties, block repeat offenders."""
    run_id = self.request.id or "manual"
    logger.info("escalation.started", run_id=run_id)

    try:
        result = asyncio.run(run_escalation(get_settings()))
    except Exception as exc:
        # The next hourly tick is the retry
        logger.error("escalation.failed", run_id=run_id, error=str(exc), exc_info=True)
        return {"status": "failed", "error": str(exc)}

    logger.info("escalation.finished", run_id=run_id, **result)
    return result
