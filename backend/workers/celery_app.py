"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "trolleyops",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.escalation", "workers.simulation"],
)

beat_schedule = {
    # ── Checkout lifecycle ─────────────────────────────────────────
    "escalate-overdue-assignments-hourly": {
        "task": "workers.escalation.check_overdue_assignments",
        "schedule": crontab(minute=0),
        "options": {"queue": "lifecycle"},
    },
}

# ── GPS simulation (demo environments only) ─────────────────────────
if settings.gps_simulation_enabled:
    beat_schedule["simulate-gps-tick"] = {
        "task": "workers.simulation.simulate_gps_tick",
        "schedule": float(settings.gps_simulation_interval_seconds),
        "kwargs": {
            "count": settings.gps_simulation_count,
            "breach_percentage": settings.gps_simulation_breach_pct,
        },
        "options": {"queue": "telemetry"},
    }

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.escalation.*": {"queue": "lifecycle"},
        "workers.simulation.*": {"queue": "telemetry"},
    },
    beat_schedule=beat_schedule,
)
