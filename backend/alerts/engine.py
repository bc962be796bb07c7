"""
Alert Engine — Geofence, battery and overdue alert lifecycle.

Alert Types managed here:
  - geofence_breach: trolley left its store's geofence (auto-resolved on reentry)
  - low_battery: GPS tracker battery at or below threshold (manual resolution)
  - overdue_return: checked-out trolley past its expected return time

Each of these kinds has at most one unresolved alert per trolley. The
partial unique index ix_alerts_one_open_per_trolley is the source of truth;
inserts run inside a SAVEPOINT so a concurrent duplicate is absorbed as
"already open" instead of failing the caller.
"""

import json
import uuid
from typing import Any

import structlog
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.enums import AlertSeverity, AlertType
from core.errors import NotFoundError
from db.models import Alert, CustomerTrolleyAssignment, Trolley, utcnow

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────────────────
# Severity Rules
# ──────────────────────────────────────────────────────────────────────────

SEVERITY_BY_TYPE = {
    AlertType.GEOFENCE_BREACH: AlertSeverity.HIGH,
    AlertType.LOW_BATTERY: AlertSeverity.MEDIUM,
}


def classify_overdue_severity(hours_overdue: float, critical_after_hours: int = 48) -> AlertSeverity:
    """Overdue alerts go critical once the trolley is more than two days late."""
    if hours_overdue > critical_after_hours:
        return AlertSeverity.CRITICAL
    return AlertSeverity.WARNING


# ──────────────────────────────────────────────────────────────────────────
# Publishing
# ──────────────────────────────────────────────────────────────────────────


def alert_payload(alert: Alert) -> dict[str, Any]:
    return {
        "type": "alert",
        "payload": {
            "alert_id": str(alert.alert_id),
            "alert_type": alert.alert_type,
            "severity": alert.severity,
            "message": alert.message,
            "store_id": str(alert.store_id),
            "trolley_id": str(alert.trolley_id) if alert.trolley_id else None,
            "created_at": alert.created_at.isoformat() if alert.created_at else None,
        },
    }


class AlertPublisher:
    """
    Publishes alerts to Redis pub/sub for real-time delivery.

    The redis.asyncio client is owned by whoever constructs the publisher
    (API lifespan or worker run); this class never opens or closes it.
    """

    def __init__(self, redis):
        self.redis = redis

    async def publish(self, alerts: list[Alert]) -> int:
        """Returns number of subscribers notified. Redis outages are logged, not raised."""
        total_subs = 0
        for alert in alerts:
            channel = f"alerts:{alert.store_id}"
            try:
                total_subs += await self.redis.publish(channel, json.dumps(alert_payload(alert)))
            except RedisError as exc:
                logger.warning("alerts.publish_failed", alert_id=str(alert.alert_id), channel=channel, error=str(exc))
        return total_subs


# ──────────────────────────────────────────────────────────────────────────
# Alert Manager
# ──────────────────────────────────────────────────────────────────────────


class GeofenceAlertManager:
    """
    Reacts to containment transitions, battery readings and overdue
    escalations. Only flushes; the calling operation owns the commit.
    """

    def __init__(
        self,
        db: AsyncSession,
        publisher: AlertPublisher | None = None,
        critical_overdue_hours: int = 48,
    ):
        self.db = db
        self.publisher = publisher
        self.critical_overdue_hours = critical_overdue_hours
        self._pending: list[Alert] = []

    async def find_unresolved(self, trolley_id: uuid.UUID, alert_type: AlertType) -> Alert | None:
        result = await self.db.execute(
            select(Alert)
            .where(
                Alert.trolley_id == trolley_id,
                Alert.alert_type == alert_type.value,
                Alert.resolved.is_(False),
            )
            .order_by(Alert.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _create_once(self, alert: Alert) -> Alert | None:
        """Insert unless an open alert of the same kind already exists for the trolley."""
        if await self.find_unresolved(alert.trolley_id, AlertType(alert.alert_type)) is not None:
            return None
        try:
            async with self.db.begin_nested():
                self.db.add(alert)
        except IntegrityError:
            logger.info(
                "alerts.duplicate_suppressed",
                trolley_id=str(alert.trolley_id),
                alert_type=alert.alert_type,
            )
            return None
        self._pending.append(alert)
        return alert

    async def on_breach(self, trolley: Trolley, distance: float) -> Alert | None:
        alert = await self._create_once(
            Alert(
                store_id=trolley.store_id,
                trolley_id=trolley.trolley_id,
                alert_type=AlertType.GEOFENCE_BREACH.value,
                severity=SEVERITY_BY_TYPE[AlertType.GEOFENCE_BREACH].value,
                message=(
                    f"Trolley {trolley.rfid_tag} has left the geofence area ({round(distance)}m from store)"
                ),
                alert_metadata={"distance_from_store": distance},
            )
        )
        if alert is not None:
            logger.warning("alerts.breach_created", trolley_id=str(trolley.trolley_id), distance_m=distance)
        return alert

    async def _resolve_open(self, trolley_id: uuid.UUID, alert_type: AlertType, resolved_by: str) -> int:
        result = await self.db.execute(
            update(Alert)
            .where(
                Alert.trolley_id == trolley_id,
                Alert.alert_type == alert_type.value,
                Alert.resolved.is_(False),
            )
            .values(resolved=True, resolved_at=utcnow(), resolved_by=resolved_by)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    async def on_reentry(self, trolley: Trolley) -> int:
        """Resolve every open breach alert for the trolley. Returns the number resolved."""
        resolved = await self._resolve_open(trolley.trolley_id, AlertType.GEOFENCE_BREACH, "system:geofence_reentry")
        if resolved:
            logger.info("alerts.breach_resolved", trolley_id=str(trolley.trolley_id), resolved=resolved)
        return resolved

    async def on_returned(self, trolley: Trolley) -> int:
        """Resolve the overdue alert once the trolley is back at a kiosk."""
        resolved = await self._resolve_open(trolley.trolley_id, AlertType.OVERDUE_RETURN, "system:trolley_returned")
        if resolved:
            logger.info("alerts.overdue_resolved", trolley_id=str(trolley.trolley_id))
        return resolved

    async def on_low_battery(self, trolley: Trolley, battery_level: int) -> Alert | None:
        alert = await self._create_once(
            Alert(
                store_id=trolley.store_id,
                trolley_id=trolley.trolley_id,
                alert_type=AlertType.LOW_BATTERY.value,
                severity=SEVERITY_BY_TYPE[AlertType.LOW_BATTERY].value,
                message=f"GPS tracker for trolley {trolley.rfid_tag} has low battery ({battery_level}%)",
                alert_metadata={"battery_level": battery_level},
            )
        )
        if alert is not None:
            logger.info("alerts.low_battery_created", trolley_id=str(trolley.trolley_id), battery=battery_level)
        return alert

    async def on_overdue(
        self,
        assignment: CustomerTrolleyAssignment,
        hours_overdue: int,
        blocked: bool = False,
        trolley_tag: str | None = None,
    ) -> Alert | None:
        """
        Create the trolley's overdue_return alert, or escalate the open one.

        Severity only ever goes up. Returns the created/escalated alert, or
        None when the open alert already carries an equal or higher severity.
        """
        severity = classify_overdue_severity(hours_overdue, self.critical_overdue_hours)
        tag = trolley_tag or str(assignment.trolley_id)
        message = (
            f"Trolley {tag} is {hours_overdue} hours overdue. "
            f"Customer: {assignment.customer_name or 'Walk-in Customer'} ({assignment.customer_identifier})"
        )
        if blocked:
            message += ". Loyalty card blocked."
        metadata = {
            "assignment_id": str(assignment.assignment_id),
            "hours_overdue": hours_overdue,
            "card_blocked": blocked,
        }

        existing = await self.find_unresolved(assignment.trolley_id, AlertType.OVERDUE_RETURN)
        if existing is not None:
            if severity.rank <= AlertSeverity(existing.severity).rank and not blocked:
                return None
            existing.severity = max(severity, AlertSeverity(existing.severity), key=lambda s: s.rank).value
            existing.message = message
            existing.alert_metadata = metadata
            await self.db.flush()
            logger.warning("alerts.overdue_escalated", alert_id=str(existing.alert_id), severity=existing.severity)
            return existing

        alert = await self._create_once(
            Alert(
                store_id=assignment.store_id,
                trolley_id=assignment.trolley_id,
                alert_type=AlertType.OVERDUE_RETURN.value,
                severity=severity.value,
                message=message,
                alert_metadata=metadata,
            )
        )
        if alert is not None:
            logger.warning(
                "alerts.overdue_created",
                trolley_id=str(assignment.trolley_id),
                hours_overdue=hours_overdue,
                severity=severity.value,
            )
        return alert

    async def resolve_alert(self, alert_id: uuid.UUID, resolved_by: str) -> Alert:
        """Manual resolution (e.g. after swapping a tracker battery)."""
        alert = await self.db.get(Alert, alert_id)
        if alert is None:
            raise NotFoundError.for_resource("Alert", alert_id)
        if not alert.resolved:
            alert.resolved = True
            alert.resolved_by = resolved_by
            alert.resolved_at = utcnow()
            await self.db.flush()
        return alert

    async def publish_pending(self) -> int:
        """Publish alerts created since the last call. Call only after commit."""
        pending, self._pending = self._pending, []
        if not pending or self.publisher is None:
            return 0
        return await self.publisher.publish(pending)

    def pending_mark(self) -> int:
        return len(self._pending)

    def discard_pending(self, mark: int = 0) -> None:
        """Forget alerts queued after `mark` (their SAVEPOINT was rolled back)."""
        del self._pending[mark:]
