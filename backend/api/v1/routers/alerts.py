"""
Alerts Router — store alert listing and manual resolution.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import GeofenceAlertManager
from api.deps import get_alert_manager, get_db
from core.enums import AlertSeverity, AlertType
from db.models import Alert

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlertResponse(BaseModel):
    alert_id: UUID
    store_id: UUID
    trolley_id: UUID | None
    alert_type: str
    severity: str
    message: str
    alert_metadata: dict | None
    resolved: bool
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class AlertResolveRequest(BaseModel):
    resolved_by: str = Field(min_length=1, max_length=255)


class AlertSummary(BaseModel):
    total: int
    open: int
    resolved: int
    by_type: dict[str, int]
    critical: int
    high: int


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[AlertResponse])
async def list_alerts(
    store_id: UUID | None = None,
    trolley_id: UUID | None = None,
    alert_type: AlertType | None = None,
    severity: AlertSeverity | None = None,
    resolved: bool | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """List alerts with filters."""
    query = select(Alert)
    if store_id:
        query = query.where(Alert.store_id == store_id)
    if trolley_id:
        query = query.where(Alert.trolley_id == trolley_id)
    if alert_type:
        query = query.where(Alert.alert_type == alert_type.value)
    if severity:
        query = query.where(Alert.severity == severity.value)
    if resolved is not None:
        query = query.where(Alert.resolved.is_(resolved))
    query = query.order_by(Alert.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/summary", response_model=AlertSummary)
async def get_alert_summary(
    store_id: UUID | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Open / resolved counts, plus open alerts per type."""
    conditions = [Alert.store_id == store_id] if store_id else []
    open_only = [*conditions, Alert.resolved.is_(False)]

    total = (await db.execute(select(func.count(Alert.alert_id)).where(*conditions))).scalar() or 0
    open_count = (await db.execute(select(func.count(Alert.alert_id)).where(*open_only))).scalar() or 0
    by_type = dict(
        (await db.execute(select(Alert.alert_type, func.count()).where(*open_only).group_by(Alert.alert_type))).all()
    )
    by_severity = dict(
        (await db.execute(select(Alert.severity, func.count()).where(*open_only).group_by(Alert.severity))).all()
    )

    return AlertSummary(
        total=total,
        open=open_count,
        resolved=total - open_count,
        by_type=by_type,
        critical=by_severity.get(AlertSeverity.CRITICAL.value, 0),
        high=by_severity.get(AlertSeverity.HIGH.value, 0),
    )


@router.patch("/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: UUID,
    body: AlertResolveRequest,
    db: AsyncSession = Depends(get_db),
    alerts: GeofenceAlertManager = Depends(get_alert_manager),
):
    """Resolve an alert by hand (e.g. after swapping a tracker battery)."""
    alert = await alerts.resolve_alert(alert_id, body.resolved_by)
    await db.commit()
    return alert
