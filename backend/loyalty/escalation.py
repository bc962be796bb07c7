"""
Lifecycle Escalation — the scheduled overdue sweep.

Pass 1, checked_out past expected_return_at → overdue:
  - card holders lose a tier-scaled penalty (clamped at zero balance) and
    their on-time streak
  - a card whose holder now has `block_overdue_threshold` overdue or
    unreturned trolleys is blocked (once; an inactive card is left alone)
  - the trolley's overdue_return alert is raised or escalated

Pass 2, overdue for longer than `unreturned_after_days` → unreturned.
No further penalty.

Every assignment runs in its own SAVEPOINT; one failure is logged and
counted, the sweep moves on.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import GeofenceAlertManager
from core.config import Settings, get_settings
from core.enums import DELINQUENT_ASSIGNMENT_STATUSES, AssignmentStatus, IdentifierType
from core.errors import TrolleyOpsError
from db.models import CustomerTrolleyAssignment, Trolley, to_naive_utc, utcnow
from loyalty.ledger import LoyaltyLedger
from loyalty.rewards import calculate_penalty, should_block_customer

logger = structlog.get_logger()


@dataclass
class EscalationSummary:
    overdue_promoted: int = 0
    unreturned_escalated: int = 0
    penalties_applied: int = 0
    accounts_blocked: int = 0
    alerts_raised: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class LifecycleEscalator:
    def __init__(
        self,
        db: AsyncSession,
        loyalty: LoyaltyLedger,
        alerts: GeofenceAlertManager | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.loyalty = loyalty
        self.settings = settings or get_settings()
        self.alerts = alerts or GeofenceAlertManager(db, critical_overdue_hours=self.settings.critical_overdue_hours)

    async def _delinquent_count(self, customer_identifier: str) -> int:
        result = await self.db.execute(
            select(func.count(CustomerTrolleyAssignment.assignment_id)).where(
                CustomerTrolleyAssignment.customer_identifier == customer_identifier,
                CustomerTrolleyAssignment.status.in_([s.value for s in DELINQUENT_ASSIGNMENT_STATUSES]),
            )
        )
        return result.scalar() or 0

    async def _promote_overdue(
        self,
        assignment: CustomerTrolleyAssignment,
        trolley_tag: str | None,
        now: datetime,
        summary: EscalationSummary,
    ) -> None:
        hours_overdue = int((now - assignment.expected_return_at).total_seconds() // 3600)
        assignment.status = AssignmentStatus.OVERDUE.value
        await self.db.flush()

        blocked = False
        penalised = False
        if assignment.loyalty_card_id is not None and assignment.identifier_type == IdentifierType.CARD.value:
            card_number = assignment.customer_identifier
            card = await self.loyalty.get_profile(card_number)
            penalty = calculate_penalty(hours_overdue, card.tier)
            transaction = await self.loyalty.deduct_points(
                card_number, penalty.total_penalty, f"Trolley overdue by {hours_overdue} hours"
            )
            assignment.penalty_points = (assignment.penalty_points or 0) + transaction.applied
            assignment.notes = (
                f"Overdue penalty: requested {transaction.requested}, deducted {transaction.applied}"
            )
            penalised = True

            await self.loyalty.update_customer_stats(card_number, consecutive_returns=0)

            delinquent = await self._delinquent_count(assignment.customer_identifier)
            decision = should_block_customer(
                unreturned_count=delinquent,
                unreturned_threshold=self.settings.block_overdue_threshold,
            )
            if decision.should_block:
                blocked = await self.loyalty.block_card(card_number, decision.reason)

        alert = await self.alerts.on_overdue(assignment, hours_overdue, blocked=blocked, trolley_tag=trolley_tag)
        await self.db.flush()

        summary.overdue_promoted += 1
        summary.penalties_applied += int(penalised)
        summary.accounts_blocked += int(blocked)
        summary.alerts_raised += int(alert is not None)
        logger.info(
            "escalation.assignment_overdue",
            assignment_id=str(assignment.assignment_id),
            hours_overdue=hours_overdue,
            penalised=penalised,
            blocked=blocked,
        )

    async def run_escalation_sweep(self, now: datetime | None = None) -> EscalationSummary:
        now = to_naive_utc(now) or utcnow()
        summary = EscalationSummary()

        # ── Pass 1: checked_out → overdue ──
        result = await self.db.execute(
            select(CustomerTrolleyAssignment, Trolley.rfid_tag)
            .join(Trolley, Trolley.trolley_id == CustomerTrolleyAssignment.trolley_id)
            .where(
                CustomerTrolleyAssignment.status == AssignmentStatus.CHECKED_OUT.value,
                CustomerTrolleyAssignment.expected_return_at < now,
            )
            .order_by(CustomerTrolleyAssignment.expected_return_at)
        )
        for assignment, rfid_tag in result.all():
            assignment_id = assignment.assignment_id
            mark = self.alerts.pending_mark()
            try:
                async with self.db.begin_nested():
                    await self._promote_overdue(assignment, rfid_tag, now, summary)
            except (TrolleyOpsError, SQLAlchemyError) as exc:
                self.alerts.discard_pending(mark)
                summary.errors += 1
                logger.error(
                    "escalation.assignment_failed",
                    assignment_id=str(assignment_id),
                    error=str(exc),
                    exc_info=True,
                )

        # ── Pass 2: overdue → unreturned ──
        cutoff = now - timedelta(days=self.settings.unreturned_after_days)
        result = await self.db.execute(
            select(CustomerTrolleyAssignment).where(
                CustomerTrolleyAssignment.status == AssignmentStatus.OVERDUE.value,
                CustomerTrolleyAssignment.expected_return_at < cutoff,
            )
        )
        for assignment in result.scalars().all():
            assignment_id = assignment.assignment_id
            try:
                async with self.db.begin_nested():
                    assignment.status = AssignmentStatus.UNRETURNED.value
                    await self.db.flush()
            except SQLAlchemyError as exc:
                summary.errors += 1
                logger.error(
                    "escalation.unreturned_failed",
                    assignment_id=str(assignment_id),
                    error=str(exc),
                    exc_info=True,
                )
                continue
            summary.unreturned_escalated += 1
            logger.warning(
                "escalation.assignment_unreturned",
                assignment_id=str(assignment_id),
                trolley_id=str(assignment.trolley_id),
            )

        await self.db.commit()
        await self.alerts.publish_pending()
        logger.info("escalation.sweep_complete", **summary.to_dict())
        return summary
