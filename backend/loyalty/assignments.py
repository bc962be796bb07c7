"""
Assignment Ledger — trolley checkout / return at the store kiosk.

State machine (see core.enums.AssignmentStatus):

    checkout ──> checked_out ──return──> returned
                     │
                     └── (escalation sweep) ──> overdue ──return──> returned

A trolley holds at most one checked_out/overdue assignment. The partial
unique index ix_assignments_one_active_per_trolley enforces it; the
pre-check here only exists to give a friendly conflict message.

Returns with a linked loyalty card earn points through the RewardEngine and
move the card's streak, lifetime-return count and tier.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import GeofenceAlertManager
from core.config import Settings, get_settings
from core.enums import (
    ACTIVE_ASSIGNMENT_STATUSES,
    SIMULATABLE_TROLLEY_STATUSES,
    AssignmentStatus,
    IdentifierType,
    TrolleyStatus,
)
from core.errors import (
    ConflictError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from db.models import CustomerTrolleyAssignment, Store, Trolley, to_naive_utc, utcnow
from loyalty.ledger import LoyaltyLedger, PointsTransaction
from loyalty.rewards import (
    NextTierInfo,
    RewardBreakdown,
    calculate_points,
    generate_reward_message,
    get_next_tier_info,
)

logger = structlog.get_logger()

WALK_IN_CUSTOMER = "Walk-in Customer"
MAX_HISTORY_PAGE = 100


@dataclass
class RewardSummary:
    points_awarded: int
    bonus_points: int
    breakdown: RewardBreakdown
    message: str
    transaction: PointsTransaction
    next_tier: NextTierInfo
    tier_upgrade: tuple[str, str] | None = None


@dataclass
class ReturnResult:
    assignment: CustomerTrolleyAssignment
    duration_minutes: int
    on_time: bool
    message: str
    rewards: RewardSummary | None = None


def _active_filter():
    return CustomerTrolleyAssignment.status.in_([s.value for s in ACTIVE_ASSIGNMENT_STATUSES])


class AssignmentLedger:
    """Checkout and return of trolleys by identified customers."""

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

    async def _resolve_trolley(self, trolley_id: uuid.UUID | None, rfid_tag: str | None) -> Trolley:
        if trolley_id is None and not rfid_tag:
            raise ValidationError("Either trolley_id or rfid_tag is required", code="MISSING_TROLLEY_REF")
        if trolley_id is not None:
            trolley = await self.db.get(Trolley, trolley_id)
        else:
            result = await self.db.execute(select(Trolley).where(Trolley.rfid_tag == rfid_tag))
            trolley = result.scalar_one_or_none()
        if trolley is None:
            raise NotFoundError.for_resource("Trolley", trolley_id or rfid_tag)
        return trolley

    async def _active_assignment(self, trolley_id: uuid.UUID) -> CustomerTrolleyAssignment | None:
        result = await self.db.execute(
            select(CustomerTrolleyAssignment).where(CustomerTrolleyAssignment.trolley_id == trolley_id, _active_filter())
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _already_checked_out(existing: CustomerTrolleyAssignment | None) -> ConflictError:
        details = {}
        if existing is not None:
            details = {
                "checked_out_to": existing.customer_identifier,
                "checked_out_at": existing.checkout_at.isoformat(),
            }
        return ConflictError("Trolley is already checked out", code="TROLLEY_CHECKED_OUT", details=details)

    async def _commit(self, event: str, **context) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(event, error=str(exc), exc_info=True, **context)
            raise InternalError() from exc

    # ──────────────────────────────────────────────────────────────────
    # Checkout
    # ──────────────────────────────────────────────────────────────────

    async def checkout(
        self,
        identifier: str,
        identifier_type: IdentifierType | str,
        store_id: uuid.UUID,
        trolley_id: uuid.UUID | None = None,
        rfid_tag: str | None = None,
        now: datetime | None = None,
    ) -> CustomerTrolleyAssignment:
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("Customer identifier is required", code="MISSING_IDENTIFIER")
        try:
            identifier_type = IdentifierType(identifier_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown identifier type: {identifier_type}", code="INVALID_IDENTIFIER_TYPE") from exc

        now = to_naive_utc(now) or utcnow()
        try:
            async with self.db.begin_nested():
                trolley = await self._resolve_trolley(trolley_id, rfid_tag)
                if await self.db.get(Store, store_id) is None:
                    raise NotFoundError.for_resource("Store", store_id)
                if trolley.status not in SIMULATABLE_TROLLEY_STATUSES:
                    raise InvalidStateError(f"Trolley is {trolley.status} and cannot be checked out", code="TROLLEY_UNAVAILABLE")

                existing = await self._active_assignment(trolley.trolley_id)
                if existing is not None:
                    raise self._already_checked_out(existing)

                card = None
                if identifier_type == IdentifierType.CARD:
                    validation = await self.loyalty.validate_card(identifier)
                    if validation.card is None:
                        raise NotFoundError.for_resource("Loyalty card", identifier)
                    if not validation.valid:
                        raise InvalidStateError(validation.error, code="CARD_INACTIVE")
                    card = validation.card

                assignment = CustomerTrolleyAssignment(
                    trolley_id=trolley.trolley_id,
                    store_id=store_id,
                    loyalty_card_id=card.card_id if card is not None else None,
                    customer_identifier=identifier,
                    identifier_type=identifier_type.value,
                    customer_name=card.customer_name if card is not None else WALK_IN_CUSTOMER,
                    checkout_at=now,
                    expected_return_at=now + timedelta(hours=self.settings.checkout_grace_hours),
                    checkout_lat=trolley.current_lat,
                    checkout_lon=trolley.current_lon,
                    status=AssignmentStatus.CHECKED_OUT.value,
                )
                try:
                    async with self.db.begin_nested():
                        self.db.add(assignment)
                except IntegrityError as exc:
                    # Lost the race with a concurrent checkout of the same trolley
                    raise self._already_checked_out(None) from exc

                trolley.last_scanned = now
                await self.db.flush()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("checkout.failed", identifier=identifier, error=str(exc), exc_info=True)
            raise InternalError("Failed to check out trolley") from exc

        await self._commit("checkout.commit_failed", identifier=identifier)
        logger.info(
            "checkout.created",
            assignment_id=str(assignment.assignment_id),
            trolley_id=str(trolley.trolley_id),
            identifier_type=identifier_type.value,
            expected_return_at=assignment.expected_return_at.isoformat(),
        )
        return assignment

    # ──────────────────────────────────────────────────────────────────
    # Return
    # ──────────────────────────────────────────────────────────────────

    async def _apply_rewards(
        self,
        assignment: CustomerTrolleyAssignment,
        duration_minutes: int,
        on_time: bool,
    ) -> RewardSummary:
        card_number = assignment.customer_identifier
        card = await self.loyalty.get_profile(card_number)
        breakdown = calculate_points(duration_minutes, card.tier, card.consecutive_returns, on_time)
        streak = card.consecutive_returns + 1 if on_time else 0

        if breakdown.total >= 0:
            transaction = await self.loyalty.allocate_points(card_number, breakdown.total, "Trolley return reward")
        else:
            # A late return with no bonuses nets negative: take it off the balance instead
            transaction = await self.loyalty.deduct_points(card_number, -breakdown.total, "Late trolley return")
            assignment.penalty_points = (assignment.penalty_points or 0) + transaction.applied

        stats = await self.loyalty.update_customer_stats(card_number, increment_returns=True, consecutive_returns=streak)

        assignment.points_awarded = max(breakdown.total, 0)
        assignment.bonus_points = breakdown.bonus_points

        message = generate_reward_message(breakdown)
        tier_upgrade = None
        if stats.tier_upgraded:
            tier_upgrade = (stats.previous_tier.value, stats.new_tier.value)
            message += f" 🎊 Congratulations! You've been upgraded to {stats.new_tier.value.upper()} tier!"

        return RewardSummary(
            points_awarded=assignment.points_awarded,
            bonus_points=assignment.bonus_points,
            breakdown=breakdown,
            message=message,
            transaction=transaction,
            next_tier=get_next_tier_info(stats.new_tier, stats.card.total_trolley_returns),
            tier_upgrade=tier_upgrade,
        )

    async def return_trolley(
        self,
        identifier: str,
        trolley_id: uuid.UUID | None = None,
        rfid_tag: str | None = None,
        return_lat: float | None = None,
        return_lon: float | None = None,
        now: datetime | None = None,
    ) -> ReturnResult:
        now = to_naive_utc(now) or utcnow()
        try:
            async with self.db.begin_nested():
                trolley = await self._resolve_trolley(trolley_id, rfid_tag)
                result = await self.db.execute(
                    select(CustomerTrolleyAssignment).where(
                        CustomerTrolleyAssignment.trolley_id == trolley.trolley_id,
                        CustomerTrolleyAssignment.customer_identifier == identifier,
                        _active_filter(),
                    )
                )
                assignment = result.scalar_one_or_none()
                if assignment is None:
                    raise NotFoundError(
                        "No active checkout found for this trolley and customer", code="ACTIVE_CHECKOUT_NOT_FOUND"
                    )

                duration_minutes = max(0, int((now - assignment.checkout_at).total_seconds() // 60))
                on_time = now <= assignment.expected_return_at

                rewards = None
                if assignment.loyalty_card_id is not None and assignment.identifier_type == IdentifierType.CARD.value:
                    rewards = await self._apply_rewards(assignment, duration_minutes, on_time)

                assignment.returned_at = now
                assignment.return_lat = return_lat
                assignment.return_lon = return_lon
                assignment.duration_minutes = duration_minutes
                assignment.status = AssignmentStatus.RETURNED.value

                trolley.last_scanned = now
                if trolley.status == TrolleyStatus.RECOVERED.value:
                    trolley.status = TrolleyStatus.ACTIVE.value
                await self.alerts.on_returned(trolley)
                await self.db.flush()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("return.failed", identifier=identifier, error=str(exc), exc_info=True)
            raise InternalError("Failed to return trolley") from exc

        await self._commit("return.commit_failed", identifier=identifier)

        message = "Trolley returned successfully!"
        if rewards is None:
            message += " Sign up for an XS card to earn points on future returns!"
        logger.info(
            "return.completed",
            assignment_id=str(assignment.assignment_id),
            trolley_id=str(trolley.trolley_id),
            duration_minutes=duration_minutes,
            on_time=on_time,
            points=rewards.points_awarded if rewards else 0,
        )
        return ReturnResult(
            assignment=assignment,
            duration_minutes=duration_minutes,
            on_time=on_time,
            message=message,
            rewards=rewards,
        )

    # ──────────────────────────────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────────────────────────────

    async def get_customer_history(self, identifier: str, limit: int = 20, offset: int = 0) -> dict[str, Any]:
        limit = max(1, min(limit, MAX_HISTORY_PAGE))
        by_customer = CustomerTrolleyAssignment.customer_identifier == identifier

        result = await self.db.execute(
            select(CustomerTrolleyAssignment)
            .where(by_customer)
            .order_by(CustomerTrolleyAssignment.checkout_at.desc())
            .offset(offset)
            .limit(limit)
        )
        assignments = list(result.scalars().all())

        counts = dict(
            (
                await self.db.execute(
                    select(CustomerTrolleyAssignment.status, func.count())
                    .where(by_customer)
                    .group_by(CustomerTrolleyAssignment.status)
                )
            ).all()
        )
        totals = (
            await self.db.execute(
                select(
                    func.coalesce(func.sum(CustomerTrolleyAssignment.points_awarded), 0),
                    func.avg(CustomerTrolleyAssignment.duration_minutes),
                ).where(by_customer)
            )
        ).one()

        total = sum(counts.values())
        return {
            "assignments": assignments,
            "stats": {
                "total_returns": counts.get(AssignmentStatus.RETURNED.value, 0),
                "active_checkouts": counts.get(AssignmentStatus.CHECKED_OUT.value, 0),
                "overdue": counts.get(AssignmentStatus.OVERDUE.value, 0),
                "unreturned": counts.get(AssignmentStatus.UNRETURNED.value, 0),
                "total_points_earned": int(totals[0]),
                "average_duration": round(totals[1]) if totals[1] is not None else 0,
            },
            "pagination": {"total": total, "limit": limit, "offset": offset},
        }

    async def get_active_checkouts(self, store_id: uuid.UUID, now: datetime | None = None) -> dict[str, Any]:
        """
        Checked-out and overdue trolleys for a store. A checkout past its
        expected return is reported as overdue even before the sweep
        promotes it.
        """
        now = to_naive_utc(now) or utcnow()
        result = await self.db.execute(
            select(CustomerTrolleyAssignment)
            .where(CustomerTrolleyAssignment.store_id == store_id, _active_filter())
            .order_by(CustomerTrolleyAssignment.checkout_at.desc())
        )
        checkouts = list(result.scalars().all())
        overdue = [
            c for c in checkouts if c.status == AssignmentStatus.OVERDUE.value or c.expected_return_at < now
        ]
        return {
            "active_checkouts": len(checkouts) - len(overdue),
            "overdue_checkouts": len(overdue),
            "checkouts": checkouts,
            "overdue_ids": {c.assignment_id for c in overdue},
        }
