"""
Loyalty Ledger — XS card accounts behind a source-agnostic interface.

The checkout flow and the escalation sweep only ever talk to a
LoyaltyLedger, so the card store can move to the retailer's own points API
without touching reward or escalation logic. DatabaseLoyaltyLedger keeps the
accounts in the loyalty_cards table.

Guarantees every implementation must keep:
  - points_balance never goes negative (deductions clamp at zero and
    report requested vs applied)
  - tier only ever moves up
  - unknown card numbers raise NotFoundError
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.enums import LoyaltyTier
from core.errors import NotFoundError, ValidationError
from db.models import LoyaltyCard, utcnow
from loyalty.rewards import tier_for_returns

logger = structlog.get_logger()


# ── Result containers ─────────────────────────────────────────────────────


@dataclass
class CardValidation:
    valid: bool
    card: LoyaltyCard | None = None
    error: str | None = None


@dataclass
class PointsTransaction:
    transaction_id: str
    card_number: str
    requested: int
    applied: int
    new_balance: int
    reason: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class StatsUpdate:
    card: LoyaltyCard
    previous_tier: LoyaltyTier
    new_tier: LoyaltyTier

    @property
    def tier_upgraded(self) -> bool:
        return self.new_tier != self.previous_tier


def _transaction_id(prefix: str) -> str:
    return f"XS-{prefix}-{uuid.uuid4().hex[:12].upper()}"


# ── Abstract ledger ───────────────────────────────────────────────────────


class LoyaltyLedger(ABC):
    """Points, streak, tier and block state for loyalty cards."""

    @abstractmethod
    async def validate_card(self, card_number: str) -> CardValidation:
        """Check that a card exists and is active. Never raises for a bad card."""
        ...

    @abstractmethod
    async def get_profile(self, card_number: str) -> LoyaltyCard:
        ...

    @abstractmethod
    async def allocate_points(self, card_number: str, points: int, reason: str = "Trolley return") -> PointsTransaction:
        ...

    @abstractmethod
    async def deduct_points(
        self, card_number: str, points: int, reason: str = "Late return penalty"
    ) -> PointsTransaction:
        """Deduct up to `points`; the balance stops at zero."""
        ...

    @abstractmethod
    async def update_customer_stats(
        self,
        card_number: str,
        increment_returns: bool = False,
        consecutive_returns: int | None = None,
    ) -> StatsUpdate:
        ...

    @abstractmethod
    async def block_card(self, card_number: str, reason: str) -> bool:
        """Deactivate the card. Returns False when it was already inactive."""
        ...

    @abstractmethod
    async def unblock_card(self, card_number: str) -> bool:
        ...


# ── Database-backed ledger ────────────────────────────────────────────────


class DatabaseLoyaltyLedger(LoyaltyLedger):
    """LoyaltyLedger over the loyalty_cards table. Flushes only; callers commit."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _find(self, card_number: str, for_update: bool = False) -> LoyaltyCard | None:
        query = select(LoyaltyCard).where(LoyaltyCard.card_number == card_number)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _get(self, card_number: str, for_update: bool = False) -> LoyaltyCard:
        card = await self._find(card_number, for_update=for_update)
        if card is None:
            raise NotFoundError.for_resource("Loyalty card", card_number)
        return card

    async def validate_card(self, card_number: str) -> CardValidation:
        card = await self._find(card_number)
        if card is None:
            return CardValidation(valid=False, error="Card not found in system")
        if not card.is_active:
            return CardValidation(valid=False, card=card, error=card.blocked_reason or "Card is inactive")

        card.last_activity = utcnow()
        await self.db.flush()
        return CardValidation(valid=True, card=card)

    async def get_profile(self, card_number: str) -> LoyaltyCard:
        return await self._get(card_number)

    async def allocate_points(self, card_number: str, points: int, reason: str = "Trolley return") -> PointsTransaction:
        if points < 0:
            raise ValidationError("Cannot allocate a negative number of points", code="NEGATIVE_ALLOCATION")
        card = await self._get(card_number, for_update=True)
        card.points_balance += points
        card.last_activity = utcnow()
        await self.db.flush()

        logger.info("loyalty.points_allocated", card_number=card_number, points=points, reason=reason)
        return PointsTransaction(
            transaction_id=_transaction_id("TXN"),
            card_number=card_number,
            requested=points,
            applied=points,
            new_balance=card.points_balance,
            reason=reason,
        )

    async def deduct_points(
        self, card_number: str, points: int, reason: str = "Late return penalty"
    ) -> PointsTransaction:
        if points < 0:
            raise ValidationError("Cannot deduct a negative number of points", code="NEGATIVE_DEDUCTION")
        card = await self._get(card_number, for_update=True)
        applied = min(points, card.points_balance)
        card.points_balance -= applied
        await self.db.flush()

        logger.info(
            "loyalty.points_deducted",
            card_number=card_number,
            requested=points,
            applied=applied,
            reason=reason,
        )
        return PointsTransaction(
            transaction_id=_transaction_id("DED"),
            card_number=card_number,
            requested=points,
            applied=applied,
            new_balance=card.points_balance,
            reason=reason,
        )

    async def update_customer_stats(
        self,
        card_number: str,
        increment_returns: bool = False,
        consecutive_returns: int | None = None,
    ) -> StatsUpdate:
        card = await self._get(card_number, for_update=True)
        previous = LoyaltyTier(card.tier)

        if increment_returns:
            card.total_trolley_returns += 1
        if consecutive_returns is not None:
            card.consecutive_returns = consecutive_returns

        earned = tier_for_returns(card.total_trolley_returns)
        new_tier = earned if earned.rank > previous.rank else previous
        card.tier = new_tier.value
        card.last_activity = utcnow()
        await self.db.flush()

        if new_tier != previous:
            logger.info("loyalty.tier_upgraded", card_number=card_number, from_tier=previous.value, to_tier=new_tier.value)
        return StatsUpdate(card=card, previous_tier=previous, new_tier=new_tier)

    async def block_card(self, card_number: str, reason: str) -> bool:
        card = await self._get(card_number, for_update=True)
        if not card.is_active:
            return False
        card.is_active = False
        card.blocked_reason = reason
        await self.db.flush()
        logger.warning("loyalty.card_blocked", card_number=card_number, reason=reason)
        return True

    async def unblock_card(self, card_number: str) -> bool:
        card = await self._get(card_number, for_update=True)
        if card.is_active:
            return False
        card.is_active = True
        card.blocked_reason = None
        await self.db.flush()
        logger.info("loyalty.card_unblocked", card_number=card_number)
        return True
