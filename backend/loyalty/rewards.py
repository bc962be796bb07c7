"""
Reward Engine — points, penalties and tier progression for trolley returns.

Pure functions, no I/O. Every term that contributes to a return's points is
kept as its own BonusLine so kiosks and receipts can itemize it.

Points for a return:
    subtotal   = 5 base
               + 5 quick return (<= 60 min)
               + 10 streak (every 5th consecutive return)
               + 20 / 50 / 100 milestone (streak exactly 10 / 25 / 50)
               - 10 late return
    tier_bonus = floor(subtotal × (multiplier - 1))
    total      = subtotal + tier_bonus

Tier multipliers also scale penalties: higher tiers lose more for an
overdue trolley.
"""

import math
from dataclasses import dataclass

from core.enums import LoyaltyTier

BASE_POINTS = 5
QUICK_RETURN_BONUS = 5
QUICK_RETURN_MINUTES = 60
STREAK_BONUS = 10
STREAK_EVERY = 5
LATE_RETURN_PENALTY = 10

MILESTONE_BONUSES = {10: 20, 25: 50, 50: 100}

TIER_MULTIPLIERS = {
    LoyaltyTier.BRONZE: 1.0,
    LoyaltyTier.SILVER: 1.5,
    LoyaltyTier.GOLD: 2.0,
    LoyaltyTier.DIAMOND: 2.5,
}

# Lifetime returns needed to reach each tier
TIER_THRESHOLDS = {
    LoyaltyTier.SILVER: 20,
    LoyaltyTier.GOLD: 50,
    LoyaltyTier.DIAMOND: 100,
}

# (max hours overdue, base penalty); anything beyond the last band costs 200
PENALTY_BANDS = [(24, 20), (48, 50), (72, 100)]
MAX_PENALTY = 200

BLOCK_UNRETURNED_COUNT = 3
BLOCK_LATE_RATE = 0.5
BLOCK_MIN_RETURNS = 10


@dataclass(frozen=True)
class BonusLine:
    type: str
    description: str
    points: int


@dataclass(frozen=True)
class RewardBreakdown:
    base: int
    bonuses: tuple[BonusLine, ...]
    subtotal: int
    tier_bonus: int
    total: int
    tier: LoyaltyTier
    multiplier: float

    @property
    def bonus_points(self) -> int:
        """Everything above the base, tier bonus included."""
        return self.total - self.base

    def to_dict(self) -> dict:
        return {
            "base": self.base,
            "bonuses": [{"type": b.type, "description": b.description, "points": b.points} for b in self.bonuses],
            "subtotal": self.subtotal,
            "tier_bonus": self.tier_bonus,
            "total": self.total,
            "tier": self.tier.value,
            "multiplier": self.multiplier,
        }


@dataclass(frozen=True)
class PenaltyBreakdown:
    base_penalty: int
    tier_adjustment: int
    total_penalty: int
    hours_overdue: int
    tier: LoyaltyTier


@dataclass(frozen=True)
class NextTierInfo:
    current_tier: LoyaltyTier
    next_tier: LoyaltyTier | None
    returns_needed: int
    progress_percentage: int
    is_max_tier: bool
    total_returns: int | None = None
    required_returns: int | None = None


@dataclass(frozen=True)
class BlockDecision:
    should_block: bool
    reason: str | None = None


def _tier_multiplier(tier: LoyaltyTier | str) -> tuple[LoyaltyTier, float]:
    tier = LoyaltyTier(tier)
    return tier, TIER_MULTIPLIERS[tier]


def calculate_points(
    duration_minutes: int,
    tier: LoyaltyTier | str = LoyaltyTier.BRONZE,
    consecutive_returns: int = 0,
    is_on_time: bool = True,
) -> RewardBreakdown:
    tier, multiplier = _tier_multiplier(tier)
    lines: list[BonusLine] = []

    if duration_minutes <= QUICK_RETURN_MINUTES:
        lines.append(BonusLine("quick_return", "Quick return bonus (<1 hour)", QUICK_RETURN_BONUS))

    if consecutive_returns > 0 and consecutive_returns % STREAK_EVERY == 0:
        lines.append(BonusLine("streak", f"{consecutive_returns} consecutive returns streak!", STREAK_BONUS))

    milestone = MILESTONE_BONUSES.get(consecutive_returns)
    if milestone is not None:
        lines.append(BonusLine("milestone", f"{consecutive_returns} returns milestone bonus!", milestone))

    if not is_on_time:
        lines.append(BonusLine("late_penalty", "Late return penalty", -LATE_RETURN_PENALTY))

    subtotal = BASE_POINTS + sum(line.points for line in lines)
    tier_bonus = math.floor(subtotal * (multiplier - 1))
    if tier_bonus > 0:
        lines.append(BonusLine("tier_multiplier", f"{tier.value.upper()} tier bonus ({multiplier}x)", tier_bonus))

    return RewardBreakdown(
        base=BASE_POINTS,
        bonuses=tuple(lines),
        subtotal=subtotal,
        tier_bonus=tier_bonus,
        total=subtotal + tier_bonus,
        tier=tier,
        multiplier=multiplier,
    )


def calculate_penalty(hours_overdue: int, tier: LoyaltyTier | str = LoyaltyTier.BRONZE) -> PenaltyBreakdown:
    tier, multiplier = _tier_multiplier(tier)
    base = next((points for max_hours, points in PENALTY_BANDS if hours_overdue <= max_hours), MAX_PENALTY)
    return PenaltyBreakdown(
        base_penalty=base,
        tier_adjustment=math.floor(base * (multiplier - 1)),
        total_penalty=math.floor(base * multiplier),
        hours_overdue=hours_overdue,
        tier=tier,
    )


def tier_for_returns(total_returns: int) -> LoyaltyTier:
    """Highest tier whose lifetime-return threshold has been reached."""
    tier = LoyaltyTier.BRONZE
    for candidate, threshold in TIER_THRESHOLDS.items():
        if total_returns >= threshold:
            tier = candidate
    return tier


def get_next_tier_info(tier: LoyaltyTier | str, total_returns: int) -> NextTierInfo:
    tier = LoyaltyTier(tier)
    if tier == LoyaltyTier.DIAMOND:
        return NextTierInfo(
            current_tier=tier,
            next_tier=None,
            returns_needed=0,
            progress_percentage=100,
            is_max_tier=True,
        )

    next_tier = list(LoyaltyTier)[tier.rank + 1]
    required = TIER_THRESHOLDS[next_tier]
    return NextTierInfo(
        current_tier=tier,
        next_tier=next_tier,
        returns_needed=max(0, required - total_returns),
        progress_percentage=min(100, round(total_returns / required * 100)),
        is_max_tier=False,
        total_returns=total_returns,
        required_returns=required,
    )


def should_block_customer(
    unreturned_count: int = 0,
    late_returns_count: int = 0,
    total_returns: int = 0,
    unreturned_threshold: int = BLOCK_UNRETURNED_COUNT,
) -> BlockDecision:
    if unreturned_count >= unreturned_threshold:
        return BlockDecision(
            True, f"{unreturned_count} unreturned trolleys. Please return all trolleys to reactivate card."
        )

    if total_returns >= BLOCK_MIN_RETURNS:
        late_rate = late_returns_count / total_returns
        if late_rate > BLOCK_LATE_RATE:
            return BlockDecision(
                True,
                f"High late return rate ({round(late_rate * 100)}%). Please improve return times to reactivate card.",
            )

    return BlockDecision(False)


_MESSAGE_ICONS = {"streak": "🔥", "milestone": "🏆", "quick_return": "⚡"}
_TIER_MESSAGES = {
    LoyaltyTier.DIAMOND: "💎 Diamond tier benefits applied!",
    LoyaltyTier.GOLD: "🥇 Gold tier benefits applied!",
}


def generate_reward_message(breakdown: RewardBreakdown) -> str:
    parts = [f"🎉 You earned {breakdown.total} XS points!"]
    for line in breakdown.bonuses:
        icon = _MESSAGE_ICONS.get(line.type)
        if icon:
            parts.append(f"{icon} {line.description}")
    if breakdown.tier in _TIER_MESSAGES:
        parts.append(_TIER_MESSAGES[breakdown.tier])
    return " ".join(parts)
