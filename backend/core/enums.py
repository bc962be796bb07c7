"""
Closed vocabularies for every status / kind column.

Values are mirrored in the CheckConstraints in db/models.py, so a value that
is not listed here can never reach the database.
"""

from enum import Enum


class TrolleyStatus(str, Enum):
    """Physical lifecycle of a trolley (owned by the status-history flow)."""

    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    STOLEN = "stolen"
    DECOMMISSIONED = "decommissioned"
    RECOVERED = "recovered"


SIMULATABLE_TROLLEY_STATUSES = (TrolleyStatus.ACTIVE, TrolleyStatus.RECOVERED)


class AlertType(str, Enum):
    GEOFENCE_BREACH = "geofence_breach"
    LOW_BATTERY = "low_battery"
    OVERDUE_RETURN = "overdue_return"
    SHORTAGE = "shortage"
    INACTIVITY = "inactivity"
    MAINTENANCE_DUE = "maintenance_due"
    RECOVERED = "recovered"


# Kinds limited to one unresolved alert per trolley (partial unique index).
DEDUPLICATED_ALERT_TYPES = (
    AlertType.GEOFENCE_BREACH,
    AlertType.LOW_BATTERY,
    AlertType.OVERDUE_RETURN,
)


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.MEDIUM: 2,
    AlertSeverity.HIGH: 3,
    AlertSeverity.CRITICAL: 4,
}


class AssignmentStatus(str, Enum):
    """
    Checkout lifecycle:

        checked_out ──return──> returned
             │
             └──sweep──> overdue ──return──> returned
                            │
                            └──sweep (7d)──> unreturned
    """

    CHECKED_OUT = "checked_out"
    RETURNED = "returned"
    OVERDUE = "overdue"
    UNRETURNED = "unreturned"


ACTIVE_ASSIGNMENT_STATUSES = (AssignmentStatus.CHECKED_OUT, AssignmentStatus.OVERDUE)
DELINQUENT_ASSIGNMENT_STATUSES = (AssignmentStatus.OVERDUE, AssignmentStatus.UNRETURNED)


class IdentifierType(str, Enum):
    """How the customer identified themselves at checkout."""

    CARD = "card"
    PHONE = "phone"


class LoyaltyTier(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    DIAMOND = "diamond"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER = [LoyaltyTier.BRONZE, LoyaltyTier.SILVER, LoyaltyTier.GOLD, LoyaltyTier.DIAMOND]


def sql_in(values) -> str:
    """Render enum members as a SQL IN list for CheckConstraints / partial indexes."""
    return ", ".join(f"'{v.value}'" for v in values)
