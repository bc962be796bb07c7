"""
TrolleyOps Database Models

Tables:
  1. stores                     - Store locations (geofence anchor)
  2. trolleys                   - Physical trolleys + cached GPS state
  3. trolley_location_history   - Append-only GPS samples
  4. alerts                     - Store / trolley alerts
  5. loyalty_cards              - XS loyalty accounts (points, tier, streak)
  6. customer_trolley_assignments - Checkout → return usage ledger

Invariants enforced at the storage boundary (not by read-then-write logic):
  - ix_alerts_one_open_per_trolley: one unresolved alert per
    (trolley, alert_type) for the deduplicated alert kinds
  - ix_assignments_one_active_per_trolley: one checked_out/overdue
    assignment per trolley
  - ck_loyalty_card_balance: points balance never negative
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from core.enums import (
    ACTIVE_ASSIGNMENT_STATUSES,
    DEDUPLICATED_ALERT_TYPES,
    AlertSeverity,
    AlertType,
    AssignmentStatus,
    IdentifierType,
    LoyaltyTier,
    TrolleyStatus,
    sql_in,
)
from db.session import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns hold naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize an incoming timestamp to the naive-UTC storage convention."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


_OPEN_DEDUP_ALERT = f"resolved = {{false}} AND alert_type IN ({sql_in(DEDUPLICATED_ALERT_TYPES)})"
_ACTIVE_ASSIGNMENT = f"status IN ({sql_in(ACTIVE_ASSIGNMENT_STATUSES)})"


# ─── 1. Stores ──────────────────────────────────────────────────────────────


class Store(Base):
    __tablename__ = "stores"

    store_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    brand = Column(String(50), nullable=False, default="Shoprite")
    address = Column(Text)
    city = Column(String(100))
    province = Column(String(100))
    latitude = Column(Float)
    longitude = Column(Float)
    geofence_radius = Column(Integer)  # meters; NULL → settings.default_geofence_radius_m
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("latitude IS NULL OR (latitude >= -90 AND latitude <= 90)", name="ck_store_latitude"),
        CheckConstraint("longitude IS NULL OR (longitude >= -180 AND longitude <= 180)", name="ck_store_longitude"),
        CheckConstraint("geofence_radius IS NULL OR geofence_radius > 0", name="ck_store_geofence_radius"),
    )


# ─── 2. Trolleys ────────────────────────────────────────────────────────────


class Trolley(Base):
    __tablename__ = "trolleys"

    trolley_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=True)
    rfid_tag = Column(String(100), nullable=False, unique=True)
    barcode = Column(String(100))
    status = Column(String(20), nullable=False, default=TrolleyStatus.ACTIVE.value)
    last_scanned = Column(DateTime)

    # Cached GPS state; is_within_geofence stays NULL until the first fix
    current_lat = Column(Float)
    current_lon = Column(Float)
    last_location_update = Column(DateTime)
    is_within_geofence = Column(Boolean)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_trolleys_store", "store_id"),
        Index("ix_trolleys_geofence", "store_id", "is_within_geofence"),
        CheckConstraint(f"status IN ({sql_in(TrolleyStatus)})", name="ck_trolley_status"),
    )

    @property
    def has_position(self) -> bool:
        return self.current_lat is not None and self.current_lon is not None


# ─── 3. Location History ────────────────────────────────────────────────────


class TrolleyLocationHistory(Base):
    __tablename__ = "trolley_location_history"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    trolley_id = Column(GUID(), ForeignKey("trolleys.trolley_id", ondelete="CASCADE"), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    is_within_geofence = Column(Boolean, nullable=False)
    distance_from_store = Column(Float, nullable=False)  # meters
    speed_kmh = Column(Float)  # NULL for the first fix
    battery_level = Column(Integer)
    signal_strength = Column(Integer)
    recorded_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_location_history_trolley_time", "trolley_id", "recorded_at"),
        CheckConstraint("battery_level IS NULL OR (battery_level >= 0 AND battery_level <= 100)", name="ck_history_battery"),
        CheckConstraint(
            "signal_strength IS NULL OR (signal_strength >= 0 AND signal_strength <= 100)", name="ck_history_signal"
        ),
    )


# ─── 4. Alerts ──────────────────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    trolley_id = Column(GUID(), ForeignKey("trolleys.trolley_id"), nullable=True)
    alert_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False, default=AlertSeverity.INFO.value)
    message = Column(Text, nullable=False)
    alert_metadata = Column("metadata", JSON, default=dict)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_by = Column(String(255))
    resolved_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_alerts_store_resolved", "store_id", "resolved", "created_at"),
        Index(
            "ix_alerts_one_open_per_trolley",
            "trolley_id",
            "alert_type",
            unique=True,
            postgresql_where=text(_OPEN_DEDUP_ALERT.format(false="false")),
            sqlite_where=text(_OPEN_DEDUP_ALERT.format(false="0")),
        ),
        CheckConstraint(f"alert_type IN ({sql_in(AlertType)})", name="ck_alert_type"),
        CheckConstraint(f"severity IN ({sql_in(AlertSeverity)})", name="ck_alert_severity"),
    )


# ─── 5. Loyalty Cards ───────────────────────────────────────────────────────


class LoyaltyCard(Base):
    __tablename__ = "loyalty_cards"

    card_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    card_number = Column(String(20), nullable=False, unique=True)
    customer_name = Column(String(100), nullable=False)
    phone_number = Column(String(20))
    email = Column(String(255))
    points_balance = Column(Integer, nullable=False, default=0)
    tier = Column(String(20), nullable=False, default=LoyaltyTier.BRONZE.value)
    total_trolley_returns = Column(Integer, nullable=False, default=0)
    consecutive_returns = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    blocked_reason = Column(String(255))
    last_activity = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_loyalty_cards_phone", "phone_number"),
        CheckConstraint("points_balance >= 0", name="ck_loyalty_card_balance"),
        CheckConstraint(f"tier IN ({sql_in(LoyaltyTier)})", name="ck_loyalty_card_tier"),
    )


# ─── 6. Customer Trolley Assignments ────────────────────────────────────────


class CustomerTrolleyAssignment(Base):
    __tablename__ = "customer_trolley_assignments"

    assignment_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    trolley_id = Column(GUID(), ForeignKey("trolleys.trolley_id"), nullable=False)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    loyalty_card_id = Column(GUID(), ForeignKey("loyalty_cards.card_id"), nullable=True)
    customer_identifier = Column(String(255), nullable=False)  # card number or phone
    identifier_type = Column(String(10), nullable=False)
    customer_name = Column(String(100))
    checkout_at = Column(DateTime, nullable=False, default=utcnow)
    expected_return_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime)
    checkout_lat = Column(Float)
    checkout_lon = Column(Float)
    return_lat = Column(Float)
    return_lon = Column(Float)
    status = Column(String(20), nullable=False, default=AssignmentStatus.CHECKED_OUT.value)
    points_awarded = Column(Integer, nullable=False, default=0)
    bonus_points = Column(Integer, nullable=False, default=0)
    penalty_points = Column(Integer, nullable=False, default=0)
    duration_minutes = Column(Integer)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_assignments_customer_status", "customer_identifier", "status"),
        Index("ix_assignments_status_expected", "status", "expected_return_at"),
        Index("ix_assignments_store_status", "store_id", "status"),
        Index(
            "ix_assignments_one_active_per_trolley",
            "trolley_id",
            unique=True,
            postgresql_where=text(_ACTIVE_ASSIGNMENT),
            sqlite_where=text(_ACTIVE_ASSIGNMENT),
        ),
        CheckConstraint(f"status IN ({sql_in(AssignmentStatus)})", name="ck_assignment_status"),
        CheckConstraint(f"identifier_type IN ({sql_in(IdentifierType)})", name="ck_assignment_identifier_type"),
    )
