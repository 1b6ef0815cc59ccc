# SQLAlchemy ORM models for the booking/occupancy core (users, properties, accommodations, bookings, outbox)
# and the default ledgers the side-effect collaborators write to.
# Keep business logic out of models; transitions live in state_machine.py and coordinator.py.
import enum

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import declarative_mixin

from .db import Base


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class AccommodationStatus(str, enum.Enum):
    AVAILABLE = "available"
    RENTED = "rented"
    # Not open for confirmations (e.g. listing still under review)
    PENDING = "pending"


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"


class EventKind(str, enum.Enum):
    NOTIFY = "notify"
    REPUTATION_DELTA = "reputation_delta"
    LOYALTY_CREDIT = "loyalty_credit"


@declarative_mixin
class TimestampMixin:
    """Common UTC-aware timestamps automatically managed by the database.

    - created_at: set on insert
    - updated_at: set on insert and updated on each modification
    """
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class User(Base, TimestampMixin):
    """Application user account.

    Roles:
    - landlord: owns properties and accommodations, decides bookings
    - tenant: submits and cancels booking requests
    - admin: may decide any booking and repair occupancy counters
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, index=True)


class Property(Base, TimestampMixin):
    """A building (multi-room rental) owned by a landlord.

    occupied_rooms is a cached aggregate: the number of accommodations under this
    property whose status is 'rented'. Only the reconciliation coordinator writes it,
    always guarded by 'version' (compare-and-swap).
    """
    __tablename__ = "properties"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    landlord_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    total_rooms = Column(Integer, nullable=False, default=0)
    occupied_rooms = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("total_rooms >= 0", name="ck_properties_total_rooms_nonneg"),
        CheckConstraint(
            "occupied_rooms >= 0 AND occupied_rooms <= total_rooms",
            name="ck_properties_occupied_within_total",
        ),
    )


class Accommodation(Base, TimestampMixin):
    """A bookable room. property_id is null for standalone single-unit listings."""
    __tablename__ = "accommodations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=AccommodationStatus.AVAILABLE.value)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_accommodations_property_status", "property_id", "status"),
    )


class Booking(Base, TimestampMixin):
    """Viewing/rental request against an accommodation.

    Status transitions:
    pending -> confirmed | rejected | cancelled   (all terminal)

    'version' is bumped on every write so concurrent deciders can compare-and-swap.
    """
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    accommodation_id = Column(Integer, ForeignKey("accommodations.id"), nullable=False, index=True)
    requester_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value)
    requested_date = Column(Date, nullable=False)
    num_of_people = Column(Integer, nullable=False, default=1)
    phone_number = Column(String(32), nullable=True)
    note = Column(Text, nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    decided_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancel_reason = Column(String(255), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    # Indexed access patterns: per-accommodation listing, status filters, and the expiry sweep
    __table_args__ = (
        CheckConstraint("num_of_people >= 1", name="ck_bookings_num_of_people_positive"),
        Index("ix_bookings_accommodation_status", "accommodation_id", "status"),
        Index("ix_bookings_status_requested_date", "status", "requested_date"),
    )


class OutboxEvent(Base):
    """Side effect recorded in the same transaction as the booking transition that caused it.

    Delivered after commit by the dispatcher; rows stay 'pending' until a collaborator
    accepts them, so delivery is at-least-once.
    """
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    subject_id = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=OutboxStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String(1000), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    # The redelivery sweep scans pending rows oldest first
    __table_args__ = (
        Index("ix_outbox_events_status_id", "status", "id"),
    )


class Notification(Base):
    """Default notification sink: one row per (booking, event, recipient)."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    template_kind = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ReputationDelta(Base):
    """Default reputation ledger entry for a landlord."""
    __tablename__ = "reputation_deltas"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    subject_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=False)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    occurred_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LoyaltyCredit(Base):
    """Default loyalty ledger entry: points earned by a tenant."""
    __tablename__ = "loyalty_credits"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    subject_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=False)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    occurred_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
