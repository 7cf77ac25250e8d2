"""SQLAlchemy database models for event settlement and check-in."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from event_settlement.timeutils import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

Money = Numeric(12, 2)


class TransactionStatus:
    """Payment transaction states. Transitions only leave INITIATED."""

    INITIATED = "INITIATED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class RegistrationStatus:
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Event(Base):
    """
    Events that accept paid registrations.

    Event CRUD belongs to another service; this table carries only what the
    settlement pipeline reads (fees, capacity, start time) plus the
    confirmed-registration counter that commit and cancel maintain. The
    counter is bumped by a conditional UPDATE so the capacity check and the
    increment are one statement.
    """

    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    registration_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    guest_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    max_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confirmed_registrations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("registration_fee >= 0", name="non_negative_registration_fee"),
        CheckConstraint("guest_fee >= 0", name="non_negative_guest_fee"),
        CheckConstraint("confirmed_registrations >= 0", name="non_negative_confirmed"),
        CheckConstraint(
            "max_capacity IS NULL OR confirmed_registrations <= max_capacity",
            name="within_capacity",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Event."""
        return (
            f"<Event(id={self.id}, tenant_id={self.tenant_id}, "
            f"confirmed={self.confirmed_registrations}/{self.max_capacity})>"
        )


class PaymentTransaction(Base):
    """
    Payment transaction ledger.

    One row per payment attempt. Created INITIATED when the gateway order is
    opened and moved forward only (COMPLETED, FAILED or EXPIRED) by
    conditional updates. Carries the typed registration intent until commit.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reference_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="INITIATED")
    gateway_order_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    registration_intent: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_transaction_amount"),
        CheckConstraint(
            "status IN ('INITIATED', 'COMPLETED', 'FAILED', 'EXPIRED')",
            name="valid_transaction_status",
        ),
        CheckConstraint(
            "reference_type IN ('EVENT_PAYMENT', 'DONATION')",
            name="valid_reference_type",
        ),
        Index("idx_transactions_tenant_user", "tenant_id", "user_id"),
        Index("idx_transactions_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(id={self.id}, order={self.gateway_order_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class EventRegistration(Base):
    """
    Confirmed event registrations.

    Only RegistrationCommitService writes this table. source_transaction_id
    is unique, which makes commit-on-verify idempotent under duplicate
    delivery, and the partial unique index keeps one CONFIRMED row per
    (event_id, user_id) while leaving cancelled rows out of the constraint.
    """

    __tablename__ = "event_registrations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("events.id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="CONFIRMED")
    meal_preference: Mapped[str | None] = mapped_column(String(32), nullable=True)
    guest_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    donation_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    source_transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_transactions.id"), nullable=False, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    guests: Mapped[List["Guest"]] = relationship(
        back_populates="registration",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("guest_count >= 0", name="non_negative_guest_count"),
        CheckConstraint(
            "status IN ('CONFIRMED', 'CANCELLED')", name="valid_registration_status"
        ),
        Index("idx_registrations_tenant_event_user", "tenant_id", "event_id", "user_id"),
        Index(
            "uq_registrations_event_user_confirmed",
            "event_id",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'CONFIRMED'"),
            sqlite_where=text("status = 'CONFIRMED'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of EventRegistration."""
        return (
            f"<EventRegistration(id={self.id}, event_id={self.event_id}, "
            f"user_id={self.user_id}, status={self.status})>"
        )


class Guest(Base):
    """Guests attached to a registration, written in the same transaction."""

    __tablename__ = "event_guests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    registration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("event_registrations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    meal_preference: Mapped[str | None] = mapped_column(String(32), nullable=True)

    registration: Mapped[EventRegistration] = relationship(back_populates="guests")

    def __repr__(self) -> str:
        """String representation of Guest."""
        return f"<Guest(id={self.id}, registration_id={self.registration_id})>"


class QRCredential(Base):
    """
    Check-in credentials.

    At most one row per registration (unique registration_id). The token is
    stable while the row is active; revocation clears is_active and a later
    issue re-arms the same row with a fresh nonce.
    """

    __tablename__ = "qr_credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    registration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("event_registrations.id"), nullable=False, unique=True
    )
    token: Mapped[str] = mapped_column(Text, nullable=False)
    nonce: Mapped[str] = mapped_column(String(64), nullable=False)
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    scan_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        """String representation of QRCredential."""
        return (
            f"<QRCredential(id={self.id}, registration_id={self.registration_id}, "
            f"active={self.is_active}, scans={self.scan_count})>"
        )


class CheckInRecord(Base):
    """
    Attendance records.

    Immutable once written. The unique registration_id is what decides a
    race between gate devices scanning the same token.
    """

    __tablename__ = "check_in_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    registration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("event_registrations.id"), nullable=False, unique=True
    )
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("events.id"), nullable=False)
    checked_in_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    guests_checked_in: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_guests_allowed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    check_in_location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    checked_in_by_staff_id: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("guests_checked_in >= 0", name="non_negative_guests_checked_in"),
        CheckConstraint(
            "guests_checked_in <= total_guests_allowed", name="guests_within_allowance"
        ),
        Index("idx_checkins_event_time", "event_id", "checked_in_at"),
    )

    def __repr__(self) -> str:
        """String representation of CheckInRecord."""
        return (
            f"<CheckInRecord(id={self.id}, registration_id={self.registration_id}, "
            f"guests={self.guests_checked_in}/{self.total_guests_allowed})>"
        )


class Donation(Base):
    """
    Donation ledger entries.

    Written either alongside a registration (donation added to an event
    payment) or on its own for a standalone DONATION payment. The unique
    source_transaction_id keeps both paths idempotent.
    """

    __tablename__ = "donations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("events.id"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_transactions.id"), nullable=False, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (CheckConstraint("amount > 0", name="positive_donation_amount"),)

    def __repr__(self) -> str:
        """String representation of Donation."""
        return f"<Donation(id={self.id}, user_id={self.user_id}, amount={self.amount})>"


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Rows are written in the same transaction as the state change they
    announce (registration confirmed, attendee checked in, ...) and drained
    by the outbox publisher worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
