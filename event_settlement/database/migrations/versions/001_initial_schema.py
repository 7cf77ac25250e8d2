"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create events table
    op.create_table(
        "events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("registration_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("guest_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("max_capacity", sa.Integer(), nullable=True),
        sa.Column("confirmed_registrations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("registration_fee >= 0", name="non_negative_registration_fee"),
        sa.CheckConstraint("guest_fee >= 0", name="non_negative_guest_fee"),
        sa.CheckConstraint("confirmed_registrations >= 0", name="non_negative_confirmed"),
        sa.CheckConstraint(
            "max_capacity IS NULL OR confirmed_registrations <= max_capacity",
            name="within_capacity",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_events_tenant_id"), "events", ["tenant_id"], unique=False)

    # Create payment_transactions table
    op.create_table(
        "payment_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("reference_type", sa.String(length=32), nullable=False),
        sa.Column("reference_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("gateway_order_id", sa.String(length=64), nullable=False),
        sa.Column("gateway_payment_id", sa.String(length=64), nullable=True),
        sa.Column("gateway_signature", sa.String(length=128), nullable=True),
        sa.Column(
            "registration_intent", postgresql.JSONB(astext_type=sa.Text()), nullable=False
        ),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="positive_transaction_amount"),
        sa.CheckConstraint(
            "status IN ('INITIATED', 'COMPLETED', 'FAILED', 'EXPIRED')",
            name="valid_transaction_status",
        ),
        sa.CheckConstraint(
            "reference_type IN ('EVENT_PAYMENT', 'DONATION')",
            name="valid_reference_type",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("gateway_order_id"),
    )
    op.create_index(
        "idx_transactions_tenant_user", "payment_transactions", ["tenant_id", "user_id"], unique=False
    )
    op.create_index(
        "idx_transactions_status_expires",
        "payment_transactions",
        ["status", "expires_at"],
        unique=False,
    )

    # Create event_registrations table
    op.create_table(
        "event_registrations",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("meal_preference", sa.String(length=32), nullable=True),
        sa.Column("guest_count", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("donation_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("source_transaction_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("guest_count >= 0", name="non_negative_guest_count"),
        sa.CheckConstraint(
            "status IN ('CONFIRMED', 'CANCELLED')", name="valid_registration_status"
        ),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"]),
        sa.ForeignKeyConstraint(["source_transaction_id"], ["payment_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_transaction_id"),
    )
    op.create_index(
        "idx_registrations_tenant_event_user",
        "event_registrations",
        ["tenant_id", "event_id", "user_id"],
        unique=False,
    )
    op.create_index(
        "uq_registrations_event_user_confirmed",
        "event_registrations",
        ["event_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'CONFIRMED'"),
    )

    # Create event_guests table
    op.create_table(
        "event_guests",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("registration_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("meal_preference", sa.String(length=32), nullable=True),
        sa.ForeignKeyConstraint(
            ["registration_id"], ["event_registrations.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_event_guests_registration_id"), "event_guests", ["registration_id"], unique=False
    )

    # Create qr_credentials table
    op.create_table(
        "qr_credentials",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("registration_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("nonce", sa.String(length=64), nullable=False),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scan_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_scanned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(["registration_id"], ["event_registrations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("registration_id"),
    )

    # Create check_in_records table
    op.create_table(
        "check_in_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("registration_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("guests_checked_in", sa.Integer(), nullable=False),
        sa.Column("total_guests_allowed", sa.Integer(), nullable=False),
        sa.Column("check_in_location", sa.String(length=255), nullable=True),
        sa.Column("checked_in_by_staff_id", sa.String(length=64), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.CheckConstraint("guests_checked_in >= 0", name="non_negative_guests_checked_in"),
        sa.CheckConstraint(
            "guests_checked_in <= total_guests_allowed", name="guests_within_allowance"
        ),
        sa.ForeignKeyConstraint(["registration_id"], ["event_registrations.id"]),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("registration_id"),
    )
    op.create_index(
        "idx_checkins_event_time", "check_in_records", ["event_id", "checked_in_at"], unique=False
    )

    # Create donations table
    op.create_table(
        "donations",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("source_transaction_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="positive_donation_amount"),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"]),
        sa.ForeignKeyConstraint(["source_transaction_id"], ["payment_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_transaction_id"),
    )
    op.create_index(op.f("ix_donations_tenant_id"), "donations", ["tenant_id"], unique=False)

    # Create outbox_events table
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("aggregate_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("published", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_outbox_aggregate", "outbox_events", ["aggregate_id", "aggregate_type"], unique=False
    )
    op.create_index(
        "idx_outbox_unpublished",
        "outbox_events",
        ["published", "created_at"],
        unique=False,
        postgresql_where=sa.text("NOT published"),
    )
    op.create_index(
        op.f("ix_outbox_events_published"), "outbox_events", ["published"], unique=False
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(op.f("ix_outbox_events_published"), table_name="outbox_events")
    op.drop_index(
        "idx_outbox_unpublished",
        table_name="outbox_events",
        postgresql_where=sa.text("NOT published"),
    )
    op.drop_index("idx_outbox_aggregate", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index(op.f("ix_donations_tenant_id"), table_name="donations")
    op.drop_table("donations")
    op.drop_index("idx_checkins_event_time", table_name="check_in_records")
    op.drop_table("check_in_records")
    op.drop_table("qr_credentials")
    op.drop_index(op.f("ix_event_guests_registration_id"), table_name="event_guests")
    op.drop_table("event_guests")
    op.drop_index(
        "uq_registrations_event_user_confirmed",
        table_name="event_registrations",
        postgresql_where=sa.text("status = 'CONFIRMED'"),
    )
    op.drop_index("idx_registrations_tenant_event_user", table_name="event_registrations")
    op.drop_table("event_registrations")
    op.drop_index("idx_transactions_status_expires", table_name="payment_transactions")
    op.drop_index("idx_transactions_tenant_user", table_name="payment_transactions")
    op.drop_table("payment_transactions")
    op.drop_index(op.f("ix_events_tenant_id"), table_name="events")
    op.drop_table("events")
