"""initial schema: users, properties, accommodations, bookings, outbox, ledgers

Revision ID: 20260301090000
Revises:
Create Date: 2026-03-01 09:00:00

Notes:
- properties carry the occupancy counters (total_rooms, occupied_rooms) plus a version column
  used for compare-and-swap; CHECK constraints keep 0 <= occupied_rooms <= total_rooms.
- accommodations.property_id is nullable (standalone single-unit listings).
- outbox_events.idempotency_key and the ledger idempotency keys are unique so redelivery is safe.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260301090000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _ledger(name: str) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("subject_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("idempotency_key", name=f"uq_{name}_idempotency_key"),
    )
    op.create_index(f"ix_{name}_id", name, ["id"])
    op.create_index(f"ix_{name}_subject_id", name, ["subject_id"])


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "properties",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("landlord_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("total_rooms", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("occupied_rooms", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint("total_rooms >= 0", name="ck_properties_total_rooms_nonneg"),
        sa.CheckConstraint(
            "occupied_rooms >= 0 AND occupied_rooms <= total_rooms",
            name="ck_properties_occupied_within_total",
        ),
    )
    op.create_index("ix_properties_id", "properties", ["id"])
    op.create_index("ix_properties_landlord_id", "properties", ["landlord_id"])

    op.create_table(
        "accommodations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=True),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'available'")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
    )
    op.create_index("ix_accommodations_id", "accommodations", ["id"])
    op.create_index("ix_accommodations_property_id", "accommodations", ["property_id"])
    op.create_index("ix_accommodations_owner_id", "accommodations", ["owner_id"])
    op.create_index("ix_accommodations_property_status", "accommodations", ["property_id", "status"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("accommodation_id", sa.Integer(), sa.ForeignKey("accommodations.id"), nullable=False),
        sa.Column("requester_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("requested_date", sa.Date(), nullable=False),
        sa.Column("num_of_people", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decided_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("cancel_reason", sa.String(length=255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint("num_of_people >= 1", name="ck_bookings_num_of_people_positive"),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_accommodation_id", "bookings", ["accommodation_id"])
    op.create_index("ix_bookings_requester_id", "bookings", ["requester_id"])
    op.create_index("ix_bookings_accommodation_status", "bookings", ["accommodation_id", "status"])
    op.create_index("ix_bookings_status_requested_date", "bookings", ["status", "requested_date"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("subject_id", sa.Integer(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("idempotency_key", name="uq_outbox_events_idempotency_key"),
    )
    op.create_index("ix_outbox_events_id", "outbox_events", ["id"])
    op.create_index("ix_outbox_events_booking_id", "outbox_events", ["booking_id"])
    op.create_index("ix_outbox_events_status_id", "outbox_events", ["status", "id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("template_kind", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("idempotency_key", name="uq_notifications_idempotency_key"),
    )
    op.create_index("ix_notifications_id", "notifications", ["id"])
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    _ledger("reputation_deltas")
    _ledger("loyalty_credits")


def downgrade() -> None:
    for name in ("loyalty_credits", "reputation_deltas"):
        op.drop_index(f"ix_{name}_subject_id", table_name=name)
        op.drop_index(f"ix_{name}_id", table_name=name)
        op.drop_table(name)

    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_index("ix_notifications_id", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("ix_outbox_events_status_id", table_name="outbox_events")
    op.drop_index("ix_outbox_events_booking_id", table_name="outbox_events")
    op.drop_index("ix_outbox_events_id", table_name="outbox_events")
    op.drop_table("outbox_events")

    for ix in (
        "ix_bookings_status_requested_date",
        "ix_bookings_accommodation_status",
        "ix_bookings_requester_id",
        "ix_bookings_accommodation_id",
        "ix_bookings_id",
    ):
        op.drop_index(ix, table_name="bookings")
    op.drop_table("bookings")

    for ix in (
        "ix_accommodations_property_status",
        "ix_accommodations_owner_id",
        "ix_accommodations_property_id",
        "ix_accommodations_id",
    ):
        op.drop_index(ix, table_name="accommodations")
    op.drop_table("accommodations")

    op.drop_index("ix_properties_landlord_id", table_name="properties")
    op.drop_index("ix_properties_id", table_name="properties")
    op.drop_table("properties")

    op.drop_index("ix_users_role", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")
