"""availability core

Revision ID: 0001_availability_core
Revises:
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_availability_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "caregivers",
        sa.Column("caregiver_id", sa.String(length=64), primary_key=True),
        sa.Column("hourly_rate_cents", sa.Integer()),
        sa.Column("daily_capacity", sa.Integer()),
        sa.Column("dynamic_pricing_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("backfilled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            # ORM-managed updated_at (no database trigger).
            nullable=False,
        ),
    )

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("parent_id", sa.String(length=64), nullable=False),
        sa.Column("caregiver_id", sa.String(length=64), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("children_count", sa.Integer(), nullable=False),
        sa.Column("address", sa.Text()),
        sa.Column("special_requests", sa.Text()),
        sa.Column("hourly_rate_cents", sa.Integer(), nullable=False),
        sa.Column("total_hours", sa.Numeric(6, 2), nullable=False),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("platform_fee_cents", sa.Integer(), nullable=False),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("caregiver_payout_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("payment_intent_id", sa.String(length=255), unique=True),
        sa.Column("cancellation_reason", sa.String(length=64)),
        sa.Column("confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_bookings_parent", "bookings", ["parent_id"])
    op.create_index("ix_bookings_caregiver_starts", "bookings", ["caregiver_id", "starts_at"])
    op.create_index("ix_bookings_status", "bookings", ["status"])

    op.create_table(
        "availability_slots",
        sa.Column("slot_id", sa.String(length=36), primary_key=True),
        sa.Column("caregiver_id", sa.String(length=64), sa.ForeignKey("caregivers.caregiver_id"), nullable=False),
        sa.Column("slot_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("total_capacity", sa.Integer(), nullable=False),
        sa.Column("current_occupancy", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_spots", sa.Integer(), nullable=False),
        sa.Column("base_rate_cents", sa.Integer(), nullable=False),
        sa.Column("current_rate_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recurring_pattern", sa.JSON()),
        sa.Column("special_requirements", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("caregiver_id", "slot_date", "start_time", name="uq_slot_caregiver_start"),
    )
    op.create_index("ix_availability_slots_date_start", "availability_slots", ["slot_date", "start_time"])
    op.create_index("ix_availability_slots_caregiver_date", "availability_slots", ["caregiver_id", "slot_date"])
    op.create_index("ix_availability_slots_status", "availability_slots", ["status"])

    op.create_table(
        "booking_reservations",
        sa.Column("reservation_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "slot_id",
            sa.String(length=36),
            sa.ForeignKey("availability_slots.slot_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("parent_id", sa.String(length=64), nullable=False),
        sa.Column("children_count", sa.Integer(), nullable=False),
        sa.Column("reserved_spots", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="SET NULL"),
        ),
        sa.Column("released_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_booking_reservations_slot_status", "booking_reservations", ["slot_id", "status"])
    op.create_index("ix_booking_reservations_expires", "booking_reservations", ["expires_at"])
    op.create_index("ix_booking_reservations_parent", "booking_reservations", ["parent_id"])

    op.create_table(
        "slot_bookings",
        sa.Column("slot_booking_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "slot_id",
            sa.String(length=36),
            sa.ForeignKey("availability_slots.slot_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("children_count", sa.Integer(), nullable=False),
        sa.Column("spots_used", sa.Integer(), nullable=False),
        sa.Column("rate_applied_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("slot_id", "booking_id", name="uq_slot_booking"),
    )
    op.create_index("ix_slot_bookings_booking", "slot_bookings", ["booking_id"])

    op.create_table(
        "payment_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("payment_intent_id", sa.String(length=255)),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("booking_id", sa.String(length=36)),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.String(length=128)),
        sa.Column("last_error_at", sa.DateTime(timezone=True)),
        sa.Column("runner_id", sa.String(length=128)),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_table("payment_events")
    op.drop_index("ix_slot_bookings_booking", table_name="slot_bookings")
    op.drop_table("slot_bookings")
    op.drop_index("ix_booking_reservations_parent", table_name="booking_reservations")
    op.drop_index("ix_booking_reservations_expires", table_name="booking_reservations")
    op.drop_index("ix_booking_reservations_slot_status", table_name="booking_reservations")
    op.drop_table("booking_reservations")
    op.drop_index("ix_availability_slots_status", table_name="availability_slots")
    op.drop_index("ix_availability_slots_caregiver_date", table_name="availability_slots")
    op.drop_index("ix_availability_slots_date_start", table_name="availability_slots")
    op.drop_table("availability_slots")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_caregiver_starts", table_name="bookings")
    op.drop_index("ix_bookings_parent", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("caregivers")
