"""
Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("username", sa.String(length=100), nullable=False, unique=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "flights",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("flight_number", sa.String(length=16), nullable=False),
        sa.Column("origin", sa.String(length=100), nullable=False),
        sa.Column("destination", sa.String(length=100), nullable=False),
        sa.Column("departure_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("arrival_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("estimated_flight_time", sa.String(length=32), nullable=True),
        sa.Column("airline", sa.String(length=100), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("non_stop", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("seats_available", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("seats_available >= 0", name="ck_flights_seats_non_negative"),
    )
    op.create_index("ix_flights_route_departure", "flights", ["origin", "destination", "departure_time"])

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=32), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("flight_id", sa.String(length=36), nullable=False),
        sa.Column("flight_number", sa.String(length=16), nullable=False),
        sa.Column("origin", sa.String(length=100), nullable=False),
        sa.Column("destination", sa.String(length=100), nullable=False),
        sa.Column("departure_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("arrival_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("airline", sa.String(length=100), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("non_stop", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("booking_date", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("passengers", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("payment_id", sa.String(length=64), nullable=False),
        sa.Column("payment_signature", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="CONFIRMED"),
        sa.Column("recovered_from_failure", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("user_id", "payment_id", name="uq_bookings_user_payment"),
    )
    op.create_index("ix_bookings_payment_id", "bookings", ["payment_id"], unique=True)

    op.create_table(
        "payment_attempts",
        sa.Column("payment_id", sa.String(length=64), primary_key=True),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("signature", sa.String(length=128), nullable=True),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("flight_id", sa.String(length=36), nullable=True),
        sa.Column("passengers", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("booking_details", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("booking_id", sa.String(length=32), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("failure_code", sa.String(length=32), nullable=True),
        sa.Column("source", sa.String(length=16), nullable=False, server_default="client"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovered_from_failure", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index(
        "ix_payment_attempts_status_created_attempts",
        "payment_attempts",
        ["status", "created_at", "attempts"],
    )

    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=128), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("runner_id", sa.String(length=128), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_index("ix_payment_attempts_status_created_attempts", table_name="payment_attempts")
    op.drop_table("payment_attempts")
    op.drop_index("ix_bookings_payment_id", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_flights_route_departure", table_name="flights")
    op.drop_table("flights")
    op.drop_table("users")
