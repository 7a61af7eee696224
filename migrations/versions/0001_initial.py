"""Initial schema: users, rides, ride_requests"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("email_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("phone_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("default_payment_method_id", sa.String(255), nullable=True),
        sa.Column("stripe_connect_account_id", sa.String(255), nullable=True),
        sa.Column("cancellation_strike_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("strike_reset_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_rides", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "rides",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("driver_id", sa.String(128), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("origin", sa.String(120), nullable=False),
        sa.Column("origin_area", sa.String(120), nullable=False, server_default=""),
        sa.Column("destination", sa.String(120), nullable=False),
        sa.Column("destination_area", sa.String(120), nullable=False, server_default=""),
        sa.Column("departure_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("arrival_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("seats_total", sa.Integer, nullable=False),
        sa.Column("seats_left", sa.Integer, nullable=False),
        sa.Column("baggage_check_in_total", sa.Integer, nullable=False, server_default="0"),
        sa.Column("baggage_personal_total", sa.Integer, nullable=False, server_default="0"),
        sa.Column("baggage_check_in_left", sa.Integer, nullable=False, server_default="0"),
        sa.Column("baggage_personal_left", sa.Integer, nullable=False, server_default="0"),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("gender_preference", sa.String(20), nullable=False, server_default="no_preference"),
        sa.Column("car_model", sa.String(120), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("ride_type", sa.String(20), nullable=False, server_default="driver"),
        sa.Column("is_started", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_completed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_cancelled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("cancelled_by", sa.String(20), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column("start_verification_code", sa.String(10), nullable=True),
        sa.Column("verification_code", sa.String(10), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("seats_left >= 0 AND seats_left <= seats_total", name="ck_rides_seats"),
        sa.CheckConstraint(
            "baggage_check_in_left >= 0 AND baggage_check_in_left <= baggage_check_in_total",
            name="ck_rides_baggage_check_in",
        ),
        sa.CheckConstraint(
            "baggage_personal_left >= 0 AND baggage_personal_left <= baggage_personal_total",
            name="ck_rides_baggage_personal",
        ),
        sa.CheckConstraint("NOT (is_cancelled AND is_completed)", name="ck_rides_terminal"),
    )
    op.create_index("idx_rides_driver", "rides", ["driver_id"])
    op.create_index("idx_rides_departure", "rides", ["departure_time"])
    op.create_index("idx_rides_created", "rides", ["created_at"])

    op.create_table(
        "ride_requests",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("ride_id", sa.String, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("passenger_id", sa.String(128), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        sa.Column("payment_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("baggage_check_in", sa.Integer, nullable=False, server_default="0"),
        sa.Column("baggage_personal", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_ride_requests_ride", "ride_requests", ["ride_id"])
    op.create_index("idx_ride_requests_passenger", "ride_requests", ["passenger_id"])
    op.create_index("idx_ride_requests_status", "ride_requests", ["status"])
    op.create_index(
        "idx_ride_requests_payment_sweep", "ride_requests", ["payment_status", "payment_authorized_at"]
    )
    op.create_index(
        "uq_ride_requests_one_approved",
        "ride_requests",
        ["ride_id", "passenger_id"],
        unique=True,
        postgresql_where=sa.text("status = 'approved'"),
    )


def downgrade() -> None:
    op.drop_table("ride_requests")
    op.drop_table("rides")
    op.drop_table("users")
