import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, Boolean, Numeric, DateTime, Text, ForeignKey, CheckConstraint, func
from sqlalchemy.orm import Mapped, mapped_column
from trek.database import Base


class Ride(Base):
    __tablename__ = "rides"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        CheckConstraint("seats_left >= 0 AND seats_left <= seats_total", name="ck_rides_seats"),
        CheckConstraint(
            "baggage_check_in_left >= 0 AND baggage_check_in_left <= baggage_check_in_total",
            name="ck_rides_baggage_check_in",
        ),
        CheckConstraint(
            "baggage_personal_left >= 0 AND baggage_personal_left <= baggage_personal_total",
            name="ck_rides_baggage_personal",
        ),
        CheckConstraint("NOT (is_cancelled AND is_completed)", name="ck_rides_terminal"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    driver_id: Mapped[str] = mapped_column(String(128), ForeignKey("users.id"), nullable=False, index=True)

    origin: Mapped[str] = mapped_column(String(120), nullable=False)
    origin_area: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    destination: Mapped[str] = mapped_column(String(120), nullable=False)
    destination_area: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    departure_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    arrival_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    seats_total: Mapped[int] = mapped_column(Integer, nullable=False)
    seats_left: Mapped[int] = mapped_column(Integer, nullable=False)
    baggage_check_in_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    baggage_personal_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    baggage_check_in_left: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    baggage_personal_left: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Per seat
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    gender_preference: Mapped[str] = mapped_column(String(20), nullable=False, default="no_preference")
    car_model: Mapped[str | None] = mapped_column(String(120), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # driver | passenger
    ride_type: Mapped[str] = mapped_column(String(20), nullable=False, default="driver")

    is_started: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # driver | passenger
    cancelled_by: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # One-time codes gating start / completion
    start_verification_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    verification_code: Mapped[str | None] = mapped_column(String(10), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def is_open(self) -> bool:
        return not (self.is_cancelled or self.is_completed)
