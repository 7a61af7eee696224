import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, Numeric, DateTime, Text, ForeignKey, Index, func, text
from sqlalchemy.orm import Mapped, mapped_column
from trek.database import Base

OPEN_STATUSES = ("pending", "approved")


class RideRequest(Base):
    __tablename__ = "ride_requests"
    # Server-generated timestamps come back with the INSERT/UPDATE
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        # At most one approved request per (ride, passenger)
        Index(
            "uq_ride_requests_one_approved",
            "ride_id",
            "passenger_id",
            unique=True,
            postgresql_where=text("status = 'approved'"),
            sqlite_where=text("status = 'approved'"),
        ),
        Index("idx_ride_requests_payment_sweep", "payment_status", "payment_authorized_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    ride_id: Mapped[str] = mapped_column(String, ForeignKey("rides.id"), nullable=False, index=True)
    passenger_id: Mapped[str] = mapped_column(String(128), ForeignKey("users.id"), nullable=False, index=True)

    # pending | approved | rejected | canceled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    # pending | authorized | captured | canceled | failed
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    payment_authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    baggage_check_in: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    baggage_personal: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
