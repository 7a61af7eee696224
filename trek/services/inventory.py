"""
Seat and baggage inventory for a ride.

Both operations are single conditional UPDATEs issued inside the caller's
transaction, so two approvals racing for the last seat cannot both win.
"""
import logging

from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession

from trek.errors import StateConflictError
from trek.models.ride import Ride

logger = logging.getLogger(__name__)


def _clamped_add(column, amount: int, upper):
    return case((column + amount > upper, upper), else_=column + amount)


async def reserve(db: AsyncSession, ride_id: str, check_in: int = 0, personal: int = 0) -> None:
    """Take one seat plus the claimed baggage, or raise if the ride can't hold it."""
    result = await db.execute(
        update(Ride)
        .where(
            Ride.id == ride_id,
            Ride.seats_left > 0,
            Ride.baggage_check_in_left >= check_in,
            Ride.baggage_personal_left >= personal,
        )
        .values(
            seats_left=Ride.seats_left - 1,
            baggage_check_in_left=Ride.baggage_check_in_left - check_in,
            baggage_personal_left=Ride.baggage_personal_left - personal,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateConflictError("No seats left on this ride")
    logger.debug("Reserved seat ride=%s baggage=(%d,%d)", ride_id, check_in, personal)


async def release(db: AsyncSession, ride_id: str, check_in: int = 0, personal: int = 0) -> None:
    """Return one seat plus baggage, never exceeding the ride's totals."""
    await db.execute(
        update(Ride)
        .where(Ride.id == ride_id)
        .values(
            seats_left=_clamped_add(Ride.seats_left, 1, Ride.seats_total),
            baggage_check_in_left=_clamped_add(Ride.baggage_check_in_left, check_in, Ride.baggage_check_in_total),
            baggage_personal_left=_clamped_add(Ride.baggage_personal_left, personal, Ride.baggage_personal_total),
        )
        .execution_options(synchronize_session=False)
    )
    logger.debug("Released seat ride=%s baggage=(%d,%d)", ride_id, check_in, personal)


async def seats_left(db: AsyncSession, ride: Ride) -> int:
    await db.refresh(ride, attribute_names=["seats_left", "baggage_check_in_left", "baggage_personal_left"])
    return ride.seats_left
