"""
Row loaders shared by the state machines. ``lock=True`` takes a row lock
(SELECT ... FOR UPDATE) where the database supports it.
"""
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trek.config import get_settings
from trek.errors import NotFoundError, ValidationError
from trek.models.ride import Ride
from trek.models.ride_request import RideRequest
from trek.models.user import User

settings = get_settings()


async def get_ride(db: AsyncSession, ride_id: str, lock: bool = False) -> Ride:
    stmt = select(Ride).where(Ride.id == ride_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    ride = (await db.execute(stmt)).scalar_one_or_none()
    if ride is None:
        raise NotFoundError("Ride not found")
    return ride


async def get_request(db: AsyncSession, request_id: str, lock: bool = False) -> RideRequest:
    stmt = select(RideRequest).where(RideRequest.id == request_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    request = (await db.execute(stmt)).scalar_one_or_none()
    if request is None:
        raise NotFoundError("Ride request not found")
    return request


async def lock_ride_and_request(db: AsyncSession, request_id: str) -> tuple[Ride, RideRequest]:
    """
    Lock a request together with its ride, ride row first. Every operation that
    locks both takes them in this order, so concurrent transitions queue on the
    ride instead of deadlocking.
    """
    ride_id = await db.scalar(select(RideRequest.ride_id).where(RideRequest.id == request_id))
    if ride_id is None:
        raise NotFoundError("Ride request not found")
    ride = await get_ride(db, ride_id, lock=True)
    request = await get_request(db, request_id, lock=True)
    return ride, request


async def get_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def get_users(db: AsyncSession, user_ids) -> dict[str, User]:
    ids = set(user_ids)
    if not ids:
        return {}
    rows = await db.execute(select(User).where(User.id.in_(ids)))
    return {user.id: user for user in rows.scalars()}


async def requests_for_ride(db: AsyncSession, ride_id: str, statuses, lock: bool = False) -> list[RideRequest]:
    stmt = (
        select(RideRequest)
        .where(RideRequest.ride_id == ride_id, RideRequest.status.in_(statuses))
        .order_by(RideRequest.created_at, RideRequest.id)
    )
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return list((await db.execute(stmt)).scalars())


def check_hub_route(origin: str, destination: str) -> None:
    """Every ride must start or end in the hub city."""
    hub = settings.hub_city.strip().lower()
    if hub not in (origin.strip().lower(), destination.strip().lower()):
        raise ValidationError(f"Rides must start or end in {settings.hub_city}")
    if origin.strip().lower() == destination.strip().lower():
        raise ValidationError("Origin and destination must differ")


def check_price(price: Decimal) -> None:
    if not settings.min_ride_price <= float(price) <= settings.max_ride_price:
        raise ValidationError(
            f"Price must be between ${settings.min_ride_price:.2f} and ${settings.max_ride_price:.2f}"
        )
