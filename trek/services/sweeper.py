"""
Scheduled settlement sweeper.

Finds authorizations that have been held past the settlement deadline and
resolves each one, in order:

  1. approved, ride completed                    -> capture
  2. approved, ride never started, past departure -> cancel hold, cancel request
  3. approved, ride started but never completed  -> cancel hold, cancel request
  4. pending                                     -> cancel hold, cancel request
  5. rejected / canceled, hold still on file     -> retry the release

Every request is settled in its own transaction; one failure is logged and
recorded, and the sweep moves on.
"""
import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trek.config import get_settings
from trek.database import as_utc, atomic, utcnow
from trek.models.ride_request import RideRequest
from trek.services import inventory
from trek.services import notifications as texts
from trek.services.lookups import get_user, lock_ride_and_request
from trek.services.notifications import Notifier
from trek.services.payment import PaymentEscrow
from trek.services.results import ItemOutcome, SweepResult

logger = logging.getLogger(__name__)
settings = get_settings()


async def run_settlement_sweep(
    db: AsyncSession,
    *,
    escrow: PaymentEscrow,
    notifier: Notifier,
    now: datetime | None = None,
) -> SweepResult:
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.settlement_deadline_hours)
    rows = await db.execute(
        select(RideRequest.id)
        .where(
            RideRequest.payment_status == "authorized",
            func.coalesce(RideRequest.payment_authorized_at, RideRequest.created_at) <= cutoff,
        )
        .order_by(RideRequest.created_at)
    )
    request_ids = list(rows.scalars())
    await db.rollback()

    result = SweepResult(scanned=len(request_ids))
    for request_id in request_ids:
        try:
            item, notify = await _settle(db, request_id, escrow, now)
        except Exception as exc:
            logger.error("Sweep failed for request %s: %s", request_id, exc, exc_info=True)
            result.items.append(
                ItemOutcome(request_id, "", "unknown", "authorized", False, action="error", error=str(exc))
            )
            continue
        if item is None:
            continue
        result.items.append(item)
        if notify is not None:
            passenger, message = notify
            await notifier.send(passenger, message)

    logger.info("Settlement sweep done: scanned=%d settled=%d failed=%d", result.scanned, len(result.items), result.failed)
    return result


async def _settle(db: AsyncSession, request_id: str, escrow: PaymentEscrow, now: datetime):
    deadline = timedelta(hours=settings.settlement_deadline_hours)
    notify = None
    async with atomic(db):
        ride, request = await lock_ride_and_request(db, request_id)
        if request.payment_status != "authorized":
            return None, None

        if request.status == "approved":
            if ride.is_completed:
                outcome = await escrow.capture(request)
                request.payment_status = outcome.payment_status
                return ItemOutcome.of(request, outcome.succeeded, outcome.action, outcome.error), None

            if not ride.is_started:
                overdue = now > as_utc(ride.departure_time) + deadline
            else:
                overdue = now > as_utc(ride.started_at or ride.departure_time) + deadline
            if not overdue:
                return None, None

            request.status = "canceled"
            outcome = await escrow.cancel(request)
            request.payment_status = outcome.payment_status
            await inventory.release(db, ride.id, request.baggage_check_in, request.baggage_personal)
            passenger = await get_user(db, request.passenger_id)
            notify = (passenger.phone, texts.settlement_cancelled_text(ride))
        elif request.status == "pending":
            request.status = "canceled"
            outcome = await escrow.cancel(request)
            request.payment_status = outcome.payment_status
        else:
            outcome = await escrow.cancel(request)
            request.payment_status = outcome.payment_status

        item = ItemOutcome.of(request, outcome.succeeded, outcome.action, outcome.error)
    return item, notify


async def sweeper_loop(
    session_factory: async_sessionmaker,
    escrow: PaymentEscrow,
    notifier: Notifier,
    interval_seconds: int | None = None,
) -> None:
    """Background task started from the app lifespan."""
    interval = interval_seconds or settings.sweep_interval_seconds
    while True:
        try:
            async with session_factory() as db:
                await run_settlement_sweep(db, escrow=escrow, notifier=notifier)
        except Exception as exc:
            logger.error("Settlement sweep crashed: %s", exc, exc_info=True)
        await asyncio.sleep(interval)
