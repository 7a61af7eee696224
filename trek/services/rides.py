"""
Ride lifecycle state machine.

    created -> started -> completed
    created -> cancelled

Start and completion are each gated by a one-time numeric code the driver
relays to a passenger out of band. Completion captures every held fare;
cancellation releases them and may cost the canceller a strike and a penalty.
"""
import logging
import secrets
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trek.config import get_settings
from trek.database import as_utc, atomic, utcnow
from trek.errors import AuthorizationError, StateConflictError, ValidationError
from trek.models.ride import Ride
from trek.models.ride_request import OPEN_STATUSES, RideRequest
from trek.models.user import User
from trek.services import inventory, strikes
from trek.services import notifications as texts
from trek.services.lookups import check_hub_route, check_price, get_ride, get_user, get_users, requests_for_ride
from trek.services.notifications import Notifier
from trek.services.payment import PaymentEscrow, quantize
from trek.services.results import CancellationResult, CodeResult, CompletionResult, ItemOutcome

logger = logging.getLogger(__name__)
settings = get_settings()


def _new_code(digits: int) -> str:
    """Random numeric code without a leading zero."""
    low = 10 ** (digits - 1)
    return str(low + secrets.randbelow(9 * low))


def _codes_match(stored: str, supplied: str) -> bool:
    return secrets.compare_digest(stored.encode(), supplied.strip().encode())


# ---------------------------------------------------------------------------
# Posting
# ---------------------------------------------------------------------------

async def create_ride(
    db: AsyncSession,
    driver_id: str,
    *,
    origin: str,
    destination: str,
    departure_time: datetime,
    arrival_time: datetime,
    seats_total: int,
    price: Decimal,
    origin_area: str = "",
    destination_area: str = "",
    baggage_check_in: int = 0,
    baggage_personal: int = 0,
    gender_preference: str = "no_preference",
    car_model: str | None = None,
    notes: str | None = None,
    ride_type: str = "driver",
    now: datetime | None = None,
) -> Ride:
    now = now or utcnow()
    check_hub_route(origin, destination)
    check_price(price)
    if seats_total < 1:
        raise ValidationError("A ride needs at least one seat")
    if baggage_check_in < 0 or baggage_personal < 0:
        raise ValidationError("Baggage capacity cannot be negative")
    if as_utc(departure_time) <= now:
        raise ValidationError("Departure must be in the future")
    if as_utc(arrival_time) <= as_utc(departure_time):
        raise ValidationError("Arrival must be after departure")
    if ride_type not in ("driver", "passenger"):
        raise ValidationError("ride_type must be 'driver' or 'passenger'")

    await get_user(db, driver_id)
    ride = Ride(
        driver_id=driver_id,
        origin=origin.strip(),
        origin_area=origin_area,
        destination=destination.strip(),
        destination_area=destination_area,
        departure_time=departure_time,
        arrival_time=arrival_time,
        seats_total=seats_total,
        seats_left=seats_total,
        baggage_check_in_total=baggage_check_in,
        baggage_personal_total=baggage_personal,
        baggage_check_in_left=baggage_check_in,
        baggage_personal_left=baggage_personal,
        price=quantize(price),
        gender_preference=gender_preference,
        car_model=car_model,
        notes=notes,
        ride_type=ride_type,
    )
    async with atomic(db):
        db.add(ride)
    logger.info("Ride %s posted by %s (%s -> %s)", ride.id, driver_id, ride.origin, ride.destination)
    return ride


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------

async def generate_start_code(db: AsyncSession, ride_id: str, driver_id: str) -> CodeResult:
    async with atomic(db):
        ride = await get_ride(db, ride_id, lock=True)
        if ride.driver_id != driver_id:
            raise AuthorizationError("Only the driver can start this ride")
        if not ride.is_open:
            raise StateConflictError("This ride is closed")
        if ride.is_started:
            raise StateConflictError("This ride has already started")
        approved = await requests_for_ride(db, ride.id, ["approved"])
        if not approved:
            raise StateConflictError("There are no approved passengers on this ride")
        ride.start_verification_code = _new_code(settings.start_code_digits)
    logger.info("Start code issued for ride %s", ride.id)
    return CodeResult(ride=ride, code=ride.start_verification_code)


async def verify_start(
    db: AsyncSession, ride_id: str, passenger_id: str, code: str, now: datetime | None = None
) -> Ride:
    async with atomic(db):
        ride = await get_ride(db, ride_id, lock=True)
        approved = await db.scalar(
            select(RideRequest.id).where(
                RideRequest.ride_id == ride.id,
                RideRequest.passenger_id == passenger_id,
                RideRequest.status == "approved",
            )
        )
        if not approved:
            raise AuthorizationError("Only an approved passenger can confirm the start of this ride")
        if not ride.is_open:
            raise StateConflictError("This ride is closed")
        if ride.start_verification_code is None:
            raise StateConflictError("No start code is active for this ride")
        if not _codes_match(ride.start_verification_code, code):
            raise ValidationError("Invalid verification code")

        ride.is_started = True
        ride.started_at = now or utcnow()
        ride.start_verification_code = None
    logger.info("Ride %s started (confirmed by %s)", ride.id, passenger_id)
    return ride


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

async def generate_completion_code(db: AsyncSession, ride_id: str, driver_id: str) -> CodeResult:
    async with atomic(db):
        ride = await get_ride(db, ride_id, lock=True)
        if ride.driver_id != driver_id:
            raise AuthorizationError("Only the driver can complete this ride")
        if not ride.is_open:
            raise StateConflictError("This ride is closed")
        if not ride.is_started:
            raise StateConflictError("The ride must be started before it can be completed")
        ride.verification_code = _new_code(settings.completion_code_digits)
    logger.info("Completion code issued for ride %s", ride.id)
    return CodeResult(ride=ride, code=ride.verification_code)


async def verify_completion(
    db: AsyncSession,
    ride_id: str,
    code: str,
    *,
    escrow: PaymentEscrow,
    now: datetime | None = None,
) -> CompletionResult:
    """
    Capture every approved passenger's held fare and close the ride.
    A failed capture is recorded on that request and reported; it does not
    stop the others or keep the ride open.
    """
    captures: list[ItemOutcome] = []
    async with atomic(db):
        ride = await get_ride(db, ride_id, lock=True)
        if ride.is_completed:
            raise StateConflictError("This ride is already completed")
        if ride.is_cancelled:
            raise StateConflictError("This ride was cancelled")
        if not ride.is_started:
            raise StateConflictError("The ride must be started before it can be completed")
        if ride.verification_code is None:
            raise StateConflictError("No completion code is active for this ride")
        if not _codes_match(ride.verification_code, code):
            raise ValidationError("Invalid verification code")

        riders = []
        for request in await requests_for_ride(db, ride.id, ["approved"], lock=True):
            if request.payment_status != "authorized":
                captures.append(ItemOutcome.of(request, request.payment_status == "captured", "none"))
                continue
            outcome = await escrow.capture(request)
            request.payment_status = outcome.payment_status
            captures.append(ItemOutcome.of(request, outcome.succeeded, outcome.action, outcome.error))
            if outcome.succeeded:
                riders.append(request.passenger_id)

        ride.is_completed = True
        ride.completed_at = now or utcnow()
        ride.verification_code = None
        await db.execute(
            update(User)
            .where(User.id.in_([ride.driver_id] + riders))
            .values(total_rides=User.total_rides + 1)
            .execution_options(synchronize_session=False)
        )

    result = CompletionResult(ride=ride, captures=captures)
    if result.failures:
        logger.error(
            "Ride %s completed with %d failed capture(s): %s",
            ride.id, len(result.failures), [item.request_id for item in result.failures],
        )
    else:
        logger.info("Ride %s completed; %d fare(s) captured", ride.id, len(riders))
    return result


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

async def cancel_ride(
    db: AsyncSession,
    ride_id: str,
    acting_user_id: str,
    reason: str | None,
    *,
    escrow: PaymentEscrow,
    notifier: Notifier,
    now: datetime | None = None,
) -> CancellationResult:
    """
    The ride's owner cancels the whole ride (every pending and approved
    request is cancelled). An approved passenger cancels only their own seat.
    Either way, cancelling inside the late window records a strike; from the
    threshold on, a penalty is charged after the cancellation has committed.
    """
    now = now or utcnow()
    items: list[ItemOutcome] = []
    async with atomic(db):
        ride = await get_ride(db, ride_id, lock=True)
        if ride.is_cancelled:
            raise StateConflictError("This ride is already cancelled")
        if ride.is_completed:
            raise StateConflictError("This ride is already completed")
        if ride.is_started:
            raise StateConflictError("A started ride cannot be cancelled")

        if acting_user_id == ride.driver_id:
            scope, role = "ride", ride.ride_type
            affected = await requests_for_ride(db, ride.id, OPEN_STATUSES, lock=True)
            committed = sum((r.payment_amount for r in affected if r.status == "approved"), Decimal("0"))
            base = escrow.payout(committed) if role == "driver" else ride.price
            for request in affected:
                items.append(await _cancel_request(db, escrow, request))

            ride.is_cancelled = True
            ride.cancelled_by = role
            ride.cancelled_at = now
            ride.cancellation_reason = reason
            ride.start_verification_code = None
            ride.verification_code = None
        else:
            scope, role = "seat", "passenger"
            own = [
                r for r in await requests_for_ride(db, ride.id, OPEN_STATUSES, lock=True)
                if r.passenger_id == acting_user_id
            ]
            approved = [r for r in own if r.status == "approved"]
            if not approved:
                if own:
                    raise StateConflictError("Pending requests are withdrawn by cancelling the request itself")
                raise AuthorizationError("Only the driver or an approved passenger can cancel")
            base = ride.price
            items.append(await _cancel_request(db, escrow, approved[0]))

        await inventory.seats_left(db, ride)

        late = strikes.is_late_cancellation(ride.departure_time, now)
        strike_count = None
        penalty_applied = False
        amount = None
        if late:
            strike_count = await strikes.increment(db, acting_user_id, now)
            if strikes.penalty_applies(strike_count):
                amount = strikes.penalty_amount(base)
                # Nothing at stake (e.g. no approved passengers): the strike still counts
                penalty_applied = amount > 0

    result = CancellationResult(
        ride=ride,
        cancelled_by=role,
        scope=scope,
        late=late,
        strike_count=strike_count,
        penalty_applied=penalty_applied,
        penalty_amount=amount,
        requests=items,
    )
    logger.info(
        "Ride %s cancelled scope=%s by=%s late=%s strikes=%s penalty=%s",
        ride.id, scope, acting_user_id, late, strike_count, amount,
    )

    # Outside the transaction: a failed penalty never undoes the cancellation
    if penalty_applied:
        actor = await get_user(db, acting_user_id)
        outcome = await escrow.charge_penalty(
            actor, amount, role, idempotency_key=f"penalty-{ride.id}-{acting_user_id}-{strike_count}"
        )
        result.penalty_charged = outcome.succeeded
        result.penalty_error = outcome.error

    if scope == "ride":
        users = await get_users(db, [item.passenger_id for item in items])
        for item in items:
            user = users.get(item.passenger_id)
            if await notifier.send(user.phone if user else None, texts.ride_cancelled_text(ride, reason)):
                result.notifications_sent += 1
    else:
        users = await get_users(db, [ride.driver_id, acting_user_id])
        driver, passenger = users.get(ride.driver_id), users.get(acting_user_id)
        name = passenger.display_name if passenger and passenger.display_name else "A passenger"
        if await notifier.send(driver.phone if driver else None, texts.passenger_left_text(ride, name)):
            result.notifications_sent += 1
    return result


async def _cancel_request(db: AsyncSession, escrow: PaymentEscrow, request: RideRequest) -> ItemOutcome:
    was_approved = request.status == "approved"
    request.status = "canceled"
    outcome = await escrow.release(request)
    request.payment_status = outcome.payment_status
    if was_approved:
        await inventory.release(db, request.ride_id, request.baggage_check_in, request.baggage_personal)
    return ItemOutcome.of(request, outcome.succeeded, outcome.action, outcome.error)
