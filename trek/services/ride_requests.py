"""
Ride request state machine.

    pending -> approved | rejected | canceled      (all three terminal)

Every transition runs in one transaction together with its seat/baggage and
payment-status writes. SMS goes out only after the commit.
"""
import logging
import uuid
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trek.database import atomic, utcnow
from trek.errors import AuthorizationError, StateConflictError, ValidationError
from trek.models.ride_request import OPEN_STATUSES, RideRequest
from trek.services import inventory
from trek.services import notifications as texts
from trek.services.lookups import (
    check_hub_route, check_price, get_ride, get_user, get_users, lock_ride_and_request, requests_for_ride,
)
from trek.services.notifications import Notifier
from trek.services.payment import PaymentEscrow
from trek.services.results import ItemOutcome, RequestResult

logger = logging.getLogger(__name__)


async def create_ride_request(
    db: AsyncSession,
    ride_id: str,
    passenger_id: str,
    *,
    escrow: PaymentEscrow,
    notifier: Notifier,
    baggage_check_in: int = 0,
    baggage_personal: int = 0,
    price: Decimal | None = None,
    message: str | None = None,
    idempotency_key: str | None = None,
) -> RequestResult:
    """
    Authorize the fare, then persist the request as pending/authorized.
    A declined authorization leaves nothing behind.
    """
    if baggage_check_in < 0 or baggage_personal < 0:
        raise ValidationError("Baggage counts cannot be negative")

    ride = await get_ride(db, ride_id)
    if not ride.is_open or ride.is_started:
        raise StateConflictError("This ride is no longer accepting requests")
    if ride.ride_type != "driver":
        raise ValidationError("Seats can only be requested on driver offers")
    if ride.driver_id == passenger_id:
        raise ValidationError("You cannot request a seat on your own ride")
    check_hub_route(ride.origin, ride.destination)
    check_price(ride.price)
    if price is not None and abs(Decimal(price) - ride.price) > Decimal("0.01"):
        raise ValidationError(f"Amount mismatch. Expected {ride.price}")
    if ride.seats_left <= 0:
        raise StateConflictError("No seats left on this ride")
    if baggage_check_in > ride.baggage_check_in_left or baggage_personal > ride.baggage_personal_left:
        raise StateConflictError("Not enough baggage space left on this ride")

    existing = await db.scalar(
        select(RideRequest.id).where(
            RideRequest.ride_id == ride.id,
            RideRequest.passenger_id == passenger_id,
            RideRequest.status.in_(OPEN_STATUSES),
        )
    )
    if existing:
        raise StateConflictError("You already have an open request for this ride")

    passenger = await get_user(db, passenger_id)
    driver = await get_user(db, ride.driver_id)

    request = RideRequest(
        id=str(uuid.uuid4()),
        ride_id=ride.id,
        passenger_id=passenger_id,
        status="pending",
        message=message,
        payment_amount=ride.price,
        payment_status="pending",
        baggage_check_in=baggage_check_in,
        baggage_personal=baggage_personal,
    )
    request.stripe_payment_intent_id = await escrow.authorize(
        ride.price,
        payer=passenger,
        payee=driver,
        idempotency_key=idempotency_key or f"ride-request-{request.id}",
        metadata={"rideId": ride.id, "passengerId": passenger_id, "driverId": ride.driver_id},
    )
    request.payment_status = "authorized"
    request.payment_authorized_at = utcnow()

    try:
        async with atomic(db):
            db.add(request)
    except Exception:
        # Don't leave a hold on the card for a request that doesn't exist
        logger.error("Persisting request failed; releasing intent=%s", request.stripe_payment_intent_id)
        await escrow.cancel(request)
        raise

    logger.info("Ride request %s created ride=%s passenger=%s", request.id, ride.id, passenger_id)
    sent = await notifier.send(driver.phone, texts.new_request_text(ride, passenger.display_name or "A student"))
    return RequestResult(request=request, notification_sent=sent)


async def approve_ride_request(
    db: AsyncSession,
    request_id: str,
    driver_id: str,
    *,
    escrow: PaymentEscrow,
    notifier: Notifier,
) -> RequestResult:
    """
    Approve a pending request and take its seat. If that was the last seat,
    every other pending request on the ride is rejected and its hold released
    before this returns.
    """
    auto_rejected: list[ItemOutcome] = []
    async with atomic(db):
        ride, request = await lock_ride_and_request(db, request_id)
        if ride.driver_id != driver_id:
            raise AuthorizationError("Only the driver can approve requests for this ride")
        if request.status == "rejected" and ride.seats_left <= 0:
            # Lost the race for the last seat; the winner's cascade rejected this one
            raise StateConflictError("No seats left on this ride")
        if request.status != "pending":
            raise StateConflictError(f"Request is already {request.status}")
        if request.payment_status != "authorized":
            raise StateConflictError("Payment has not been authorized for this request")
        if not ride.is_open or ride.is_started:
            raise StateConflictError("This ride can no longer take passengers")

        duplicate = await db.scalar(
            select(RideRequest.id).where(
                RideRequest.ride_id == ride.id,
                RideRequest.passenger_id == request.passenger_id,
                RideRequest.status == "approved",
            )
        )
        if duplicate:
            raise StateConflictError("This passenger already has an approved seat on the ride")

        await inventory.reserve(db, ride.id, request.baggage_check_in, request.baggage_personal)
        result = await db.execute(
            update(RideRequest)
            .where(
                RideRequest.id == request.id,
                RideRequest.status == "pending",
                RideRequest.payment_status == "authorized",
            )
            .values(status="approved")
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError("Request changed while approving; try again")
        await db.refresh(request)

        remaining = await inventory.seats_left(db, ride)
        if remaining == 0:
            siblings = await requests_for_ride(db, ride.id, ["pending"], lock=True)
            for sibling in siblings:
                sibling.status = "rejected"
                outcome = await escrow.release(sibling)
                sibling.payment_status = outcome.payment_status
                auto_rejected.append(ItemOutcome.of(sibling, outcome.succeeded, outcome.action, outcome.error))
            if siblings:
                logger.info("Ride %s full; auto-rejected %d pending request(s)", ride.id, len(siblings))

    logger.info("Ride request %s approved seats_left=%d", request.id, ride.seats_left)
    users = await get_users(db, [request.passenger_id] + [item.passenger_id for item in auto_rejected])
    sent = await notifier.send(_phone(users, request.passenger_id), texts.approved_text(ride))
    for item in auto_rejected:
        await notifier.send(_phone(users, item.passenger_id), texts.ride_full_text(ride))
    return RequestResult(
        request=request,
        notification_sent=sent,
        seats_left=ride.seats_left,
        auto_rejected=auto_rejected,
    )


async def reject_ride_request(
    db: AsyncSession,
    request_id: str,
    driver_id: str,
    *,
    escrow: PaymentEscrow,
    notifier: Notifier,
) -> RequestResult:
    async with atomic(db):
        ride, request = await lock_ride_and_request(db, request_id)
        if ride.driver_id != driver_id:
            raise AuthorizationError("Only the driver can reject requests for this ride")
        if request.status != "pending":
            raise StateConflictError(f"Request is already {request.status}")
        request.status = "rejected"
        payment = await _release(escrow, request)

    logger.info("Ride request %s rejected", request.id)
    passenger = await get_user(db, request.passenger_id)
    sent = await notifier.send(passenger.phone, texts.rejected_text(ride))
    return RequestResult(request=request, notification_sent=sent, payment=payment)


async def cancel_ride_request_by_passenger(
    db: AsyncSession,
    request_id: str,
    passenger_id: str,
    *,
    escrow: PaymentEscrow,
) -> RequestResult:
    """Passengers may withdraw pending requests only; approved seats go through ride cancellation."""
    async with atomic(db):
        _, request = await lock_ride_and_request(db, request_id)
        if request.passenger_id != passenger_id:
            raise AuthorizationError("You can only cancel your own requests")
        if request.status == "approved":
            raise StateConflictError("Approved requests must be cancelled through the ride cancellation flow")
        if request.status != "pending":
            raise StateConflictError(f"Request is already {request.status}")
        request.status = "canceled"
        payment = await _release(escrow, request)

    logger.info("Ride request %s withdrawn by passenger", request.id)
    return RequestResult(request=request, payment=payment)


async def cancel_passenger_by_driver(
    db: AsyncSession,
    request_id: str,
    driver_id: str,
    *,
    escrow: PaymentEscrow,
    notifier: Notifier,
) -> RequestResult:
    """Remove one approved passenger without cancelling the ride."""
    async with atomic(db):
        ride, request = await lock_ride_and_request(db, request_id)
        if ride.driver_id != driver_id:
            raise AuthorizationError("Only the driver can remove passengers from this ride")
        if request.status != "approved":
            raise StateConflictError("Only approved passengers can be removed")
        if ride.is_completed or ride.is_cancelled:
            raise StateConflictError("This ride is already closed")

        request.status = "canceled"
        payment = await _release(escrow, request)
        await inventory.release(db, ride.id, request.baggage_check_in, request.baggage_personal)
        await inventory.seats_left(db, ride)

    logger.info("Passenger %s removed from ride %s", request.passenger_id, ride.id)
    passenger = await get_user(db, request.passenger_id)
    sent = await notifier.send(passenger.phone, texts.removed_text(ride))
    return RequestResult(request=request, notification_sent=sent, seats_left=ride.seats_left, payment=payment)


async def _release(escrow: PaymentEscrow, request: RideRequest) -> ItemOutcome:
    outcome = await escrow.release(request)
    request.payment_status = outcome.payment_status
    return ItemOutcome.of(request, outcome.succeeded, outcome.action, outcome.error)


def _phone(users: dict, user_id: str) -> str | None:
    user = users.get(user_id)
    return user.phone if user else None
