"""
Ride request state machine: create / approve / reject / withdraw / remove.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from trek.errors import AuthorizationError, NotFoundError, PaymentError, StateConflictError, ValidationError
from trek.models import RideRequest
from trek.services import lookups
from trek.services import ride_requests as machine
from trek.services.sweeper import run_settlement_sweep


async def _reload(db, obj):
    await db.refresh(obj)
    return obj


async def _approved_count(db, ride_id):
    return await db.scalar(
        select(func.count()).select_from(RideRequest).where(
            RideRequest.ride_id == ride_id, RideRequest.status == "approved"
        )
    )


@pytest.mark.asyncio
class TestCreateRideRequest:
    async def test_authorizes_fare_and_persists_pending(self, db, escrow, processor, notifier, make_user, make_ride):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)

        result = await machine.create_ride_request(db, ride.id, passenger.id, escrow=escrow, notifier=notifier)

        request = result.request
        assert request.status == "pending"
        assert request.payment_status == "authorized"
        assert request.payment_amount == Decimal("30.00")
        assert request.stripe_payment_intent_id.startswith("pi_")
        # 30.00 USD, 7% platform fee, payee is the driver's connected account
        assert processor.actions("authorize") == [("authorize", 3000, passenger.stripe_customer_id, driver.stripe_connect_account_id, 210)]
        assert result.notification_sent is True
        assert notifier.sent[0][0] == driver.phone

    async def test_declined_card_creates_nothing(self, db, escrow, processor, notifier, make_user, make_ride):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)
        processor.decline_authorize = True

        with pytest.raises(PaymentError):
            await machine.create_ride_request(db, ride.id, passenger.id, escrow=escrow, notifier=notifier)

        assert await db.scalar(select(func.count()).select_from(RideRequest)) == 0
        assert notifier.sent == []

    async def test_requires_stored_payment_method(self, db, escrow, processor, notifier, make_user, make_ride):
        driver = await make_user("driver")
        passenger = await make_user("rider", payment=False)
        ride = await make_ride(driver)

        with pytest.raises(ValidationError):
            await machine.create_ride_request(db, ride.id, passenger.id, escrow=escrow, notifier=notifier)
        assert processor.calls == []

    async def test_route_must_touch_hub_city(self, db, escrow, notifier, make_user, make_ride):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver, origin="Tampa", destination="Orlando")

        with pytest.raises(ValidationError):
            await machine.create_ride_request(db, ride.id, passenger.id, escrow=escrow, notifier=notifier)

    async def test_client_price_must_match_server_price(self, db, escrow, notifier, make_user, make_ride):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver, price="30.00")

        with pytest.raises(ValidationError, match="Amount mismatch"):
            await machine.create_ride_request(
                db, ride.id, passenger.id, escrow=escrow, notifier=notifier, price=Decimal("1.00")
            )

    async def test_driver_cannot_request_own_ride(self, db, escrow, notifier, make_user, make_ride):
        driver = await make_user("driver")
        ride = await make_ride(driver)

        with pytest.raises(ValidationError):
            await machine.create_ride_request(db, ride.id, driver.id, escrow=escrow, notifier=notifier)

    async def test_second_open_request_conflicts(self, db, escrow, notifier, make_user, make_ride):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)
        await machine.create_ride_request(db, ride.id, passenger.id, escrow=escrow, notifier=notifier)

        with pytest.raises(StateConflictError):
            await machine.create_ride_request(db, ride.id, passenger.id, escrow=escrow, notifier=notifier)

    async def test_cancelled_ride_rejects_requests(self, db, escrow, notifier, make_user, make_ride):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver, is_cancelled=True)

        with pytest.raises(StateConflictError):
            await machine.create_ride_request(db, ride.id, passenger.id, escrow=escrow, notifier=notifier)

    async def test_baggage_over_capacity_conflicts(self, db, escrow, notifier, make_user, make_ride):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver, baggage_check_in_left=1)

        with pytest.raises(StateConflictError):
            await machine.create_ride_request(
                db, ride.id, passenger.id, escrow=escrow, notifier=notifier, baggage_check_in=2
            )

    async def test_sms_failure_does_not_fail_creation(self, db, escrow, failing_notifier, make_user, make_ride):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)

        result = await machine.create_ride_request(
            db, ride.id, passenger.id, escrow=escrow, notifier=failing_notifier
        )
        assert result.request.status == "pending"
        assert result.notification_sent is False


@pytest.mark.asyncio
class TestApproveRideRequest:
    async def test_two_seats_two_approvals_no_cascade(self, db, escrow, processor, notifier, make_user, make_ride):
        driver = await make_user("driver")
        a, b = await make_user("a"), await make_user("b")
        ride = await make_ride(driver, seats=2)
        req_a = (await machine.create_ride_request(db, ride.id, a.id, escrow=escrow, notifier=notifier)).request
        req_b = (await machine.create_ride_request(db, ride.id, b.id, escrow=escrow, notifier=notifier)).request

        first = await machine.approve_ride_request(db, req_a.id, driver.id, escrow=escrow, notifier=notifier)
        assert first.seats_left == 1
        assert (await _reload(db, req_b)).status == "pending"

        second = await machine.approve_ride_request(db, req_b.id, driver.id, escrow=escrow, notifier=notifier)
        assert second.seats_left == 0
        assert second.auto_rejected == []
        assert processor.actions("cancel") == []

    async def test_filling_last_seat_rejects_every_pending_sibling(
        self, db, escrow, processor, notifier, make_user, make_ride
    ):
        driver = await make_user("driver")
        a, b, c, d = [await make_user(name) for name in ("a", "b", "c", "d")]
        ride = await make_ride(driver, seats=2)
        reqs = [
            (await machine.create_ride_request(db, ride.id, p.id, escrow=escrow, notifier=notifier)).request
            for p in (a, b, c, d)
        ]

        await machine.approve_ride_request(db, reqs[0].id, driver.id, escrow=escrow, notifier=notifier)
        result = await machine.approve_ride_request(db, reqs[1].id, driver.id, escrow=escrow, notifier=notifier)

        assert result.seats_left == 0
        assert {item.request_id for item in result.auto_rejected} == {reqs[2].id, reqs[3].id}
        for request in reqs[2:]:
            await _reload(db, request)
            assert request.status == "rejected"
            assert request.payment_status == "canceled"
        cancelled = {call[1] for call in processor.actions("cancel")}
        assert cancelled == {reqs[2].stripe_payment_intent_id, reqs[3].stripe_payment_intent_id}
        await _reload(db, ride)
        assert ride.seats_total - ride.seats_left == await _approved_count(db, ride.id)

    async def test_approval_decrements_baggage(self, db, escrow, notifier, make_user, make_ride):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver, seats=3, baggage_check_in_left=2, baggage_personal_left=2)
        request = (
            await machine.create_ride_request(
                db, ride.id, passenger.id, escrow=escrow, notifier=notifier, baggage_check_in=1, baggage_personal=2
            )
        ).request

        await machine.approve_ride_request(db, request.id, driver.id, escrow=escrow, notifier=notifier)

        await _reload(db, ride)
        assert (ride.seats_left, ride.baggage_check_in_left, ride.baggage_personal_left) == (2, 1, 0)

    async def test_only_driver_can_approve(self, db, escrow, notifier, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)
        request = await make_request(ride, passenger)

        with pytest.raises(AuthorizationError):
            await machine.approve_ride_request(db, request.id, passenger.id, escrow=escrow, notifier=notifier)
        assert (await _reload(db, request)).status == "pending"
        assert (await _reload(db, ride)).seats_left == 2

    async def test_terminal_request_cannot_be_approved(self, db, escrow, notifier, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)
        request = await make_request(ride, passenger, status="rejected", payment_status="canceled")

        with pytest.raises(StateConflictError):
            await machine.approve_ride_request(db, request.id, driver.id, escrow=escrow, notifier=notifier)

    async def test_unauthorized_payment_blocks_approval(self, db, escrow, notifier, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)
        request = await make_request(ride, passenger, payment_status="pending")

        with pytest.raises(StateConflictError):
            await machine.approve_ride_request(db, request.id, driver.id, escrow=escrow, notifier=notifier)
        assert (await _reload(db, ride)).seats_left == 2

    async def test_no_seats_left_is_definitive(self, db, escrow, notifier, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver, seats=1, seats_left=0)
        request = await make_request(ride, passenger)

        with pytest.raises(StateConflictError, match="No seats left"):
            await machine.approve_ride_request(db, request.id, driver.id, escrow=escrow, notifier=notifier)
        assert (await _reload(db, request)).status == "pending"
        assert (await _reload(db, ride)).seats_left == 0

    async def test_loser_of_last_seat_gets_no_seats_left(self, db, escrow, notifier, make_user, make_ride):
        driver = await make_user("driver")
        a, b = await make_user("a"), await make_user("b")
        ride = await make_ride(driver, seats=1)
        req_a = (await machine.create_ride_request(db, ride.id, a.id, escrow=escrow, notifier=notifier)).request
        req_b = (await machine.create_ride_request(db, ride.id, b.id, escrow=escrow, notifier=notifier)).request

        await machine.approve_ride_request(db, req_a.id, driver.id, escrow=escrow, notifier=notifier)
        with pytest.raises(StateConflictError, match="No seats left"):
            await machine.approve_ride_request(db, req_b.id, driver.id, escrow=escrow, notifier=notifier)

        assert (await _reload(db, ride)).seats_left == 0
        assert await _approved_count(db, ride.id) == 1

    async def test_passenger_cannot_hold_two_approved_seats(self, db, escrow, notifier, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver, seats=3, seats_left=2)
        await make_request(ride, passenger, status="approved")
        second = await make_request(ride, passenger)

        with pytest.raises(StateConflictError, match="already has an approved seat"):
            await machine.approve_ride_request(db, second.id, driver.id, escrow=escrow, notifier=notifier)

        assert (await _reload(db, second)).status == "pending"
        assert (await _reload(db, ride)).seats_left == 2
        assert await _approved_count(db, ride.id) == 1

    async def test_database_refuses_second_approved_row(self, db, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver, seats=3, seats_left=1)
        await make_request(ride, passenger, status="approved")

        with pytest.raises(IntegrityError):
            await make_request(ride, passenger, status="approved")
        await db.rollback()
        await db.refresh(ride)
        await db.refresh(passenger)

        # Terminal rows for the same pair are unconstrained
        await make_request(ride, passenger, status="canceled", payment_status="canceled")
        assert await _approved_count(db, ride.id) == 1

    async def test_passenger_notified_on_approval(self, db, escrow, notifier, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)
        request = await make_request(ride, passenger)

        result = await machine.approve_ride_request(db, request.id, driver.id, escrow=escrow, notifier=notifier)

        assert result.notification_sent is True
        assert notifier.sent[-1][0] == passenger.phone
        assert "approved" in notifier.sent[-1][1]


@pytest.mark.asyncio
class TestRejectAndCancel:
    async def test_reject_releases_hold(self, db, escrow, processor, notifier, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)
        request = await make_request(ride, passenger, intent="pi_reject")

        result = await machine.reject_ride_request(db, request.id, driver.id, escrow=escrow, notifier=notifier)

        assert result.request.status == "rejected"
        assert result.request.payment_status == "canceled"
        assert processor.actions("cancel") == [("cancel", "pi_reject")]
        assert result.notification_sent is True

    async def test_reject_by_stranger_is_forbidden(self, db, escrow, notifier, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        stranger = await make_user("stranger")
        ride = await make_ride(driver)
        request = await make_request(ride, passenger)

        with pytest.raises(AuthorizationError):
            await machine.reject_ride_request(db, request.id, stranger.id, escrow=escrow, notifier=notifier)

    async def test_passenger_withdraws_pending(self, db, escrow, processor, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)
        request = await make_request(ride, passenger)

        result = await machine.cancel_ride_request_by_passenger(db, request.id, passenger.id, escrow=escrow)

        assert result.request.status == "canceled"
        assert result.request.payment_status == "canceled"

    async def test_passenger_cannot_withdraw_approved(self, db, escrow, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver, seats=2, seats_left=1)
        request = await make_request(ride, passenger, status="approved")

        with pytest.raises(StateConflictError):
            await machine.cancel_ride_request_by_passenger(db, request.id, passenger.id, escrow=escrow)

    async def test_already_released_hold_is_not_fatal(self, db, escrow, processor, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)
        request = await make_request(ride, passenger, intent="pi_gone")
        processor.settled.add("pi_gone")

        result = await machine.cancel_ride_request_by_passenger(db, request.id, passenger.id, escrow=escrow)

        assert result.request.status == "canceled"
        assert result.payment.succeeded is True

    async def test_driver_removes_approved_passenger(
        self, db, escrow, processor, notifier, make_user, make_ride, make_request
    ):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver, seats=3, seats_left=2, baggage_check_in_left=1)
        request = await make_request(ride, passenger, status="approved", baggage_check_in=1)

        result = await machine.cancel_passenger_by_driver(db, request.id, driver.id, escrow=escrow, notifier=notifier)

        assert result.request.status == "canceled"
        assert result.request.payment_status == "canceled"
        assert result.seats_left == 3
        await _reload(db, ride)
        assert ride.baggage_check_in_left == 2
        assert ride.seats_total - ride.seats_left == await _approved_count(db, ride.id)
        assert ride.is_cancelled is False
        assert notifier.sent[-1][0] == passenger.phone

    async def test_remove_requires_approved_request(self, db, escrow, notifier, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        ride = await make_ride(driver)
        request = await make_request(ride, passenger)

        with pytest.raises(StateConflictError):
            await machine.cancel_passenger_by_driver(db, request.id, driver.id, escrow=escrow, notifier=notifier)

    async def test_seat_release_never_exceeds_total(self, db, escrow, notifier, make_user, make_ride, make_request):
        driver = await make_user("driver")
        passenger = await make_user("rider")
        # Counter already at the top: release must clamp
        ride = await make_ride(driver, seats=2, seats_left=2)
        request = await make_request(ride, passenger, status="approved")

        result = await machine.cancel_passenger_by_driver(db, request.id, driver.id, escrow=escrow, notifier=notifier)

        assert result.seats_left == 2


@pytest.fixture
def lock_log(monkeypatch):
    """Record the order rows are locked in."""
    log = []
    get_ride, get_request = lookups.get_ride, lookups.get_request

    async def ride_spy(db, ride_id, lock=False):
        if lock:
            log.append("ride")
        return await get_ride(db, ride_id, lock)

    async def request_spy(db, request_id, lock=False):
        if lock:
            log.append("request")
        return await get_request(db, request_id, lock)

    monkeypatch.setattr(lookups, "get_ride", ride_spy)
    monkeypatch.setattr(lookups, "get_request", request_spy)
    return log


@pytest.mark.asyncio
class TestLockOrder:
    async def test_approve_locks_ride_first(self, db, escrow, notifier, make_user, make_ride, make_request, lock_log):
        driver = await make_user("driver")
        ride = await make_ride(driver)
        request = await make_request(ride, await make_user("rider"))

        await machine.approve_ride_request(db, request.id, driver.id, escrow=escrow, notifier=notifier)

        assert lock_log == ["ride", "request"]

    async def test_reject_locks_ride_first(self, db, escrow, notifier, make_user, make_ride, make_request, lock_log):
        driver = await make_user("driver")
        ride = await make_ride(driver)
        request = await make_request(ride, await make_user("rider"))

        await machine.reject_ride_request(db, request.id, driver.id, escrow=escrow, notifier=notifier)

        assert lock_log == ["ride", "request"]

    async def test_remove_locks_ride_first(self, db, escrow, notifier, make_user, make_ride, make_request, lock_log):
        driver = await make_user("driver")
        ride = await make_ride(driver, seats=2, seats_left=1)
        request = await make_request(ride, await make_user("rider"), status="approved")

        await machine.cancel_passenger_by_driver(db, request.id, driver.id, escrow=escrow, notifier=notifier)

        assert lock_log == ["ride", "request"]

    async def test_unknown_request_is_not_found(self, db, escrow, notifier, make_user):
        driver = await make_user("driver")
        with pytest.raises(NotFoundError):
            await machine.approve_ride_request(db, "missing", driver.id, escrow=escrow, notifier=notifier)

    async def test_settlement_locks_ride_first(self, db, escrow, notifier, make_user, make_ride, make_request, now, lock_log):
        driver = await make_user("driver")
        ride = await make_ride(driver)
        await make_request(ride, await make_user("rider"), authorized_at=now - timedelta(hours=30))

        result = await run_settlement_sweep(db, escrow=escrow, notifier=notifier, now=now)

        assert [item.action for item in result.items] == ["cancel"]
        assert lock_log == ["ride", "request"]
