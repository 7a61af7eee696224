"""
Shared fixtures: an in-memory SQLite database per test, a recording payment
processor, and a recording SMS notifier.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("ALLOWED_EMAIL_DOMAIN", "ufl.edu")

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from trek.database import Base
from trek.models import Ride, RideRequest, User
from trek.services.notifications import Notifier
from trek.services.payment import PaymentEscrow
from trek.services.stripe_client import PaymentProcessor, PSPError


class FakeProcessor(PaymentProcessor):
    """Records every call; individual intents can be told to fail."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.amounts: dict[str, int] = {}
        self.calls: list[tuple] = []
        self.decline_authorize = False
        self.fail_capture: set[str] = set()
        self.fail_cancel: set[str] = set()
        self.settled: set[str] = set()
        self.fail_penalty = False

    async def authorize(self, amount_cents, customer_ref, payment_method_ref, payee_ref, fee_cents,
                        idempotency_key, metadata=None):
        self.calls.append(("authorize", amount_cents, customer_ref, payee_ref, fee_cents))
        if self.decline_authorize:
            raise PSPError("Your card was declined.", code="card_declined", status_code=402)
        intent = f"pi_{next(self._ids)}"
        self.amounts[intent] = amount_cents
        return intent

    async def capture(self, intent_ref):
        self.calls.append(("capture", intent_ref))
        if intent_ref in self.fail_capture:
            raise PSPError("capture failed", code="card_declined", status_code=402)
        self.settled.add(intent_ref)
        return self.amounts.get(intent_ref, 0)

    async def cancel(self, intent_ref):
        self.calls.append(("cancel", intent_ref))
        if intent_ref in self.fail_cancel:
            raise PSPError("processor unavailable", status_code=503)
        if intent_ref in self.settled:
            raise PSPError("already canceled", code="payment_intent_unexpected_state", status_code=400)
        self.settled.add(intent_ref)

    async def refund(self, intent_ref):
        self.calls.append(("refund", intent_ref))

    async def charge(self, amount_cents, customer_ref, payment_method_ref, description, idempotency_key):
        self.calls.append(("charge", amount_cents, customer_ref))
        if self.fail_penalty:
            raise PSPError("Your card was declined.", code="card_declined", status_code=402)
        return f"pi_penalty_{next(self._ids)}"

    async def debit_account(self, account_ref, amount_cents, description, idempotency_key):
        self.calls.append(("debit_account", amount_cents, account_ref))
        if self.fail_penalty:
            raise PSPError("insufficient funds", code="balance_insufficient", status_code=400)
        return f"py_{next(self._ids)}"

    def actions(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]


class FakeNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str | None, str]] = []

    async def send(self, to, message):
        self.sent.append((to, message))
        return bool(to) and not self.fail


class MemoryRedis:
    """Just enough of the redis.asyncio surface for the expiring key/value helpers."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, key):
        self.data.pop(key, None)
        self.ttls.pop(key, None)

    async def incr(self, key):
        self.data[key] = int(self.data.get(key, 0)) + 1
        return self.data[key]

    async def expire(self, key, ttl):
        self.ttls[key] = ttl


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def escrow(processor):
    return PaymentEscrow(processor, fee_percent=0.07)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def failing_notifier():
    return FakeNotifier(fail=True)


@pytest.fixture
def memory_redis():
    return MemoryRedis()


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    async def _make(user_id: str | None = None, payment: bool = True, connect: bool = True, **fields) -> User:
        n = next(counter)
        user_id = user_id or f"user-{n}"
        user = User(
            id=user_id,
            email=f"{user_id}@ufl.edu",
            display_name=fields.pop("display_name", f"Student {n}"),
            phone=fields.pop("phone", f"35255500{n:02d}"),
            stripe_customer_id=f"cus_{n}" if payment else None,
            default_payment_method_id=f"pm_{n}" if payment else None,
            stripe_connect_account_id=f"acct_{n}" if connect else None,
            **fields,
        )
        db.add(user)
        await db.commit()
        return user

    return _make


@pytest.fixture
def make_ride(db, now):
    async def _make(driver: User, seats: int = 2, price: str = "30.00", **fields) -> Ride:
        check_in_total = fields.pop("baggage_check_in_total", 2)
        personal_total = fields.pop("baggage_personal_total", 2)
        ride = Ride(
            driver_id=driver.id,
            origin=fields.pop("origin", "Gainesville"),
            destination=fields.pop("destination", "Orlando"),
            departure_time=fields.pop("departure_time", now + timedelta(days=7)),
            arrival_time=fields.pop("arrival_time", now + timedelta(days=7, hours=2)),
            seats_total=seats,
            seats_left=fields.pop("seats_left", seats),
            baggage_check_in_total=check_in_total,
            baggage_personal_total=personal_total,
            baggage_check_in_left=fields.pop("baggage_check_in_left", check_in_total),
            baggage_personal_left=fields.pop("baggage_personal_left", personal_total),
            price=Decimal(price),
            **fields,
        )
        db.add(ride)
        await db.commit()
        return ride

    return _make


@pytest.fixture
def make_request(db, now):
    """Insert a request row directly, already holding an authorization."""
    counter = itertools.count(1000)

    async def _make(ride: Ride, passenger: User, status: str = "pending", payment_status: str = "authorized",
                    **fields) -> RideRequest:
        request = RideRequest(
            ride_id=ride.id,
            passenger_id=passenger.id,
            status=status,
            payment_amount=ride.price,
            payment_status=payment_status,
            stripe_payment_intent_id=fields.pop("intent", f"pi_{next(counter)}"),
            payment_authorized_at=fields.pop("authorized_at", now),
            **fields,
        )
        db.add(request)
        await db.commit()
        return request

    return _make
