from dataclasses import dataclass, field, asdict
from decimal import Decimal

from trek.models.ride import Ride
from trek.models.ride_request import RideRequest


@dataclass
class ItemOutcome:
    """Per-request result inside a batch (cascade, completion, sweep)."""
    request_id: str
    passenger_id: str
    status: str
    payment_status: str
    succeeded: bool
    action: str = ""
    error: str | None = None

    @classmethod
    def of(cls, request: RideRequest, succeeded: bool, action: str = "", error: str | None = None) -> "ItemOutcome":
        return cls(
            request_id=request.id,
            passenger_id=request.passenger_id,
            status=request.status,
            payment_status=request.payment_status,
            succeeded=succeeded,
            action=action,
            error=error,
        )

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class RequestResult:
    request: RideRequest
    notification_sent: bool = False
    seats_left: int | None = None
    auto_rejected: list[ItemOutcome] = field(default_factory=list)
    payment: ItemOutcome | None = None


@dataclass
class CodeResult:
    ride: Ride
    code: str


@dataclass
class CompletionResult:
    ride: Ride
    captures: list[ItemOutcome] = field(default_factory=list)

    @property
    def failures(self) -> list[ItemOutcome]:
        return [item for item in self.captures if not item.succeeded]


@dataclass
class CancellationResult:
    ride: Ride
    cancelled_by: str
    scope: str  # "ride" | "seat"
    late: bool
    strike_count: int | None
    penalty_applied: bool = False
    penalty_amount: Decimal | None = None
    penalty_charged: bool | None = None
    penalty_error: str | None = None
    requests: list[ItemOutcome] = field(default_factory=list)
    notifications_sent: int = 0


@dataclass
class SweepResult:
    scanned: int = 0
    items: list[ItemOutcome] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if not item.succeeded)
