from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RideTypeEnum(str, Enum):
    driver = "driver"
    passenger = "passenger"


class GenderPreferenceEnum(str, Enum):
    no_preference = "no_preference"
    female_only = "female_only"
    male_only = "male_only"


class RequestStatusEnum(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    canceled = "canceled"


class PaymentStatusEnum(str, Enum):
    pending = "pending"
    authorized = "authorized"
    captured = "captured"
    canceled = "canceled"
    failed = "failed"


# ---------------------------------------------------------------------------
# Ride schemas
# ---------------------------------------------------------------------------

class RideCreateRequest(BaseModel):
    origin: str = Field(..., min_length=2, max_length=120)
    origin_area: str = Field("", max_length=120)
    destination: str = Field(..., min_length=2, max_length=120)
    destination_area: str = Field("", max_length=120)
    departure_time: datetime
    arrival_time: datetime
    seats_total: int = Field(..., ge=1, le=8)
    baggage_check_in: int = Field(0, ge=0, le=10)
    baggage_personal: int = Field(0, ge=0, le=10)
    price: Decimal = Field(..., gt=0, decimal_places=2)
    gender_preference: GenderPreferenceEnum = GenderPreferenceEnum.no_preference
    car_model: Optional[str] = Field(None, max_length=120)
    notes: Optional[str] = Field(None, max_length=1000)
    ride_type: RideTypeEnum = RideTypeEnum.driver


class RideResponse(BaseModel):
    id: str
    driver_id: str
    origin: str
    origin_area: str
    destination: str
    destination_area: str
    departure_time: datetime
    arrival_time: datetime
    seats_total: int
    seats_left: int
    baggage_check_in_total: int
    baggage_personal_total: int
    baggage_check_in_left: int
    baggage_personal_left: int
    price: float
    gender_preference: str
    car_model: Optional[str] = None
    ride_type: str
    is_started: bool
    started_at: Optional[datetime] = None
    is_completed: bool
    is_cancelled: bool
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class VerificationCodeResponse(BaseModel):
    ride_id: str
    code: str


class VerifyCodeRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=10)

    @field_validator("code")
    @classmethod
    def digits_only(cls, v: str) -> str:
        v = v.strip()
        if not v.isdigit():
            raise ValueError("code must be numeric")
        return v


class RideCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ---------------------------------------------------------------------------
# Ride request schemas
# ---------------------------------------------------------------------------

class RideRequestCreate(BaseModel):
    ride_id: str
    message: Optional[str] = Field(None, max_length=500)
    baggage_check_in: int = Field(0, ge=0, le=10)
    baggage_personal: int = Field(0, ge=0, le=10)
    # Optional echo of the displayed fare; must match the server-side price
    price: Optional[Decimal] = Field(None, gt=0)


class RideRequestResponse(BaseModel):
    id: str
    ride_id: str
    passenger_id: str
    status: RequestStatusEnum
    message: Optional[str] = None
    payment_amount: float
    payment_status: PaymentStatusEnum
    baggage_check_in: int
    baggage_personal: int
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ItemOutcomeResponse(BaseModel):
    request_id: str
    passenger_id: str
    status: str
    payment_status: str
    succeeded: bool
    action: str = ""
    error: Optional[str] = None


class RideRequestActionResponse(BaseModel):
    request: RideRequestResponse
    notification_sent: bool = False
    seats_left: Optional[int] = None
    auto_rejected: list[ItemOutcomeResponse] = []
    payment: Optional[ItemOutcomeResponse] = None


# ---------------------------------------------------------------------------
# Lifecycle results
# ---------------------------------------------------------------------------

class CompletionResponse(BaseModel):
    ride: RideResponse
    captures: list[ItemOutcomeResponse]
    failed_captures: int


class CancellationResponse(BaseModel):
    ride: RideResponse
    cancelled_by: str
    scope: str
    late_cancellation: bool
    strike_count: Optional[int] = None
    penalty_applied: bool
    penalty_amount: Optional[float] = None
    penalty_charged: Optional[bool] = None
    penalty_error: Optional[str] = None
    requests: list[ItemOutcomeResponse]
    notifications_sent: int


class SweepResponse(BaseModel):
    scanned: int
    settled: int
    failed: int
    items: list[ItemOutcomeResponse]


# ---------------------------------------------------------------------------
# User schemas
# ---------------------------------------------------------------------------

class UserResponse(BaseModel):
    id: str
    email: str
    display_name: str
    email_verified: bool
    phone: Optional[str] = None
    phone_verified: bool
    has_payment_method: bool
    cancellation_strike_count: int
    total_rides: int

    model_config = {"from_attributes": True}


class PaymentProfileRequest(BaseModel):
    stripe_customer_id: Optional[str] = Field(None, pattern=r"^cus_\w+$")
    default_payment_method_id: Optional[str] = Field(None, pattern=r"^pm_\w+$")
    stripe_connect_account_id: Optional[str] = Field(None, pattern=r"^acct_\w+$")


class PhoneCodeRequest(BaseModel):
    phone: str = Field(..., min_length=10, max_length=20)


class PhoneVerifyRequest(BaseModel):
    phone: str = Field(..., min_length=10, max_length=20)
    code: str = Field(..., min_length=6, max_length=6)
