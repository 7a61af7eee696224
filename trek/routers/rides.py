"""
Rides router: POST /v1/rides, GET /v1/rides/{id}, and the lifecycle
transitions: start-code, start, completion-code, complete, cancel.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from trek.database import get_db
from trek.dependencies import get_current_user, get_escrow, get_notifier
from trek.middleware.auth import AuthenticatedPrincipal, get_principal
from trek.models.user import User
from trek.schemas.schemas import (
    CancellationResponse, CompletionResponse, ItemOutcomeResponse, RideCancelRequest,
    RideCreateRequest, RideResponse, VerificationCodeResponse, VerifyCodeRequest,
)
from trek.services import rides as lifecycle
from trek.services.lookups import get_ride
from trek.services.notifications import Notifier
from trek.services.payment import PaymentEscrow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rides", tags=["Rides"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RideResponse)
async def create_ride(
    payload: RideCreateRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    ride = await lifecycle.create_ride(
        db,
        user.id,
        origin=payload.origin,
        origin_area=payload.origin_area,
        destination=payload.destination,
        destination_area=payload.destination_area,
        departure_time=payload.departure_time,
        arrival_time=payload.arrival_time,
        seats_total=payload.seats_total,
        baggage_check_in=payload.baggage_check_in,
        baggage_personal=payload.baggage_personal,
        price=payload.price,
        gender_preference=payload.gender_preference.value,
        car_model=payload.car_model,
        notes=payload.notes,
        ride_type=payload.ride_type.value,
    )
    return RideResponse.model_validate(ride)


@router.get("/{ride_id}", response_model=RideResponse)
async def read_ride(
    ride_id: str,
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedPrincipal = Depends(get_principal),
):
    return RideResponse.model_validate(await get_ride(db, ride_id))


@router.post("/{ride_id}/start-code", response_model=VerificationCodeResponse)
async def generate_start_code(
    ride_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Driver gets a one-time code to read out to a passenger at pickup."""
    result = await lifecycle.generate_start_code(db, ride_id, user.id)
    return VerificationCodeResponse(ride_id=result.ride.id, code=result.code)


@router.post("/{ride_id}/start", response_model=RideResponse)
async def verify_start(
    ride_id: str,
    payload: VerifyCodeRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    ride = await lifecycle.verify_start(db, ride_id, user.id, payload.code)
    return RideResponse.model_validate(ride)


@router.post("/{ride_id}/completion-code", response_model=VerificationCodeResponse)
async def generate_completion_code(
    ride_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    result = await lifecycle.generate_completion_code(db, ride_id, user.id)
    return VerificationCodeResponse(ride_id=result.ride.id, code=result.code)


@router.post("/{ride_id}/complete", response_model=CompletionResponse)
async def verify_completion(
    ride_id: str,
    payload: VerifyCodeRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    escrow: PaymentEscrow = Depends(get_escrow),
):
    """
    Capture every approved passenger's fare and close the ride.
    Failed captures are listed for follow-up; the ride closes regardless.
    """
    logger.info("Completion submitted for ride %s by %s", ride_id, user.id)
    result = await lifecycle.verify_completion(db, ride_id, payload.code, escrow=escrow)
    return CompletionResponse(
        ride=RideResponse.model_validate(result.ride),
        captures=[ItemOutcomeResponse(**item.as_dict()) for item in result.captures],
        failed_captures=len(result.failures),
    )


@router.post("/{ride_id}/cancel", response_model=CancellationResponse)
async def cancel_ride(
    ride_id: str,
    payload: RideCancelRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    escrow: PaymentEscrow = Depends(get_escrow),
    notifier: Notifier = Depends(get_notifier),
):
    result = await lifecycle.cancel_ride(db, ride_id, user.id, payload.reason, escrow=escrow, notifier=notifier)
    return CancellationResponse(
        ride=RideResponse.model_validate(result.ride),
        cancelled_by=result.cancelled_by,
        scope=result.scope,
        late_cancellation=result.late,
        strike_count=result.strike_count,
        penalty_applied=result.penalty_applied,
        penalty_amount=float(result.penalty_amount) if result.penalty_amount is not None else None,
        penalty_charged=result.penalty_charged,
        penalty_error=result.penalty_error,
        requests=[ItemOutcomeResponse(**item.as_dict()) for item in result.requests],
        notifications_sent=result.notifications_sent,
    )
