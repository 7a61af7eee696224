"""
Ride requests router: POST /v1/ride-requests, POST /v1/ride-requests/{id}/approve,
                       /reject, /cancel (passenger), /remove (driver)
"""
import logging

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from trek.database import get_db
from trek.dependencies import get_current_user, get_escrow, get_notifier
from trek.middleware.idempotency import check_idempotency, store_idempotency_result
from trek.models.user import User
from trek.schemas.schemas import (
    ItemOutcomeResponse, RideRequestActionResponse, RideRequestCreate, RideRequestResponse,
)
from trek.services import ride_requests as machine
from trek.services.notifications import Notifier
from trek.services.payment import PaymentEscrow
from trek.services.results import RequestResult

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/ride-requests", tags=["Ride requests"])


def _render(result: RequestResult) -> RideRequestActionResponse:
    return RideRequestActionResponse(
        request=RideRequestResponse.model_validate(result.request),
        notification_sent=result.notification_sent,
        seats_left=result.seats_left,
        auto_rejected=[ItemOutcomeResponse(**item.as_dict()) for item in result.auto_rejected],
        payment=ItemOutcomeResponse(**result.payment.as_dict()) if result.payment else None,
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RideRequestActionResponse)
async def create_ride_request(
    payload: RideRequestCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    escrow: PaymentEscrow = Depends(get_escrow),
    notifier: Notifier = Depends(get_notifier),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Request a seat. The fare is authorized (held, not charged) up front;
    a declined card means no request is created.
    """
    if idempotency_key:
        cached = await check_idempotency(user.id, idempotency_key)
        if cached:
            return cached

    result = await machine.create_ride_request(
        db,
        payload.ride_id,
        user.id,
        escrow=escrow,
        notifier=notifier,
        baggage_check_in=payload.baggage_check_in,
        baggage_personal=payload.baggage_personal,
        price=payload.price,
        message=payload.message,
        idempotency_key=idempotency_key,
    )
    response = _render(result)

    if idempotency_key:
        await store_idempotency_result(user.id, idempotency_key, 201, response.model_dump(mode="json"))
    return response


@router.post("/{request_id}/approve", response_model=RideRequestActionResponse)
async def approve_ride_request(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    escrow: PaymentEscrow = Depends(get_escrow),
    notifier: Notifier = Depends(get_notifier),
):
    result = await machine.approve_ride_request(db, request_id, user.id, escrow=escrow, notifier=notifier)
    return _render(result)


@router.post("/{request_id}/reject", response_model=RideRequestActionResponse)
async def reject_ride_request(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    escrow: PaymentEscrow = Depends(get_escrow),
    notifier: Notifier = Depends(get_notifier),
):
    result = await machine.reject_ride_request(db, request_id, user.id, escrow=escrow, notifier=notifier)
    return _render(result)


@router.post("/{request_id}/cancel", response_model=RideRequestActionResponse)
async def cancel_ride_request(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    escrow: PaymentEscrow = Depends(get_escrow),
):
    """Passenger withdraws a pending request."""
    result = await machine.cancel_ride_request_by_passenger(db, request_id, user.id, escrow=escrow)
    return _render(result)


@router.post("/{request_id}/remove", response_model=RideRequestActionResponse)
async def remove_passenger(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    escrow: PaymentEscrow = Depends(get_escrow),
    notifier: Notifier = Depends(get_notifier),
):
    """Driver removes one approved passenger; the ride stays open."""
    result = await machine.cancel_passenger_by_driver(db, request_id, user.id, escrow=escrow, notifier=notifier)
    return _render(result)
