"""
Users router: GET /v1/users/me, PUT /v1/users/me/payment-profile,
               POST /v1/users/me/phone/code, POST /v1/users/me/phone/verify
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from trek.database import get_db
from trek.dependencies import get_current_user, get_notifier
from trek.models.user import User
from trek.redis_client import get_redis
from trek.schemas.schemas import PaymentProfileRequest, PhoneCodeRequest, PhoneVerifyRequest, UserResponse
from trek.services import otp, users
from trek.services.notifications import Notifier

router = APIRouter(prefix="/v1/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def read_me(user: User = Depends(get_current_user)):
    return UserResponse.model_validate(user)


@router.put("/me/payment-profile", response_model=UserResponse)
async def update_payment_profile(
    payload: PaymentProfileRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Store the Stripe references created by the client-side setup flow."""
    user = await users.set_payment_profile(db, user, **payload.model_dump())
    return UserResponse.model_validate(user)


@router.post("/me/phone/code")
async def send_phone_code(
    payload: PhoneCodeRequest,
    user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
):
    redis = await get_redis()
    sent = await otp.issue_code(redis, notifier, user.id, payload.phone)
    return {"sent": sent}


@router.post("/me/phone/verify", response_model=UserResponse)
async def verify_phone(
    payload: PhoneVerifyRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    redis = await get_redis()
    await otp.check_code(redis, user.id, payload.phone, payload.code)
    user = await users.mark_phone_verified(db, user, payload.phone)
    return UserResponse.model_validate(user)
