from functools import lru_cache

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from trek.config import get_settings
from trek.database import get_db
from trek.middleware.auth import AuthenticatedPrincipal, get_principal
from trek.models.user import User
from trek.services.notifications import Notifier, TwilioNotifier
from trek.services.payment import PaymentEscrow
from trek.services.stripe_client import StripeProcessor
from trek.services.users import sync_user

settings = get_settings()


@lru_cache
def get_escrow() -> PaymentEscrow:
    return PaymentEscrow(StripeProcessor())


@lru_cache
def get_notifier() -> Notifier:
    return TwilioNotifier()


async def get_current_user(
    principal: AuthenticatedPrincipal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> User:
    return await sync_user(db, principal)


async def require_admin(principal: AuthenticatedPrincipal = Depends(get_principal)) -> AuthenticatedPrincipal:
    if principal.email.lower() not in {email.lower() for email in settings.admin_emails}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return principal
