import logging

from sqlalchemy.ext.asyncio import AsyncSession

from trek.database import atomic
from trek.middleware.auth import AuthenticatedPrincipal
from trek.models.user import User

logger = logging.getLogger(__name__)


async def sync_user(db: AsyncSession, principal: AuthenticatedPrincipal) -> User:
    """Create or refresh the local profile for an authenticated principal."""
    async with atomic(db):
        user = await db.get(User, principal.id)
        if user is None:
            user = User(
                id=principal.id,
                email=principal.email,
                display_name=principal.display_name or principal.email.split("@")[0],
                email_verified=principal.email_verified,
            )
            db.add(user)
            logger.info("Created profile for %s", principal.id)
        else:
            user.email = principal.email
            user.email_verified = principal.email_verified
            if principal.display_name:
                user.display_name = principal.display_name
    return user


async def set_payment_profile(
    db: AsyncSession,
    user: User,
    *,
    stripe_customer_id: str | None = None,
    default_payment_method_id: str | None = None,
    stripe_connect_account_id: str | None = None,
) -> User:
    async with atomic(db):
        if stripe_customer_id is not None:
            user.stripe_customer_id = stripe_customer_id
        if default_payment_method_id is not None:
            user.default_payment_method_id = default_payment_method_id
        if stripe_connect_account_id is not None:
            user.stripe_connect_account_id = stripe_connect_account_id
    return user


async def mark_phone_verified(db: AsyncSession, user: User, phone: str) -> User:
    async with atomic(db):
        user.phone = phone
        user.phone_verified = True
    return user
