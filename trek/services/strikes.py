"""
Late-cancellation strike ledger and penalty policy.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trek.config import get_settings
from trek.database import as_utc, utcnow
from trek.models.user import User
from trek.services.payment import quantize

logger = logging.getLogger(__name__)
settings = get_settings()


def hours_until(departure: datetime, now: datetime) -> float:
    return (as_utc(departure) - now).total_seconds() / 3600


def is_late_cancellation(departure: datetime, now: datetime) -> bool:
    return hours_until(departure, now) < settings.late_cancellation_hours


def penalty_applies(strike_count: int) -> bool:
    """The first strike is a warning; every strike from the threshold on is charged."""
    return strike_count >= settings.strike_penalty_threshold


def penalty_amount(base: Decimal) -> Decimal:
    return quantize(Decimal(base) * Decimal(str(settings.penalty_percent)))


async def increment(db: AsyncSession, user_id: str, now: datetime | None = None) -> int:
    """Record one strike and return the user's new count."""
    now = now or utcnow()
    values = {"cancellation_strike_count": User.cancellation_strike_count + 1}

    if settings.strike_decay_days:
        # Strikes older than the decay window are forgiven before counting this one
        await db.execute(
            update(User)
            .where(User.id == user_id, User.strike_reset_date.is_not(None), User.strike_reset_date <= now)
            .values(cancellation_strike_count=0)
            .execution_options(synchronize_session=False)
        )
        values["strike_reset_date"] = now + timedelta(days=settings.strike_decay_days)

    await db.execute(
        update(User).where(User.id == user_id).values(**values).execution_options(synchronize_session=False)
    )
    count = await db.scalar(select(User.cancellation_strike_count).where(User.id == user_id))
    logger.info("Strike recorded user=%s count=%s", user_id, count)
    return int(count or 0)
