"""
Phone verification codes.

Codes live in Redis under a per-user, per-number key with a TTL, so they
survive restarts and are shared by every app instance. A separate counter
caps guessing attempts for the lifetime of the code.
"""
import logging
import secrets

import redis.asyncio as aioredis

from trek.config import get_settings
from trek.errors import StateConflictError, ValidationError
from trek.redis_client import cache_delete, cache_get, cache_set, counter_incr
from trek.services.notifications import Notifier, format_phone

logger = logging.getLogger(__name__)
settings = get_settings()


def _code_key(user_id: str, phone: str) -> str:
    return f"phone-otp:{user_id}:{format_phone(phone)}"


def _attempts_key(user_id: str, phone: str) -> str:
    return f"phone-otp-attempts:{user_id}:{format_phone(phone)}"


async def issue_code(redis: aioredis.Redis, notifier: Notifier, user_id: str, phone: str) -> bool:
    """Store a fresh 6-digit code and text it. Returns the SMS delivery status."""
    if len(format_phone(phone)) < 11:
        raise ValidationError("Enter a valid phone number")
    code = f"{secrets.randbelow(10 ** 6):06d}"
    await cache_set(redis, _code_key(user_id, phone), code, settings.phone_code_ttl_seconds)
    await cache_delete(redis, _attempts_key(user_id, phone))
    return await notifier.send(phone, f"Your Trek verification code is {code}")


async def check_code(redis: aioredis.Redis, user_id: str, phone: str, code: str) -> None:
    """Consume the code on success; raise otherwise."""
    key = _code_key(user_id, phone)
    stored = await cache_get(redis, key)
    if stored is None:
        raise StateConflictError("Verification code expired or was never sent")

    attempts = await counter_incr(redis, _attempts_key(user_id, phone), settings.phone_code_ttl_seconds)
    if attempts > settings.phone_code_max_attempts:
        await cache_delete(redis, key)
        raise StateConflictError("Too many attempts; request a new code")
    if not secrets.compare_digest(stored, code.strip()):
        raise ValidationError("Invalid verification code")

    await cache_delete(redis, key)
    await cache_delete(redis, _attempts_key(user_id, phone))
    logger.info("Phone verified for user %s", user_id)
