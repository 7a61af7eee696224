import json
from typing import Optional

from fastapi import Response
from fastapi.responses import JSONResponse

from trek.redis_client import get_redis, cache_get, cache_set


IDEMPOTENCY_TTL = 86400  # 24 hours


def _cache_key(user_id: str, key: str) -> str:
    return f"idempotency:{user_id}:{key}"


async def check_idempotency(user_id: str, key: Optional[str]) -> Optional[Response]:
    """
    Returns the stored response if this user already used the
    Idempotency-Key, otherwise None (proceed normally).
    """
    if not key:
        return None

    redis = await get_redis()
    cached = await cache_get(redis, _cache_key(user_id, key))
    if cached:
        data = json.loads(cached)
        return JSONResponse(
            content=data["body"],
            status_code=data["status_code"],
            headers={"X-Idempotency-Replay": "true"},
        )
    return None


async def store_idempotency_result(user_id: str, key: str, status_code: int, body: dict) -> None:
    """Persist the response for the given idempotency key (24h TTL)."""
    redis = await get_redis()
    await cache_set(
        redis,
        _cache_key(user_id, key),
        json.dumps({"status_code": status_code, "body": body}),
        IDEMPOTENCY_TTL,
    )
