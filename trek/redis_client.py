import redis.asyncio as aioredis
from trek.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ---------------------------------------------------------------------------
# Expiring key/value helpers
# ---------------------------------------------------------------------------

async def cache_set(redis: aioredis.Redis, key: str, value: str, ttl: int) -> None:
    await redis.setex(key, ttl, value)


async def cache_get(redis: aioredis.Redis, key: str) -> str | None:
    return await redis.get(key)


async def cache_delete(redis: aioredis.Redis, key: str) -> None:
    await redis.delete(key)


async def counter_incr(redis: aioredis.Redis, key: str, ttl: int) -> int:
    """Increment a counter, starting its TTL on first use."""
    value = await redis.incr(key)
    if value == 1:
        await redis.expire(key, ttl)
    return int(value)
