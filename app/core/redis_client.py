"""
Redis access for the API process.

- ``incr_fixed_window``: per-API-key request counter (INCR + EXPIRE)
- ``ping``: readiness of the rate-limit Redis, or of the Celery broker URL

The shared client is created lazily on REDIS_URL and closed on app
shutdown. Celery tasks close it at the end of every task loop, because the
connection pool is bound to the loop that opened it.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """redis://:secret@host:6379 -> redis://:****@host:6379"""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "redis://****"
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            await client.ping()
        except (RedisError, OSError):
            await client.aclose()
            raise
        _redis_client = client
        logger.info(
            "Redis client initialized",
            extra_data={"url": _mask_redis_url(settings.REDIS_URL)},
        )
    return _redis_client


async def incr_fixed_window(key: str, window_seconds: int) -> int:
    """
    Count one hit against ``key`` and return the count so far.

    The first hit of a window sets the TTL one second past the window, so a
    counter never outlives its window.

    Raises:
        RedisError, OSError: Redis is unreachable
    """
    client = await get_redis()
    count = await client.incr(key)
    if count == 1:
        await client.expire(key, window_seconds + 1)
    return count


async def ping(url: str | None = None) -> None:
    """
    PING the shared client, or a short-lived client on ``url``.

    Raises:
        RedisError, OSError: no answer
    """
    if url is None:
        await (await get_redis()).ping()
        return

    client = aioredis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    finally:
        await client.aclose()


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
