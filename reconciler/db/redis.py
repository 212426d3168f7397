"""Shared Redis client.

Holds the locks, the exchange-rate cache, payment idempotency results and
the deferred notification queue.
"""

import redis.asyncio as redis

from reconciler.core.config import get_settings

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None, client: redis.Redis | None = None) -> None:
    """Initialize the shared Redis client.

    Args:
        url: Redis URL, defaults to settings.redis_url
        client: Pre-built client to install instead of connecting (e.g. fakeredis)
    """
    global _redis

    if _redis is not None:
        return

    if client is None:
        client = redis.from_url(
            url or get_settings().redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    # Fail fast on startup if Redis is unreachable
    await client.ping()
    _redis = client


async def close_redis() -> None:
    """Close the shared Redis client."""
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared Redis client.

    Raises RuntimeError if init_redis() has not been called.
    """
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
