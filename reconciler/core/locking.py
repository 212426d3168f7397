"""Per-subscription mutual exclusion using Redis.

Webhook deliveries and user-initiated cancellations that touch the same
subscription serialize on one lock keyed by provider and external
subscription id. The lock is a SET NX key with a TTL so a crashed holder
cannot wedge a subscription forever.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import redis.asyncio as redis

from reconciler.core.config import get_settings
from reconciler.db.redis import get_redis


class SubscriptionLock:
    """Manages distributed subscription locks using Redis."""

    LOCK_PREFIX = "reconciler:lock:subscription:"

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        ttl: int | None = None,
        poll_interval: float | None = None,
    ):
        settings = get_settings()
        self._redis = redis_client
        self.ttl = ttl or settings.subscription_lock_ttl
        self.poll_interval = poll_interval or settings.subscription_lock_poll_interval

    def _get_redis(self) -> redis.Redis:
        return self._redis if self._redis is not None else get_redis()

    def _lock_key(self, provider: str, external_id: str) -> str:
        return f"{self.LOCK_PREFIX}{provider}:{external_id}"

    async def acquire(self, provider: str, external_id: str, owner: str, ttl: int | None = None) -> bool:
        """Attempt to acquire the lock for one subscription.

        Returns:
            True if acquired (or already held by ``owner``), False otherwise
        """
        r = self._get_redis()
        key = self._lock_key(provider, external_id)
        ttl = ttl or self.ttl

        lock_value = f"{owner}:{datetime.now(UTC).isoformat()}"
        if await r.set(key, lock_value, nx=True, ex=ttl):
            return True

        current = await r.get(key)
        if current and current.startswith(f"{owner}:"):
            await r.expire(key, ttl)
            return True

        return False

    async def release(self, provider: str, external_id: str, owner: str) -> bool:
        """Release the lock if ``owner`` holds it."""
        r = self._get_redis()
        key = self._lock_key(provider, external_id)

        current = await r.get(key)
        if current and current.startswith(f"{owner}:"):
            await r.delete(key)
            return True

        return False

    async def is_locked(self, provider: str, external_id: str) -> dict | None:
        """Return lock info if the subscription is locked, else None."""
        r = self._get_redis()
        key = self._lock_key(provider, external_id)

        current = await r.get(key)
        if not current:
            return None

        owner, _, locked_at = current.partition(":")
        return {
            "provider": provider,
            "external_id": external_id,
            "owner": owner,
            "locked_at": locked_at or None,
            "expires_in": await r.ttl(key),
        }

    @asynccontextmanager
    async def lock(
        self,
        provider: str,
        external_id: str,
        owner: str | None = None,
        wait: bool = True,
        wait_timeout: float | None = None,
    ) -> AsyncGenerator[bool, None]:
        """Context manager for subscription locking.

        Yields:
            True if the lock was acquired

        Example:
            async with subscription_lock.lock("stripe", "sub_123") as acquired:
                if acquired:
                    ...
        """
        owner = owner or uuid.uuid4().hex
        if wait_timeout is None:
            wait_timeout = get_settings().subscription_lock_wait_timeout

        acquired = False
        try:
            if wait:
                loop = asyncio.get_running_loop()
                deadline = loop.time() + wait_timeout
                while True:
                    acquired = await self.acquire(provider, external_id, owner)
                    if acquired or loop.time() >= deadline:
                        break
                    await asyncio.sleep(self.poll_interval)
            else:
                acquired = await self.acquire(provider, external_id, owner)

            yield acquired

        finally:
            if acquired:
                await self.release(provider, external_id, owner)

