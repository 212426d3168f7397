"""Deferred notification queue.

Webhook handlers must answer within the provider's timeout, so user
notifications are enqueued after the subscription transaction commits and
delivered by the worker. The queue is a Redis sorted set: high-priority
notifications (cancellations, payment failures) jump ahead, FIFO within a
priority.
"""

import json
import uuid
from datetime import UTC, datetime
from typing import Protocol

import structlog
from redis.asyncio import Redis

from reconciler.core.config import get_settings
from reconciler.domain.state_machine import NotificationIntent

logger = structlog.get_logger(__name__)

PRIORITY_BOOST = {"high": 5, "normal": 0, "low": -5}


class NotificationQueue:
    """Priority queue of notification payloads.

    Score formula: (1000 - boost) * 1e12 + counter, lowest first.
    """

    def __init__(self, redis: Redis, queue_key: str | None = None):
        self.redis = redis
        self.queue_key = queue_key or get_settings().notification_queue_key
        self.counter_key = f"{self.queue_key}:counter"

    async def enqueue(self, payload: dict, priority: str = "normal") -> str:
        payload = {"id": payload.get("id") or uuid.uuid4().hex, **payload}
        counter = await self.redis.incr(self.counter_key)
        score = (1000 - PRIORITY_BOOST.get(priority, 0)) * 1e12 + counter
        await self.redis.zadd(self.queue_key, {json.dumps(payload, sort_keys=True): score})
        return payload["id"]

    async def dequeue(self) -> dict | None:
        result = await self.redis.zpopmin(self.queue_key, count=1)
        if not result:
            return None
        raw, _score = result[0]
        return json.loads(raw)

    async def get_length(self) -> int:
        return await self.redis.zcard(self.queue_key)


class NotificationDispatcher:
    """``notify(...)`` front door used by the reconciler. Delivery happens in the worker."""

    def __init__(self, redis: Redis, queue_key: str | None = None):
        self.queue = NotificationQueue(redis, queue_key)

    async def notify(
        self,
        user_id: str,
        category: str,
        type: str,
        title: str,
        body: str,
        action_url: str | None = None,
        metadata: dict | None = None,
        priority: str = "normal",
    ) -> str:
        notification_id = await self.queue.enqueue(
            {
                "user_id": user_id,
                "category": category,
                "type": type,
                "title": title,
                "body": body,
                "action_url": action_url,
                "metadata": metadata or {},
                "priority": priority,
                "created_at": datetime.now(UTC).isoformat(),
            },
            priority=priority,
        )
        logger.info("notification_enqueued", notification_id=notification_id, user_id=user_id, type=type)
        return notification_id

    async def dispatch(self, intent: NotificationIntent) -> str:
        return await self.notify(
            intent.user_id,
            intent.category,
            intent.type,
            intent.title,
            intent.body,
            action_url=intent.action_url,
            metadata=intent.metadata,
            priority=intent.priority,
        )


class NotificationSender(Protocol):
    async def send(self, notification: dict) -> None: ...


class LoggingNotificationSender:
    """Default sender: rendering and delivery belong to the notification service, so just log."""

    async def send(self, notification: dict) -> None:
        logger.info(
            "notification_delivered",
            notification_id=notification.get("id"),
            user_id=notification.get("user_id"),
            category=notification.get("category"),
            type=notification.get("type"),
            priority=notification.get("priority"),
        )
