"""Background worker: delivers queued notifications and expires lapsed grace periods."""

import asyncio

import structlog

from reconciler.core.config import get_settings
from reconciler.db.base import get_session_factory
from reconciler.db.redis import get_redis
from reconciler.domain.state_machine import SubscriptionStateMachine
from reconciler.metrics.cloudwatch import emit_business_event
from reconciler.queue.notifications import LoggingNotificationSender, NotificationQueue, NotificationSender

logger = structlog.get_logger(__name__)

MAX_DELIVERY_ATTEMPTS = 3


async def process_next_notification(sender: NotificationSender | None = None, redis=None) -> bool:
    """Pull the next notification off the queue and deliver it.

    Returns True if a notification was taken off the queue, False if the queue was empty.
    A failed delivery is re-enqueued until MAX_DELIVERY_ATTEMPTS, then dropped with an error log.
    """
    if redis is None:
        redis = get_redis()
    sender = sender or LoggingNotificationSender()
    queue = NotificationQueue(redis)

    notification = await queue.dequeue()
    if notification is None:
        return False

    try:
        await sender.send(notification)
    except Exception as exc:
        attempts = notification.get("attempts", 0) + 1
        if attempts < MAX_DELIVERY_ATTEMPTS:
            await queue.enqueue({**notification, "attempts": attempts}, priority=notification.get("priority", "normal"))
            logger.warning(
                "notification_delivery_retry",
                notification_id=notification.get("id"),
                attempts=attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        else:
            logger.error(
                "notification_delivery_failed",
                notification_id=notification.get("id"),
                user_id=notification.get("user_id"),
                type=notification.get("type"),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
    return True


async def expire_lapsed_subscriptions(session_factory=None, state_machine: SubscriptionStateMachine | None = None) -> int:
    """Move GRACE_PERIOD subscriptions past their period end to EXPIRED. Returns the count."""
    factory = session_factory or get_session_factory()
    machine = state_machine or SubscriptionStateMachine()

    async with factory() as session:
        expired = await machine.expire_lapsed_subscriptions(session)
        await session.commit()

    for sub in expired:
        await emit_business_event("subscription_expired", user_id=sub.user_id)
    return len(expired)


async def run_worker(poll_interval: float = 1.0, sweep_interval: float = 300.0, sender: NotificationSender | None = None) -> None:
    """Drain the notification queue forever, running the expiry sweep every ``sweep_interval`` seconds."""
    loop = asyncio.get_running_loop()
    next_sweep = loop.time()
    sender = sender or LoggingNotificationSender()
    logger.info("worker_started", queue=get_settings().notification_queue_key)

    while True:
        if loop.time() >= next_sweep:
            try:
                await expire_lapsed_subscriptions()
            except Exception as exc:
                logger.error("expiry_sweep_failed", error=str(exc), error_type=type(exc).__name__, exc_info=True)
            next_sweep = loop.time() + sweep_interval

        if not await process_next_notification(sender):
            await asyncio.sleep(poll_interval)
