"""Notification queue ordering, worker delivery and the expiry sweep."""

from datetime import UTC, datetime, timedelta

import pytest

from reconciler.core.config import Settings
from reconciler.db.models.subscription import Subscription
from reconciler.domain.state_machine import NotificationIntent, SubscriptionStateMachine
from reconciler.queue.notifications import NotificationDispatcher, NotificationQueue
from reconciler.queue.worker import MAX_DELIVERY_ATTEMPTS, expire_lapsed_subscriptions, process_next_notification

pytestmark = pytest.mark.unit


class RecordingSender:
    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.sent: list[dict] = []
        self.attempts = 0

    async def send(self, notification: dict) -> None:
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise RuntimeError("smtp down")
        self.sent.append(notification)


class TestNotificationQueue:
    async def test_high_priority_jumps_ahead(self, redis_client) -> None:
        queue = NotificationQueue(redis_client)
        await queue.enqueue({"type": "renewed"}, priority="normal")
        await queue.enqueue({"type": "digest"}, priority="low")
        await queue.enqueue({"type": "payment_failed"}, priority="high")
        await queue.enqueue({"type": "activated"}, priority="normal")

        order = [(await queue.dequeue())["type"] for _ in range(4)]
        assert order == ["payment_failed", "renewed", "activated", "digest"]
        assert await queue.dequeue() is None

    async def test_dispatch_intent(self, redis_client) -> None:
        dispatcher = NotificationDispatcher(redis_client)
        notification_id = await dispatcher.dispatch(
            NotificationIntent(user_id="user-1", type="payment_failed", title="Payment Failed", body="...", priority="high")
        )

        payload = await NotificationQueue(redis_client).dequeue()
        assert payload["id"] == notification_id
        assert payload["category"] == "subscriptions"
        assert payload["priority"] == "high"


class TestWorker:
    async def test_delivers_next_notification(self, redis_client) -> None:
        await NotificationQueue(redis_client).enqueue({"type": "renewed", "user_id": "u"})
        sender = RecordingSender()

        assert await process_next_notification(sender, redis_client) is True
        assert await process_next_notification(sender, redis_client) is False
        assert [n["type"] for n in sender.sent] == ["renewed"]

    async def test_failed_delivery_is_retried(self, redis_client) -> None:
        await NotificationQueue(redis_client).enqueue({"type": "renewed", "user_id": "u"})
        sender = RecordingSender(fail_times=1)

        await process_next_notification(sender, redis_client)
        assert await NotificationQueue(redis_client).get_length() == 1

        await process_next_notification(sender, redis_client)
        assert sender.sent[0]["attempts"] == 1

    async def test_gives_up_after_max_attempts(self, redis_client) -> None:
        await NotificationQueue(redis_client).enqueue({"type": "renewed", "user_id": "u"})
        sender = RecordingSender(fail_times=100)

        for _ in range(MAX_DELIVERY_ATTEMPTS):
            await process_next_notification(sender, redis_client)

        assert sender.attempts == MAX_DELIVERY_ATTEMPTS
        assert await NotificationQueue(redis_client).get_length() == 0


class TestExpirySweep:
    async def test_expires_only_lapsed_grace_periods(self, session_factory) -> None:
        now = datetime.now(UTC)
        async with session_factory() as session:
            session.add_all(
                [
                    Subscription(
                        user_id="lapsed", tier="pro", billing_cycle="monthly", status="grace_period",
                        provider="stripe", external_subscription_id="sub_a", current_period_end=now - timedelta(hours=1),
                    ),
                    Subscription(
                        user_id="still-paid", tier="pro", billing_cycle="monthly", status="grace_period",
                        provider="stripe", external_subscription_id="sub_b", current_period_end=now + timedelta(days=3),
                    ),
                ]
            )
            await session.commit()

        count = await expire_lapsed_subscriptions(session_factory, SubscriptionStateMachine(Settings()))
        assert count == 1
