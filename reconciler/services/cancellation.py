"""User-initiated cancellation.

Cancelling lands the user on the free tier, so it is validated against live
usage first and refused with the specific violated limits unless forced.
Billing is stopped at the provider before the local row changes; the row is
then updated under the same per-subscription lock the webhook path uses.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import structlog

from reconciler.core.config import Settings, get_settings
from reconciler.core.exceptions import InvalidTransition, LockUnavailable, ResourceLimitExceeded, SubscriptionNotFound
from reconciler.core.locking import SubscriptionLock
from reconciler.db.base import get_session_factory, utcnow
from reconciler.db.models.subscription import Subscription
from reconciler.db.redis import get_redis
from reconciler.domain.events import SubscriptionStatus
from reconciler.domain.state_machine import SubscriptionStateMachine, TransitionResult
from reconciler.domain.tiers import FREE_TIER, DowngradeValidation, TierTransitionValidator
from reconciler.metrics.cloudwatch import emit_business_event
from reconciler.queue.notifications import NotificationDispatcher
from reconciler.services.currency import CurrencyConversionService
from reconciler.services.gateways import get_gateway
from reconciler.services.payment_service import PaymentService
from reconciler.services.usage import build_tier_validator

logger = structlog.get_logger(__name__)


@dataclass
class CancellationResult:
    subscription: Subscription
    previous_status: SubscriptionStatus
    validation: DowngradeValidation | None
    applied: bool

    def to_dict(self) -> dict:
        return {
            "subscription": self.subscription.to_dict(),
            "previous_status": self.previous_status.value,
            "applied": self.applied,
            "validation": self.validation.to_dict() if self.validation else None,
        }


class CancellationService:
    def __init__(
        self,
        settings: Settings | None = None,
        session_factory=None,
        redis=None,
        state_machine: SubscriptionStateMachine | None = None,
        validator: TierTransitionValidator | None = None,
        lock: SubscriptionLock | None = None,
        notifications: NotificationDispatcher | None = None,
        payment_service_factory: Callable[[str], PaymentService] | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.redis = redis if redis is not None else get_redis()
        self.state_machine = state_machine or SubscriptionStateMachine(self.settings)
        self.validator = validator or build_tier_validator(self.session_factory)
        self.lock = lock or SubscriptionLock(self.redis)
        self.notifications = notifications or NotificationDispatcher(self.redis)
        self.payment_service_factory = payment_service_factory or self._payment_service

    def _payment_service(self, provider: str) -> PaymentService:
        return PaymentService(
            get_gateway(provider, self.settings),
            CurrencyConversionService(self.redis, self.settings),
            self.redis,
            self.settings,
        )

    async def _load_open(self, user_id: str) -> Subscription:
        async with self.session_factory() as session:
            sub = await self.state_machine.get_open_for_user(session, user_id, lock=False)
        if sub is None:
            raise SubscriptionNotFound(f"No open subscription for user {user_id}")
        return sub

    async def cancel(
        self,
        user_id: str,
        *,
        force: bool = False,
        immediate: bool = False,
        now: datetime | None = None,
    ) -> CancellationResult:
        now = now or utcnow()
        sub = await self._load_open(user_id)

        validation = None
        if not force:
            validation = await self.validator.validate_downgrade(user_id, FREE_TIER)
            if not validation.valid:
                raise ResourceLimitExceeded(
                    FREE_TIER.value,
                    errors=[e.to_dict() for e in validation.errors],
                    usage=validation.usage.to_dict(),
                    limits=validation.limits.to_dict() if validation.limits else {},
                )

        if sub.status_enum is SubscriptionStatus.GRACE_PERIOD and not immediate:
            logger.info("cancellation_already_scheduled", user_id=user_id, subscription_id=str(sub.id))
            return CancellationResult(sub, sub.status_enum, validation, applied=False)

        # External call happens before the lock so a slow provider never holds up webhooks
        await self.payment_service_factory(sub.provider).cancel_subscription(
            sub.external_subscription_id, at_period_end=not immediate
        )

        transition = await self._end_locked(sub, immediate=immediate, now=now, forced=force)

        for intent in transition.notifications:
            await self.notifications.dispatch(intent)
        if transition.applied:
            await emit_business_event("subscription_cancelled", user_id=user_id, provider=sub.provider)

        return CancellationResult(
            transition.subscription or sub,
            transition.previous_status or sub.status_enum,
            validation,
            applied=transition.applied,
        )

    async def _end_locked(self, sub: Subscription, *, immediate: bool, now: datetime, forced: bool) -> TransitionResult:
        wait_timeout = self.settings.subscription_lock_wait_timeout
        async with self.lock.lock(sub.provider, sub.external_subscription_id, wait_timeout=wait_timeout) as acquired:
            if not acquired:
                raise LockUnavailable(f"{sub.provider}:{sub.external_subscription_id}", wait_timeout)

            async with self.session_factory() as session:
                current = await self.state_machine.get_by_external_id(session, sub.provider, sub.external_subscription_id)
                if current is None:
                    raise SubscriptionNotFound(f"Subscription {sub.id} no longer exists")

                in_period = current.current_period_end is not None and current.current_period_end > now
                target = SubscriptionStatus.GRACE_PERIOD if in_period and not immediate else SubscriptionStatus.CANCELED
                if current.status_enum is target:
                    return TransitionResult.noop("already_applied", current)
                if not self.state_machine.can_transition(current.status_enum, target):
                    # A webhook ended it while we were talking to the provider
                    raise InvalidTransition(current.status, target.value)

                transition = self.state_machine.end_subscription(
                    session,
                    current,
                    target,
                    now=now,
                    notes="Cancelled by user (forced)" if forced else "Cancelled by user",
                )
                await session.commit()

        logger.info(
            "subscription_cancelled_by_user",
            user_id=sub.user_id,
            subscription_id=str(sub.id),
            status=target.value,
            applied=transition.applied,
        )
        return transition
