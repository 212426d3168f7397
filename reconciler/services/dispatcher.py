"""WebhookDispatcher: verify -> normalize -> enrich -> ledger -> state machine -> side effects.

One instance per request is cheap; the EventNormalizer (which caches
provider clients such as PayPal's OAuth token) is shared.

Response contract:
- 400 for a bad signature, a malformed body or missing checkout metadata.
- 200 for processed, duplicate and unhandled events.
- After an internal failure, the provider's ``webhook_failure_status``.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog
from redis.asyncio import Redis

from reconciler.core.config import Settings, get_settings
from reconciler.core.exceptions import (
    DuplicateEvent,
    LockUnavailable,
    NormalizationError,
    PayloadMalformed,
    SignatureInvalid,
    WebhookProcessingError,
)
from reconciler.core.locking import SubscriptionLock
from reconciler.db.base import get_session_factory
from reconciler.db.redis import get_redis
from reconciler.domain.events import CanonicalEvent, CanonicalEventType, ProviderName
from reconciler.domain.ledger import AlreadyProcessed, IdempotencyLedger, LedgerOutcome
from reconciler.domain.state_machine import SubscriptionStateMachine, TransitionResult
from reconciler.metrics.cloudwatch import emit_business_event, emit_webhook_outcome
from reconciler.providers.registry import EventNormalizer, provider_name
from reconciler.queue.notifications import NotificationDispatcher
from reconciler.services.currency import CurrencyConversionService

logger = structlog.get_logger(__name__)

# Activations also serialize per user: the user may hold at most one open
# subscription, and two checkouts carry different external ids.
USER_LOCK_SCOPE = "user"

BUSINESS_EVENTS = {
    CanonicalEventType.SUBSCRIPTION_ACTIVATED: "new_subscription",
    CanonicalEventType.SUBSCRIPTION_UPDATED: "subscription_updated",
    CanonicalEventType.SUBSCRIPTION_CANCELLED: "subscription_cancelled",
    CanonicalEventType.SUBSCRIPTION_PAYMENT_FAILED: "subscription_payment_failed",
    CanonicalEventType.PAYMENT_COMPLETED: "subscription_renewed",
}


@dataclass
class DispatchResult:
    status_code: int
    outcome: str  # processed | duplicate | ignored | failed
    event_id: str | None = None
    event_type: str | None = None
    reason: str | None = None

    def body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"received": True, "outcome": self.outcome}
        if self.event_id:
            body["event_id"] = self.event_id
        if self.event_type:
            body["event_type"] = self.event_type
        if self.reason:
            body["reason"] = self.reason
        return body


class WebhookDispatcher:
    def __init__(
        self,
        settings: Settings | None = None,
        normalizer: EventNormalizer | None = None,
        session_factory=None,
        redis: Redis | None = None,
        ledger: IdempotencyLedger | None = None,
        state_machine: SubscriptionStateMachine | None = None,
        currency: CurrencyConversionService | None = None,
        lock: SubscriptionLock | None = None,
        notifications: NotificationDispatcher | None = None,
    ):
        self.settings = settings or get_settings()
        self.normalizer = normalizer or EventNormalizer(self.settings)
        self.session_factory = session_factory or get_session_factory()
        redis = redis if redis is not None else get_redis()
        self.ledger = ledger or IdempotencyLedger()
        self.state_machine = state_machine or SubscriptionStateMachine(self.settings)
        self.currency = currency or CurrencyConversionService(redis, self.settings)
        self.lock = lock or SubscriptionLock(redis)
        self.notifications = notifications or NotificationDispatcher(redis)

    def failure_status(self, provider: ProviderName) -> int:
        return self.settings.webhook_failure_status.get(provider.value, 500)

    async def handle(self, provider: str | ProviderName, raw_body: bytes, headers) -> DispatchResult:
        name = provider_name(provider)
        impl = self.normalizer.provider(name)

        try:
            await impl.verify_signature(raw_body, headers)
        except SignatureInvalid:
            logger.warning("webhook_signature_invalid", provider=name.value)
            await emit_webhook_outcome(name.value, "rejected", 400)
            raise

        try:
            payload = impl.parse(raw_body)
            event_id = impl.event_id(payload)
        except PayloadMalformed as e:
            logger.warning("webhook_payload_malformed", provider=name.value, error=str(e))
            await emit_webhook_outcome(name.value, "rejected", 400)
            raise

        try:
            event = impl.normalize(payload)
        except NormalizationError as e:
            logger.warning("webhook_normalization_failed", provider=name.value, event_id=event_id, field=e.field, error=str(e))
            await self.ledger.record_failure(self.session_factory, name.value, event_id, http_status=400, error=str(e))
            await emit_webhook_outcome(name.value, "rejected", 400)
            raise

        logger.info(
            "webhook_received",
            provider=name.value,
            event_type=event.provider_event_type,
            canonical_type=event.event_type.value,
            event_id=event.event_id,
        )

        if not event.is_handled:
            return await self._acknowledge_unhandled(event)

        try:
            event = await impl.enrich(event)
            event = await self._with_usd_amount(event)
            result, transition = await self._apply_locked(event)
        except DuplicateEvent as dup:
            logger.info("webhook_duplicate", provider=dup.provider, event_id=dup.event_id, prior_status=dup.http_status)
            await emit_webhook_outcome(name.value, "duplicate", dup.http_status)
            return DispatchResult(dup.http_status, "duplicate", event.event_id, event.provider_event_type)
        except Exception as exc:
            return await self._failed(event, exc)

        await emit_webhook_outcome(name.value, result.outcome, result.status_code)
        if transition.applied:
            await self._after_commit(event, transition)
        return result

    async def _acknowledge_unhandled(self, event: CanonicalEvent) -> DispatchResult:
        entry = await self.ledger.record(
            self.session_factory,
            event.provider.value,
            event.event_id,
            outcome=LedgerOutcome.PROCESSED,
            http_status=200,
            event_type=event.event_type.value,
            provider_event_type=event.provider_event_type,
            reference=event.lock_reference,
        )
        outcome = "ignored" if entry is not None else "duplicate"
        logger.info("webhook_event_unhandled", provider=event.provider.value, event_type=event.provider_event_type, event_id=event.event_id)
        await emit_webhook_outcome(event.provider.value, outcome, 200)
        return DispatchResult(200, outcome, event.event_id, event.provider_event_type, reason="unhandled_event_type")

    async def _with_usd_amount(self, event: CanonicalEvent) -> CanonicalEvent:
        # Rate lookups may hit the network, so they happen before the lock is taken
        if event.amount is None or not event.currency or event.amount_usd is not None:
            return event
        amount_usd = await self.currency.to_usd_cents(event.amount, event.currency)
        return event.model_copy(update={"amount_usd": amount_usd})

    @asynccontextmanager
    async def _user_guard(self, event: CanonicalEvent, wait_timeout: float) -> AsyncGenerator[None, None]:
        if event.event_type is not CanonicalEventType.SUBSCRIPTION_ACTIVATED or not event.user_id:
            yield
            return
        async with self.lock.lock(USER_LOCK_SCOPE, event.user_id, wait_timeout=wait_timeout) as acquired:
            if not acquired:
                raise LockUnavailable(f"{USER_LOCK_SCOPE}:{event.user_id}", wait_timeout)
            yield

    async def _apply_locked(self, event: CanonicalEvent) -> tuple[DispatchResult, TransitionResult]:
        provider = event.provider.value
        reference = event.lock_reference or event.event_id
        wait_timeout = self.settings.subscription_lock_wait_timeout

        async with self.lock.lock(provider, reference, wait_timeout=wait_timeout) as acquired:
            if not acquired:
                raise LockUnavailable(f"{provider}:{reference}", wait_timeout)

            async with self._user_guard(event, wait_timeout), self.session_factory() as session:
                begun = await self.ledger.try_begin(session, provider, event.event_id)
                if isinstance(begun, AlreadyProcessed):
                    raise DuplicateEvent(provider, event.event_id, begun.http_status)

                transition = await self.state_machine.apply(session, event)
                await self.ledger.commit(session, begun.entry, event, outcome=LedgerOutcome.PROCESSED, http_status=200)

        logger.info(
            "webhook_processed",
            provider=provider,
            event_type=event.provider_event_type,
            event_id=event.event_id,
            reference=reference,
            applied=transition.applied,
            reason=transition.reason,
            status=transition.new_status.value if transition.new_status else None,
        )
        return DispatchResult(200, "processed", event.event_id, event.provider_event_type, transition.reason), transition

    async def _after_commit(self, event: CanonicalEvent, transition: TransitionResult) -> None:
        """Enqueue notifications and emit metrics. The ledger row is already committed."""
        for intent in transition.notifications:
            try:
                await self.notifications.dispatch(intent)
            except Exception as exc:
                logger.error(
                    "notification_enqueue_failed",
                    provider=event.provider.value,
                    event_id=event.event_id,
                    user_id=intent.user_id,
                    type=intent.type,
                    error=str(exc),
                    exc_info=True,
                )

        business_event = BUSINESS_EVENTS.get(event.event_type)
        if business_event:
            user_id = transition.subscription.user_id if transition.subscription is not None else event.user_id
            await emit_business_event(business_event, user_id=user_id, provider=event.provider.value)

    async def _failed(self, event: CanonicalEvent, exc: Exception) -> DispatchResult:
        provider = event.provider.value
        status = self.failure_status(event.provider)
        logger.error(
            "webhook_processing_failed",
            provider=provider,
            event_type=event.provider_event_type,
            event_id=event.event_id,
            subscription_reference=event.subscription_reference,
            error=str(exc),
            error_type=type(exc).__name__,
            response_status=status,
            exc_info=True,
        )
        await emit_webhook_outcome(provider, "failed", status)

        if status >= 500:
            # No ledger row: the redelivery gets a clean retry
            raise WebhookProcessingError(f"{provider}:{event.event_id} failed: {exc}") from exc

        await self.ledger.record_failure(
            self.session_factory, provider, event.event_id, http_status=status, error=str(exc), event=event
        )
        return DispatchResult(status, "failed", event.event_id, event.provider_event_type)
