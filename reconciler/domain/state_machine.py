"""SubscriptionStateMachine: applies canonical events to Subscription rows.

All methods run inside the caller's transaction and never commit. Rows are
loaded FOR UPDATE so that, together with the per-subscription Redis lock,
two events about one subscription apply in a well-defined order.

Events that cannot apply (unknown external id, a terminal subscription, a
payment failure during the grace period) are logged no-ops, never errors:
providers deliver out of order and for subscriptions created elsewhere.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.core.config import Settings, get_settings
from reconciler.core.exceptions import UnknownSubscriptionReference
from reconciler.db.base import utcnow
from reconciler.db.models.subscription import Subscription
from reconciler.db.models.subscription_history import SubscriptionHistory
from reconciler.domain.billing import next_period_end
from reconciler.domain.events import (
    OPEN_STATUSES,
    CancellationMode,
    CanonicalEvent,
    CanonicalEventType,
    NormalizedStatus,
    ProviderName,
    SubscriptionStatus,
)
from reconciler.domain.tiers import TIER_CATALOG, tier_change_action

logger = structlog.get_logger(__name__)

NOTIFICATION_CATEGORY = "subscriptions"

# Rows are keyed by the checkout charge id, which the provider's subscription
# events never carry; they are matched by customer instead.
CUSTOMER_KEYED_PROVIDERS = frozenset({ProviderName.FLUTTERWAVE})


@dataclass
class NotificationIntent:
    """A notification to enqueue once the transaction that produced it commits."""

    user_id: str
    type: str
    title: str
    body: str
    priority: str = "normal"
    action_url: str | None = None
    metadata: dict = field(default_factory=dict)
    category: str = NOTIFICATION_CATEGORY


@dataclass
class TransitionResult:
    subscription: Subscription | None
    previous_status: SubscriptionStatus | None
    new_status: SubscriptionStatus | None
    applied: bool
    notifications: list[NotificationIntent] = field(default_factory=list)
    reason: str | None = None

    @classmethod
    def noop(cls, reason: str, subscription: Subscription | None = None) -> "TransitionResult":
        status = subscription.status_enum if subscription is not None else None
        return cls(subscription, status, status, applied=False, reason=reason)


def _tier_name(tier: str) -> str:
    limits = TIER_CATALOG.get(tier)
    return limits.name if limits else tier.title()


def _format_date(moment: datetime | None) -> str:
    return moment.strftime("%B %d, %Y") if moment else "the end of your billing period"


def _log_unknown_reference(event: CanonicalEvent) -> None:
    logger.warning(
        "unknown_subscription_reference",
        provider=event.provider.value,
        event_type=event.provider_event_type,
        event_id=event.event_id,
        reference=event.subscription_reference,
    )


class SubscriptionStateMachine:
    """Owns Subscription status transitions."""

    # Valid status transitions; NONE -> ACTIVE is row creation
    TRANSITIONS = {
        SubscriptionStatus.ACTIVE: [
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.GRACE_PERIOD,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        ],
        SubscriptionStatus.PAST_DUE: [
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.GRACE_PERIOD,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        ],
        SubscriptionStatus.GRACE_PERIOD: [
            SubscriptionStatus.ACTIVE,  # cancellation withdrawn before period end
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        ],
        SubscriptionStatus.CANCELED: [],  # Terminal state
        SubscriptionStatus.EXPIRED: [],  # Terminal state
    }

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    @classmethod
    def can_transition(cls, current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
        return target in cls.TRANSITIONS.get(current, [])

    # ── Queries ──

    async def get_by_external_id(
        self, session: AsyncSession, provider: str, external_id: str | None
    ) -> Subscription | None:
        if not external_id:
            return None
        result = await session.execute(
            select(Subscription)
            .where(
                Subscription.provider == provider,
                Subscription.external_subscription_id == external_id,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_open_for_user(self, session: AsyncSession, user_id: str, lock: bool = True) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status.in_([s.value for s in OPEN_STATUSES]),
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_open_by_customer(
        self, session: AsyncSession, provider: str, customer_reference: str
    ) -> Subscription | None:
        result = await session.execute(
            select(Subscription)
            .where(
                Subscription.provider == provider,
                Subscription.customer_reference == customer_reference,
                Subscription.status.in_([s.value for s in OPEN_STATUSES]),
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    # ── Entry point ──

    async def apply(self, session: AsyncSession, event: CanonicalEvent, now: datetime | None = None) -> TransitionResult:
        """Apply one canonical event. Does not commit."""
        now = now or utcnow()
        handler = {
            CanonicalEventType.SUBSCRIPTION_ACTIVATED: self._activate,
            CanonicalEventType.SUBSCRIPTION_UPDATED: self._update,
            CanonicalEventType.SUBSCRIPTION_CANCELLED: self._cancelled,
            CanonicalEventType.SUBSCRIPTION_PAYMENT_FAILED: self._payment_failed,
            CanonicalEventType.PAYMENT_COMPLETED: self._payment_completed,
        }.get(event.event_type)

        if handler is None:
            logger.info(
                "event_has_no_subscription_effect",
                provider=event.provider.value,
                event_type=event.event_type.value,
                reference=event.reference,
            )
            return TransitionResult.noop("no_subscription_effect")

        try:
            return await handler(session, event, now)
        except UnknownSubscriptionReference:
            _log_unknown_reference(event)
            return TransitionResult.noop("unknown_reference")

    # ── Helpers ──

    def _set_status(self, sub: Subscription, target: SubscriptionStatus) -> bool:
        current = sub.status_enum
        if current == target:
            return False
        if not self.can_transition(current, target):
            logger.warning(
                "subscription_transition_rejected",
                subscription_id=str(sub.id),
                from_status=current.value,
                to_status=target.value,
            )
            return False
        sub.status = target.value
        sub.updated_at = utcnow()
        logger.info(
            "subscription_transition",
            subscription_id=str(sub.id),
            user_id=sub.user_id,
            provider=sub.provider,
            external_id=sub.external_subscription_id,
            from_status=current.value,
            to_status=target.value,
        )
        return True

    def _history(
        self,
        session: AsyncSession,
        sub: Subscription,
        action: str,
        *,
        from_status: SubscriptionStatus | None,
        from_tier: str | None = None,
        event: CanonicalEvent | None = None,
        notes: str | None = None,
        details: dict | None = None,
    ) -> None:
        session.add(
            SubscriptionHistory(
                subscription_id=sub.id,
                user_id=sub.user_id,
                action=action,
                from_status=from_status.value if from_status else None,
                to_status=sub.status,
                from_tier=from_tier,
                to_tier=sub.tier,
                billing_cycle=sub.billing_cycle,
                amount=sub.amount,
                currency=sub.currency,
                provider=sub.provider,
                external_subscription_id=sub.external_subscription_id,
                event_id=event.event_id if event else None,
                notes=notes,
                details=details,
            )
        )

    async def _resolve(self, session: AsyncSession, event: CanonicalEvent) -> Subscription:
        provider = event.provider.value
        sub = await self.get_by_external_id(session, provider, event.subscription_reference)
        if sub is None and event.provider in CUSTOMER_KEYED_PROVIDERS and event.customer_reference:
            sub = await self._get_open_by_customer(session, provider, event.customer_reference)
        if sub is None:
            raise UnknownSubscriptionReference(provider, event.subscription_reference)
        return sub

    # ── Creation ──

    async def _activate(self, session: AsyncSession, event: CanonicalEvent, now: datetime) -> TransitionResult:
        provider = event.provider.value
        existing = await self.get_by_external_id(session, provider, event.subscription_reference)
        if existing is not None:
            logger.info(
                "subscription_already_exists",
                provider=provider,
                external_id=event.subscription_reference,
                subscription_id=str(existing.id),
            )
            return TransitionResult.noop("already_exists", existing)

        user_id = event.user_id
        tier = event.tier
        cycle = event.billing_cycle

        # A new subscription supersedes whatever the user had open
        previous = await self.get_open_for_user(session, user_id)
        from_tier = None
        if previous is not None:
            from_tier = previous.tier
            prior_status = previous.status_enum
            previous.status = SubscriptionStatus.CANCELED.value
            previous.canceled_at = previous.canceled_at or now
            previous.updated_at = now
            self._history(
                session,
                previous,
                "superseded",
                from_status=prior_status,
                from_tier=previous.tier,
                event=event,
                notes=f"Replaced by {provider}:{event.subscription_reference}",
            )
            # The partial unique index needs the old row closed before the insert
            await session.flush()

        start = event.period_start or event.occurred_at or now
        end = event.period_end or next_period_end(start, cycle)

        sub = Subscription(
            user_id=user_id,
            tier=tier.value,
            billing_cycle=cycle.value,
            status=SubscriptionStatus.ACTIVE.value,
            provider=provider,
            external_subscription_id=event.subscription_reference,
            customer_reference=event.customer_reference,
            amount=event.amount or 0,
            currency=event.currency or "USD",
            amount_usd=event.amount_usd,
            current_period_start=start,
            current_period_end=end,
            created_at=now,
            updated_at=now,
        )
        session.add(sub)
        await session.flush()

        self._history(
            session,
            sub,
            tier_change_action(from_tier, tier),
            from_status=None,
            from_tier=from_tier,
            event=event,
            details={"superseded": str(previous.id)} if previous is not None else None,
        )
        logger.info(
            "subscription_created",
            subscription_id=str(sub.id),
            user_id=user_id,
            provider=provider,
            external_id=sub.external_subscription_id,
            tier=sub.tier,
            billing_cycle=sub.billing_cycle,
        )

        notification = NotificationIntent(
            user_id=user_id,
            type="subscription_activated",
            title="Subscription Activated",
            body=f"Your {_tier_name(sub.tier)} plan is now active.",
            action_url="/billing",
            metadata={"tier": sub.tier, "billing_cycle": sub.billing_cycle, "provider": provider},
        )
        return TransitionResult(sub, None, SubscriptionStatus.ACTIVE, applied=True, notifications=[notification])

    # ── Provider reports ──

    async def _update(self, session: AsyncSession, event: CanonicalEvent, now: datetime) -> TransitionResult:
        sub = await self.get_by_external_id(session, event.provider.value, event.subscription_reference)
        if sub is None and event.customer_reference:
            sub = await self._relink(session, event)
        if sub is None:
            raise UnknownSubscriptionReference(event.provider.value, event.subscription_reference)

        previous = sub.status_enum
        if previous.is_terminal:
            logger.info("update_ignored_terminal", subscription_id=str(sub.id), status=previous.value)
            return TransitionResult.noop("terminal", sub)

        if event.status is NormalizedStatus.EXPIRED or event.status is NormalizedStatus.CANCELLED or (
            event.cancellation is not None
        ):
            return await self._cancelled(session, event, now, sub=sub)

        changed = False
        if event.period_start is not None and event.period_start != sub.current_period_start:
            sub.current_period_start = event.period_start
            changed = True
        if event.period_end is not None and event.period_end != sub.current_period_end:
            sub.current_period_end = event.period_end
            changed = True

        from_tier = sub.tier
        action = "updated"
        if event.tier is not None and event.tier.value != sub.tier:
            action = tier_change_action(sub.tier, event.tier)
            if action == "created":
                action = "updated"
            sub.tier = event.tier.value
            changed = True
        if event.billing_cycle is not None and event.billing_cycle.value != sub.billing_cycle:
            sub.billing_cycle = event.billing_cycle.value
            changed = True

        if event.status is NormalizedStatus.ACTIVE and previous is not SubscriptionStatus.ACTIVE:
            if self._set_status(sub, SubscriptionStatus.ACTIVE):
                sub.canceled_at = None
                action = "reactivated"
                changed = True
        elif event.status is NormalizedStatus.PAST_DUE:
            changed = self._set_status(sub, SubscriptionStatus.PAST_DUE) or changed

        if not changed:
            return TransitionResult.noop("unchanged", sub)

        sub.updated_at = now
        self._history(session, sub, action, from_status=previous, from_tier=from_tier, event=event)
        return TransitionResult(sub, previous, sub.status_enum, applied=True)

    async def _relink(self, session: AsyncSession, event: CanonicalEvent) -> Subscription | None:
        """Attach a provider subscription code to the subscription its checkout created."""
        sub = await self._get_open_by_customer(session, event.provider.value, event.customer_reference)
        if sub is None:
            return None
        old_reference = sub.external_subscription_id
        sub.external_subscription_id = event.subscription_reference
        self._history(
            session,
            sub,
            "updated",
            from_status=sub.status_enum,
            from_tier=sub.tier,
            event=event,
            notes=f"Linked provider subscription {event.subscription_reference}",
            details={"previous_reference": old_reference},
        )
        logger.info(
            "subscription_relinked",
            subscription_id=str(sub.id),
            provider=sub.provider,
            previous_reference=old_reference,
            external_id=event.subscription_reference,
        )
        return sub

    # ── Cancellation ──

    def _cancellation_target(self, sub: Subscription, event: CanonicalEvent, now: datetime) -> SubscriptionStatus:
        if event.status is NormalizedStatus.EXPIRED:
            return SubscriptionStatus.EXPIRED

        period_end = sub.current_period_end
        in_period = period_end is not None and period_end > now
        policy = self.settings.cancellation_policy

        if policy == "immediate":
            return SubscriptionStatus.CANCELED
        if policy == "period_end":
            return SubscriptionStatus.GRACE_PERIOD if in_period else SubscriptionStatus.CANCELED
        # provider decides
        if event.cancellation is CancellationMode.AT_PERIOD_END and in_period:
            return SubscriptionStatus.GRACE_PERIOD
        return SubscriptionStatus.CANCELED

    async def _cancelled(
        self,
        session: AsyncSession,
        event: CanonicalEvent,
        now: datetime,
        sub: Subscription | None = None,
    ) -> TransitionResult:
        if sub is None:
            sub = await self._resolve(session, event)

        if sub.status_enum.is_terminal:
            logger.info("cancellation_ignored_terminal", subscription_id=str(sub.id), status=sub.status)
            return TransitionResult.noop("terminal", sub)

        if event.period_end is not None:
            sub.current_period_end = event.period_end

        target = self._cancellation_target(sub, event, now)
        return self.end_subscription(session, sub, target, now=event.occurred_at or now, event=event)

    def end_subscription(
        self,
        session: AsyncSession,
        sub: Subscription,
        target: SubscriptionStatus,
        *,
        now: datetime | None = None,
        event: CanonicalEvent | None = None,
        notes: str | None = None,
    ) -> TransitionResult:
        """Move ``sub`` to GRACE_PERIOD, CANCELED or EXPIRED, recording history and a notification."""
        now = now or utcnow()
        previous = sub.status_enum
        if not self._set_status(sub, target):
            return TransitionResult.noop("not_applicable", sub)

        sub.canceled_at = sub.canceled_at or now
        action = {
            SubscriptionStatus.GRACE_PERIOD: "grace_started",
            SubscriptionStatus.CANCELED: "cancelled",
            SubscriptionStatus.EXPIRED: "expired",
        }[target]
        self._history(session, sub, action, from_status=previous, from_tier=sub.tier, event=event, notes=notes)

        name = _tier_name(sub.tier)
        if target is SubscriptionStatus.GRACE_PERIOD:
            body = f"Your {name} plan has been cancelled. You keep access until {_format_date(sub.current_period_end)}."
        elif target is SubscriptionStatus.EXPIRED:
            body = f"Your {name} plan has expired."
        else:
            body = f"Your {name} plan has been cancelled."
        notification = NotificationIntent(
            user_id=sub.user_id,
            type="subscription_cancelled",
            title="Subscription Cancelled",
            body=body,
            priority="high",
            action_url="/billing",
            metadata={"tier": sub.tier, "status": sub.status},
        )
        return TransitionResult(sub, previous, target, applied=True, notifications=[notification])

    # ── Payments ──

    async def _payment_failed(self, session: AsyncSession, event: CanonicalEvent, now: datetime) -> TransitionResult:
        sub = await self._resolve(session, event)

        previous = sub.status_enum
        if previous not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
            logger.info("payment_failure_ignored", subscription_id=str(sub.id), status=previous.value)
            return TransitionResult.noop("not_applicable", sub)

        self._set_status(sub, SubscriptionStatus.PAST_DUE)
        self._history(
            session,
            sub,
            "payment_failed",
            from_status=previous,
            from_tier=sub.tier,
            event=event,
            notes=event.failure_reason,
        )
        notification = NotificationIntent(
            user_id=sub.user_id,
            type="payment_failed",
            title="Payment Failed",
            body="We could not process your payment. Please update your payment method.",
            priority="high",
            action_url="/billing",
            metadata={"tier": sub.tier, "reason": event.failure_reason},
        )
        return TransitionResult(sub, previous, SubscriptionStatus.PAST_DUE, applied=True, notifications=[notification])

    async def _payment_completed(self, session: AsyncSession, event: CanonicalEvent, now: datetime) -> TransitionResult:
        if not event.is_renewal:
            logger.info(
                "payment_recorded",
                provider=event.provider.value,
                reference=event.reference,
                amount=event.amount,
                currency=event.currency,
            )
            return TransitionResult.noop("not_renewal")

        sub = await self._resolve(session, event)

        previous = sub.status_enum
        if previous.is_terminal:
            logger.warning("renewal_on_terminal_subscription", subscription_id=str(sub.id), status=previous.value)
            return TransitionResult.noop("terminal", sub)

        old_end = sub.current_period_end
        new_end = self._renewed_period_end(sub, event, now)
        if new_end is None and previous is SubscriptionStatus.ACTIVE:
            # The period already covers this payment
            logger.info("renewal_already_applied", subscription_id=str(sub.id), event_id=event.event_id)
            return TransitionResult.noop("already_renewed", sub)

        if new_end is not None:
            sub.current_period_start = event.period_start or old_end or now
            sub.current_period_end = new_end

        if event.amount:
            sub.amount = event.amount
            sub.currency = event.currency or sub.currency
            sub.amount_usd = event.amount_usd

        if previous is not SubscriptionStatus.ACTIVE:
            self._set_status(sub, SubscriptionStatus.ACTIVE)
            sub.canceled_at = None
        sub.updated_at = now

        self._history(
            session,
            sub,
            "renewed",
            from_status=previous,
            from_tier=sub.tier,
            event=event,
            details={"previous_period_end": old_end.isoformat() if old_end else None},
        )
        notification = NotificationIntent(
            user_id=sub.user_id,
            type="subscription_renewed",
            title="Subscription Renewed",
            body=f"Your {_tier_name(sub.tier)} plan has been renewed until {_format_date(sub.current_period_end)}.",
            action_url="/billing",
            metadata={"tier": sub.tier, "period_end": sub.current_period_end.isoformat() if sub.current_period_end else None},
        )
        return TransitionResult(sub, previous, sub.status_enum, applied=True, notifications=[notification])

    def _renewed_period_end(self, sub: Subscription, event: CanonicalEvent, now: datetime) -> datetime | None:
        """Provider period end when given. Otherwise extend one cycle, unless already extended."""
        if event.period_end is not None:
            if sub.current_period_end is None or event.period_end > sub.current_period_end:
                return event.period_end
            return None

        current = sub.current_period_end
        lead = timedelta(hours=self.settings.renewal_lead_time_hours)
        if current is None:
            return next_period_end(now, sub.billing_cycle)
        if current <= now + lead:
            return next_period_end(current, sub.billing_cycle)
        return None

    # ── Sweeps ──

    async def expire_lapsed_subscriptions(self, session: AsyncSession, now: datetime | None = None) -> list[Subscription]:
        """Move GRACE_PERIOD subscriptions whose period has ended to EXPIRED. Does not commit."""
        now = now or utcnow()
        result = await session.execute(
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.GRACE_PERIOD.value,
                Subscription.current_period_end <= now,
            )
            .with_for_update()
        )
        expired = []
        for sub in result.scalars().all():
            previous = sub.status_enum
            if self._set_status(sub, SubscriptionStatus.EXPIRED):
                self._history(session, sub, "expired", from_status=previous, from_tier=sub.tier, notes="Grace period ended")
                expired.append(sub)
        if expired:
            logger.info("grace_periods_expired", count=len(expired))
        return expired
