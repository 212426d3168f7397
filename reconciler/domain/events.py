"""Canonical event vocabulary shared by every payment provider.

Provider normalizers map their native payloads onto CanonicalEvent; the
state machine only ever sees this shape.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProviderName(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    PAYSTACK = "paystack"
    FLUTTERWAVE = "flutterwave"


class Tier(str, Enum):
    STARTER = "starter"
    PRO = "pro"
    STUDIO = "studio"
    BUSINESS = "business"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states. A missing row is the implicit NONE state."""

    ACTIVE = "active"
    PAST_DUE = "past_due"  # renewal charge failed, provider still retrying
    GRACE_PERIOD = "grace_period"  # canceled, entitled until period end
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED})
OPEN_STATUSES = frozenset(set(SubscriptionStatus) - TERMINAL_STATUSES)


class CanonicalEventType(str, Enum):
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment_failed"
    UNHANDLED = "unhandled"


class NormalizedStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class CancellationMode(str, Enum):
    IMMEDIATE = "immediate"
    AT_PERIOD_END = "at_period_end"


_STATUS_ALIASES: dict[str, NormalizedStatus] = {
    "succeeded": NormalizedStatus.COMPLETED,
    "successful": NormalizedStatus.COMPLETED,
    "success": NormalizedStatus.COMPLETED,
    "completed": NormalizedStatus.COMPLETED,
    "paid": NormalizedStatus.COMPLETED,
    "failed": NormalizedStatus.FAILED,
    "denied": NormalizedStatus.FAILED,
    "declined": NormalizedStatus.FAILED,
    "refunded": NormalizedStatus.REFUNDED,
    "reversed": NormalizedStatus.REFUNDED,
    "pending": NormalizedStatus.PENDING,
    "processing": NormalizedStatus.PENDING,
    "incomplete": NormalizedStatus.PENDING,
    "requires_payment_method": NormalizedStatus.PENDING,
    "active": NormalizedStatus.ACTIVE,
    "trialing": NormalizedStatus.ACTIVE,
    "past_due": NormalizedStatus.PAST_DUE,
    "unpaid": NormalizedStatus.PAST_DUE,
    "attention": NormalizedStatus.PAST_DUE,
    "suspended": NormalizedStatus.PAST_DUE,
    "canceled": NormalizedStatus.CANCELLED,
    "cancelled": NormalizedStatus.CANCELLED,
    "non-renewing": NormalizedStatus.CANCELLED,
    "disabled": NormalizedStatus.CANCELLED,
    "expired": NormalizedStatus.EXPIRED,
    "incomplete_expired": NormalizedStatus.EXPIRED,
    "complete": NormalizedStatus.EXPIRED,
}


def normalize_status(raw: str | None) -> NormalizedStatus:
    """Map a provider status string onto the canonical status vocabulary."""
    if not raw:
        return NormalizedStatus.UNKNOWN
    return _STATUS_ALIASES.get(raw.strip().lower(), NormalizedStatus.UNKNOWN)


class CanonicalEvent(BaseModel):
    """A provider-agnostic webhook notification."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderName
    event_id: str
    event_type: CanonicalEventType
    provider_event_type: str
    status: NormalizedStatus = NormalizedStatus.UNKNOWN

    # Primary object id (transaction or subscription) and the external
    # subscription it belongs to, when there is one.
    reference: str | None = None
    subscription_reference: str | None = None
    customer_reference: str | None = None

    amount: int | None = None  # smallest currency unit
    currency: str | None = None
    amount_usd: int | None = None

    period_start: datetime | None = None
    period_end: datetime | None = None
    cancellation: CancellationMode | None = None
    is_renewal: bool = False
    failure_reason: str | None = None
    occurred_at: datetime | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("user_id")

    @property
    def tier(self) -> Tier | None:
        value = self.metadata.get("tier")
        return Tier(value) if value else None

    @property
    def billing_cycle(self) -> BillingCycle | None:
        value = self.metadata.get("billing_cycle")
        return BillingCycle(value) if value else None

    @property
    def lock_reference(self) -> str | None:
        """External id that scopes mutual exclusion for this event."""
        return self.subscription_reference or self.reference

    @property
    def is_handled(self) -> bool:
        return self.event_type is not CanonicalEventType.UNHANDLED
