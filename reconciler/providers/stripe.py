"""Stripe webhooks: typed payloads and normalization."""

from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from reconciler.core.config import Settings, get_settings
from reconciler.core.exceptions import NormalizationError, SignatureInvalid, WebhookNotConfigured
from reconciler.domain.events import (
    CancellationMode,
    CanonicalEvent,
    CanonicalEventType,
    NormalizedStatus,
    ProviderName,
    normalize_status,
)
from reconciler.providers.base import PaymentProvider, checkout_metadata, parse_time, validate_object
from reconciler.providers.signatures import verify_stripe_signature

logger = structlog.get_logger(__name__)


# ── Payload models ──────────────────────────────────────────────────


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="allow")


class StripeEventData(_StripeObject):
    object: dict[str, Any]


class StripeEvent(_StripeObject):
    id: str
    type: str
    created: int | None = None
    livemode: bool = False
    data: StripeEventData


class StripeCheckoutSession(_StripeObject):
    id: str
    subscription: str | dict | None = None
    customer: str | dict | None = None
    amount_total: int | None = None
    currency: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class StripeSubscription(_StripeObject):
    id: str
    status: str | None = None
    customer: str | dict | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    canceled_at: int | None = None
    ended_at: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    items: dict[str, Any] | None = None


class StripeInvoice(_StripeObject):
    id: str
    subscription: str | dict | None = None
    customer: str | dict | None = None
    billing_reason: str | None = None
    amount_paid: int | None = None
    amount_due: int | None = None
    currency: str | None = None
    status: str | None = None
    period_end: int | None = None
    lines: dict[str, Any] | None = None
    last_payment_error: dict[str, Any] | None = None


class StripePaymentObject(_StripeObject):
    """PaymentIntent or Charge."""

    id: str
    amount: int | None = None
    amount_refunded: int | None = None
    currency: str | None = None
    status: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_payment_error: dict[str, Any] | None = None
    payment_intent: str | None = None


def _object_id(value: str | dict | None) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _upper(currency: str | None) -> str | None:
    return currency.upper() if currency else None


# ── Provider ────────────────────────────────────────────────────────


class StripeProvider(PaymentProvider[StripeEvent]):
    name = ProviderName.STRIPE
    payload_model = StripeEvent
    signature_header = "stripe-signature"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        secret = self.settings.stripe_webhook_secret
        if not secret:
            logger.error("stripe_webhook_secret_missing")
            raise WebhookNotConfigured(self.name.value)

        header = headers.get(self.signature_header)
        if not header:
            raise SignatureInvalid("Missing stripe-signature header")

        if not verify_stripe_signature(raw_body, header, secret, self.settings.stripe_webhook_tolerance):
            raise SignatureInvalid("Invalid signature")

    def event_id(self, payload: StripeEvent) -> str:
        return payload.id

    def normalize(self, payload: StripeEvent) -> CanonicalEvent:
        handler = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.payment_failed": self._invoice_failed,
            "payment_intent.succeeded": self._payment_intent,
            "payment_intent.payment_failed": self._payment_intent,
            "charge.refunded": self._charge_refunded,
        }.get(payload.type)

        base = {
            "provider": self.name,
            "event_id": payload.id,
            "provider_event_type": payload.type,
            "occurred_at": parse_time(payload.created, "created"),
        }
        if handler is None:
            # customer.subscription.created: checkout completion creates the row.
            # invoice.paid: always accompanied by invoice.payment_succeeded for the same invoice.
            return CanonicalEvent(event_type=CanonicalEventType.UNHANDLED, **base)
        return handler(payload.data.object, base)

    def _checkout_completed(self, data: dict, base: dict) -> CanonicalEvent:
        session = validate_object(StripeCheckoutSession, data, "checkout session")
        subscription_id = _object_id(session.subscription)
        if not subscription_id:
            raise NormalizationError("checkout.session.completed has no subscription", field="subscription")

        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_ACTIVATED,
            status=NormalizedStatus.ACTIVE,
            reference=subscription_id,
            subscription_reference=subscription_id,
            customer_reference=_object_id(session.customer),
            amount=session.amount_total,
            currency=_upper(session.currency),
            metadata={**checkout_metadata(session.metadata), "checkout_session": session.id},
            **base,
        )

    def _subscription_updated(self, data: dict, base: dict) -> CanonicalEvent:
        sub = validate_object(StripeSubscription, data, "subscription")
        status = normalize_status(sub.status)
        cancellation = None
        if status is NormalizedStatus.CANCELLED:
            cancellation = CancellationMode.IMMEDIATE
        elif sub.cancel_at_period_end:
            cancellation = CancellationMode.AT_PERIOD_END

        metadata = {}
        if sub.metadata.get("tier"):
            metadata = checkout_metadata(sub.metadata, required=False)

        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_UPDATED,
            status=status,
            reference=sub.id,
            subscription_reference=sub.id,
            customer_reference=_object_id(sub.customer),
            period_start=parse_time(sub.current_period_start, "current_period_start"),
            period_end=parse_time(sub.current_period_end, "current_period_end"),
            cancellation=cancellation,
            metadata=metadata,
            **base,
        )

    def _subscription_deleted(self, data: dict, base: dict) -> CanonicalEvent:
        sub = validate_object(StripeSubscription, data, "subscription")
        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_CANCELLED,
            status=NormalizedStatus.CANCELLED,
            reference=sub.id,
            subscription_reference=sub.id,
            customer_reference=_object_id(sub.customer),
            period_end=parse_time(sub.current_period_end, "current_period_end"),
            # deleted means access has ended
            cancellation=CancellationMode.IMMEDIATE,
            **base,
        )

    def _invoice_paid(self, data: dict, base: dict) -> CanonicalEvent:
        invoice = validate_object(StripeInvoice, data, "invoice")
        line_period = _first_line_period(invoice.lines)
        return CanonicalEvent(
            event_type=CanonicalEventType.PAYMENT_COMPLETED,
            status=NormalizedStatus.COMPLETED,
            reference=invoice.id,
            subscription_reference=_object_id(invoice.subscription),
            customer_reference=_object_id(invoice.customer),
            amount=invoice.amount_paid,
            currency=_upper(invoice.currency),
            is_renewal=invoice.billing_reason == "subscription_cycle",
            period_start=parse_time(line_period.get("start"), "lines.period.start"),
            period_end=parse_time(line_period.get("end"), "lines.period.end"),
            **base,
        )

    def _invoice_failed(self, data: dict, base: dict) -> CanonicalEvent:
        invoice = validate_object(StripeInvoice, data, "invoice")
        reason = (invoice.last_payment_error or {}).get("message")
        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_PAYMENT_FAILED,
            status=NormalizedStatus.FAILED,
            reference=invoice.id,
            subscription_reference=_object_id(invoice.subscription),
            customer_reference=_object_id(invoice.customer),
            amount=invoice.amount_due,
            currency=_upper(invoice.currency),
            failure_reason=reason,
            **base,
        )

    def _payment_intent(self, data: dict, base: dict) -> CanonicalEvent:
        intent = validate_object(StripePaymentObject, data, "payment intent")
        succeeded = base["provider_event_type"] == "payment_intent.succeeded"
        return CanonicalEvent(
            event_type=CanonicalEventType.PAYMENT_COMPLETED if succeeded else CanonicalEventType.PAYMENT_FAILED,
            status=normalize_status(intent.status) if succeeded else NormalizedStatus.FAILED,
            reference=intent.id,
            amount=intent.amount,
            currency=_upper(intent.currency),
            failure_reason=(intent.last_payment_error or {}).get("message"),
            metadata=dict(intent.metadata),
            **base,
        )

    def _charge_refunded(self, data: dict, base: dict) -> CanonicalEvent:
        charge = validate_object(StripePaymentObject, data, "charge")
        return CanonicalEvent(
            event_type=CanonicalEventType.PAYMENT_REFUNDED,
            status=NormalizedStatus.REFUNDED,
            reference=charge.payment_intent or charge.id,
            amount=charge.amount_refunded if charge.amount_refunded is not None else charge.amount,
            currency=_upper(charge.currency),
            **base,
        )


def _first_line_period(lines: dict[str, Any] | None) -> dict[str, Any]:
    for line in (lines or {}).get("data") or []:
        period = line.get("period") if isinstance(line, dict) else None
        if period:
            return period
    return {}
