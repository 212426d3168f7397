"""Paystack webhooks.

Paystack events carry no event id, so the idempotency key is derived from
the event name and the object's reference. Amounts already arrive in kobo
(the smallest unit).
"""

from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from reconciler.core.config import Settings, get_settings
from reconciler.core.exceptions import SignatureInvalid, WebhookNotConfigured
from reconciler.domain.events import (
    CancellationMode,
    CanonicalEvent,
    CanonicalEventType,
    NormalizedStatus,
    ProviderName,
    normalize_status,
)
from reconciler.providers.base import (
    PaymentProvider,
    checkout_metadata,
    has_checkout_metadata,
    parse_time,
    validate_object,
)
from reconciler.providers.signatures import verify_paystack_signature

logger = structlog.get_logger(__name__)


class _PaystackObject(BaseModel):
    model_config = ConfigDict(extra="allow")


class PaystackEvent(_PaystackObject):
    event: str
    data: dict[str, Any] = Field(default_factory=dict)


class PaystackCharge(_PaystackObject):
    id: int | str | None = None
    reference: str | None = None
    status: str | None = None
    amount: int | None = None
    currency: str | None = None
    paid_at: str | None = None
    gateway_response: str | None = None
    metadata: dict[str, Any] | str | None = None
    customer: dict[str, Any] = Field(default_factory=dict)
    plan: dict[str, Any] | str | None = None
    subscription: dict[str, Any] | None = None
    # subscription code when the charge is a renewal
    subscription_code: str | None = None


class PaystackSubscription(_PaystackObject):
    subscription_code: str
    status: str | None = None
    amount: int | None = None
    next_payment_date: str | None = None
    createdAt: str | None = None
    customer: dict[str, Any] = Field(default_factory=dict)
    plan: dict[str, Any] = Field(default_factory=dict)


class PaystackInvoice(_PaystackObject):
    invoice_code: str | None = None
    status: str | None = None
    paid: bool | None = None
    amount: int | None = None
    currency: str | None = None
    description: str | None = None
    subscription: dict[str, Any] = Field(default_factory=dict)
    customer: dict[str, Any] = Field(default_factory=dict)
    transaction: dict[str, Any] = Field(default_factory=dict)


class PaystackRefund(_PaystackObject):
    id: int | str | None = None
    transaction_reference: str | None = None
    amount: int | None = None
    currency: str | None = None
    status: str | None = None
    transaction: dict[str, Any] | int | str | None = None


def _customer_code(customer: dict[str, Any]) -> str | None:
    return customer.get("customer_code") if customer else None


def _upper(currency: str | None) -> str | None:
    return currency.upper() if currency else None


class PaystackProvider(PaymentProvider[PaystackEvent]):
    name = ProviderName.PAYSTACK
    payload_model = PaystackEvent
    signature_header = "x-paystack-signature"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        secret = self.settings.paystack_secret_key
        if not secret:
            logger.error("paystack_secret_key_missing")
            raise WebhookNotConfigured(self.name.value)

        signature = headers.get(self.signature_header)
        if not signature:
            raise SignatureInvalid("Missing x-paystack-signature header")

        if not verify_paystack_signature(raw_body, signature, secret, self.settings.paystack_signature_digest):
            raise SignatureInvalid("Invalid signature")

    @staticmethod
    def event_name(payload: PaystackEvent) -> str:
        return payload.event.replace("_", ".")

    def event_id(self, payload: PaystackEvent) -> str:
        data = payload.data
        key = data.get("reference") or data.get("id") or data.get("subscription_code") or data.get("invoice_code")
        name = self.event_name(payload)
        if name == "invoice.update":
            # One invoice is updated many times; each state is its own delivery
            status = data.get("status") or ""
            stamp = data.get("updated_at") or data.get("paid_at") or ""
            return f"{name}:{key}:{status}:{stamp}"
        return f"{name}:{key}"

    def normalize(self, payload: PaystackEvent) -> CanonicalEvent:
        event = self.event_name(payload)
        base = {
            "provider": self.name,
            "event_id": self.event_id(payload),
            "provider_event_type": payload.event,
        }
        data = payload.data

        if event == "charge.success":
            return self._charge_success(data, base)
        if event == "charge.failed":
            return self._charge(data, base, CanonicalEventType.PAYMENT_FAILED)
        if event == "subscription.create":
            return self._subscription_created(data, base)
        if event in ("subscription.disable", "subscription.not.renew"):
            return self._subscription_cancelled(data, base, event)
        if event in ("invoice.payment.failed", "invoice.update", "invoice.failed"):
            return self._invoice(data, base, event)
        if event == "refund.processed":
            return self._refund(data, base)

        return CanonicalEvent(event_type=CanonicalEventType.UNHANDLED, **base)

    def _charge_success(self, data: dict, base: dict) -> CanonicalEvent:
        charge = validate_object(PaystackCharge, data, "charge")
        occurred_at = parse_time(charge.paid_at, "paid_at")
        subscription_code = charge.subscription_code or (charge.subscription or {}).get("subscription_code")

        if subscription_code:
            subscription = charge.subscription or {}
            return CanonicalEvent(
                event_type=CanonicalEventType.PAYMENT_COMPLETED,
                status=NormalizedStatus.COMPLETED,
                reference=charge.reference,
                subscription_reference=subscription_code,
                customer_reference=_customer_code(charge.customer),
                amount=charge.amount,
                currency=_upper(charge.currency),
                is_renewal=True,
                period_end=parse_time(subscription.get("next_payment_date"), "subscription.next_payment_date"),
                occurred_at=occurred_at,
                **base,
            )

        metadata = charge.metadata if isinstance(charge.metadata, dict) else {}
        if has_checkout_metadata(metadata):
            # Initial checkout charge: the transaction reference identifies the
            # subscription until subscription.create links the real code.
            return CanonicalEvent(
                event_type=CanonicalEventType.SUBSCRIPTION_ACTIVATED,
                status=NormalizedStatus.ACTIVE,
                reference=charge.reference,
                subscription_reference=charge.reference,
                customer_reference=_customer_code(charge.customer),
                amount=charge.amount,
                currency=_upper(charge.currency),
                occurred_at=occurred_at,
                metadata=checkout_metadata(metadata),
                **base,
            )

        return self._charge(data, base, CanonicalEventType.PAYMENT_COMPLETED)

    def _charge(self, data: dict, base: dict, event_type: CanonicalEventType) -> CanonicalEvent:
        charge = validate_object(PaystackCharge, data, "charge")
        failed = event_type is CanonicalEventType.PAYMENT_FAILED
        return CanonicalEvent(
            event_type=event_type,
            status=NormalizedStatus.FAILED if failed else normalize_status(charge.status),
            reference=charge.reference,
            customer_reference=_customer_code(charge.customer),
            amount=charge.amount,
            currency=_upper(charge.currency),
            failure_reason=charge.gateway_response if failed else None,
            occurred_at=parse_time(charge.paid_at, "paid_at"),
            **base,
        )

    def _subscription_created(self, data: dict, base: dict) -> CanonicalEvent:
        sub = validate_object(PaystackSubscription, data, "subscription")
        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_UPDATED,
            status=normalize_status(sub.status),
            reference=sub.subscription_code,
            subscription_reference=sub.subscription_code,
            customer_reference=_customer_code(sub.customer),
            period_start=parse_time(sub.createdAt, "createdAt"),
            period_end=parse_time(sub.next_payment_date, "next_payment_date"),
            **base,
        )

    def _subscription_cancelled(self, data: dict, base: dict, event: str) -> CanonicalEvent:
        sub = validate_object(PaystackSubscription, data, "subscription")
        # not_renew keeps access until the paid period runs out
        mode = CancellationMode.AT_PERIOD_END if event == "subscription.not.renew" else CancellationMode.IMMEDIATE
        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_CANCELLED,
            status=NormalizedStatus.CANCELLED,
            reference=sub.subscription_code,
            subscription_reference=sub.subscription_code,
            customer_reference=_customer_code(sub.customer),
            period_end=parse_time(sub.next_payment_date, "next_payment_date"),
            cancellation=mode,
            **base,
        )

    def _invoice(self, data: dict, base: dict, event: str) -> CanonicalEvent:
        invoice = validate_object(PaystackInvoice, data, "invoice")
        failed = event != "invoice.update" or (
            normalize_status(invoice.status) in (NormalizedStatus.FAILED, NormalizedStatus.PAST_DUE) and not invoice.paid
        )
        if not failed:
            return CanonicalEvent(event_type=CanonicalEventType.UNHANDLED, **base)

        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_PAYMENT_FAILED,
            status=NormalizedStatus.FAILED,
            reference=invoice.invoice_code,
            subscription_reference=invoice.subscription.get("subscription_code"),
            customer_reference=_customer_code(invoice.customer),
            amount=invoice.amount,
            currency=_upper(invoice.currency),
            failure_reason=invoice.description,
            **base,
        )

    def _refund(self, data: dict, base: dict) -> CanonicalEvent:
        refund = validate_object(PaystackRefund, data, "refund")
        reference = refund.transaction_reference
        if reference is None and isinstance(refund.transaction, dict):
            reference = refund.transaction.get("reference")
        return CanonicalEvent(
            event_type=CanonicalEventType.PAYMENT_REFUNDED,
            status=NormalizedStatus.REFUNDED,
            reference=reference or (str(refund.id) if refund.id is not None else None),
            amount=refund.amount,
            currency=_upper(refund.currency),
            **base,
        )
