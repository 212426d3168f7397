"""Flutterwave webhooks.

Deliveries are signed with HMAC-SHA256 over the raw body in the
``flutterwave-signature`` header. Test-mode deliveries may only carry the
legacy ``verif_hash`` shared secret in the body, accepted only when
``flutterwave_test_mode`` is on. Amounts arrive in major units.
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
    load_json_object,
    parse_time,
    validate_object,
)
from reconciler.providers.signatures import verify_flutterwave_hash, verify_flutterwave_signature
from reconciler.services.currency import to_smallest_unit

logger = structlog.get_logger(__name__)


class _FlutterwaveObject(BaseModel):
    model_config = ConfigDict(extra="allow")


class FlutterwaveEvent(_FlutterwaveObject):
    event: str | None = None
    type: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    meta_data: dict[str, Any] | None = None
    verif_hash: str | None = None

    @property
    def event_name(self) -> str:
        return (self.type or self.event or "").replace("_", ".")


class FlutterwaveCharge(_FlutterwaveObject):
    id: int | str | None = None
    tx_ref: str | None = None
    flw_ref: str | None = None
    status: str | None = None
    amount: float | int | str | None = None
    currency: str | None = None
    created_at: str | None = None
    processor_response: str | None = None
    customer: dict[str, Any] = Field(default_factory=dict)
    meta: dict[str, Any] | None = None


class FlutterwaveSubscription(_FlutterwaveObject):
    id: int | str
    status: str | None = None
    customer: dict[str, Any] = Field(default_factory=dict)
    plan: dict[str, Any] | int | str | None = None


def _amount(value: Any, currency: str | None) -> int | None:
    if value is None or not currency:
        return None
    return to_smallest_unit(value, currency)


def _str(value: Any) -> str | None:
    return str(value) if value is not None else None


SUCCESS_STATUSES = ("successful", "succeeded", "success", "completed")


class FlutterwaveProvider(PaymentProvider[FlutterwaveEvent]):
    name = ProviderName.FLUTTERWAVE
    payload_model = FlutterwaveEvent
    signature_header = "flutterwave-signature"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        secret = self.settings.flutterwave_secret_hash
        if not secret:
            logger.error("flutterwave_secret_hash_missing")
            raise WebhookNotConfigured(self.name.value)

        signature = headers.get(self.signature_header)
        if signature:
            if not verify_flutterwave_signature(raw_body, signature, secret):
                raise SignatureInvalid("Invalid signature")
            return

        if not self.settings.flutterwave_test_mode:
            raise SignatureInvalid("Missing flutterwave-signature header")

        body = load_json_object(raw_body)
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        candidate = body.get("verif_hash") or data.get("verif_hash")
        if not verify_flutterwave_hash(candidate, secret):
            raise SignatureInvalid("Invalid verif_hash")
        logger.warning("flutterwave_verif_hash_accepted")

    def event_id(self, payload: FlutterwaveEvent) -> str:
        data = payload.data
        # id is per transaction attempt; tx_ref repeats across retries of one checkout
        key = data.get("id") or data.get("tx_ref")
        return f"{payload.event_name}:{key}"

    def normalize(self, payload: FlutterwaveEvent) -> CanonicalEvent:
        event = payload.event_name
        base = {
            "provider": self.name,
            "event_id": self.event_id(payload),
            "provider_event_type": payload.type or payload.event or "",
        }

        if event == "charge.completed":
            return self._charge_completed(payload, base)
        if event == "charge.failed":
            return self._charge(payload.data, base, CanonicalEventType.PAYMENT_FAILED)
        if event == "subscription.cancelled":
            return self._subscription_cancelled(payload.data, base)

        return CanonicalEvent(event_type=CanonicalEventType.UNHANDLED, **base)

    def _charge_completed(self, payload: FlutterwaveEvent, base: dict) -> CanonicalEvent:
        charge = validate_object(FlutterwaveCharge, payload.data, "charge")
        if (charge.status or "").lower() not in SUCCESS_STATUSES:
            return self._charge(payload.data, base, CanonicalEventType.PAYMENT_FAILED)

        # Checkout context may sit on data.meta or on the top-level meta_data
        meta = charge.meta or payload.meta_data or {}
        if has_checkout_metadata(meta):
            if charge.id is None:
                return self._charge(payload.data, base, CanonicalEventType.PAYMENT_COMPLETED)
            currency = charge.currency.upper() if charge.currency else None
            return CanonicalEvent(
                event_type=CanonicalEventType.SUBSCRIPTION_ACTIVATED,
                status=NormalizedStatus.ACTIVE,
                reference=str(charge.id),
                subscription_reference=str(charge.id),
                customer_reference=_str(charge.customer.get("id")),
                amount=_amount(charge.amount, currency),
                currency=currency,
                occurred_at=parse_time(charge.created_at, "created_at"),
                metadata={**checkout_metadata(meta), "tx_ref": charge.tx_ref},
                **base,
            )

        return self._charge(payload.data, base, CanonicalEventType.PAYMENT_COMPLETED)

    def _charge(self, data: dict, base: dict, event_type: CanonicalEventType) -> CanonicalEvent:
        charge = validate_object(FlutterwaveCharge, data, "charge")
        currency = charge.currency.upper() if charge.currency else None
        failed = event_type is CanonicalEventType.PAYMENT_FAILED
        return CanonicalEvent(
            event_type=event_type,
            status=NormalizedStatus.FAILED if failed else normalize_status(charge.status),
            reference=charge.tx_ref or _str(charge.id),
            customer_reference=_str(charge.customer.get("id")),
            amount=_amount(charge.amount, currency),
            currency=currency,
            failure_reason=charge.processor_response if failed else None,
            occurred_at=parse_time(charge.created_at, "created_at"),
            **base,
        )

    def _subscription_cancelled(self, data: dict, base: dict) -> CanonicalEvent:
        sub = validate_object(FlutterwaveSubscription, data, "subscription")
        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_CANCELLED,
            status=NormalizedStatus.CANCELLED,
            reference=str(sub.id),
            subscription_reference=str(sub.id),
            customer_reference=_str(sub.customer.get("id")),
            cancellation=CancellationMode.IMMEDIATE,
            **base,
        )
