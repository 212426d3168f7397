"""PayPal webhooks: transmission verification, typed payloads and normalization.

PayPal does not sign with a shared secret. Each delivery carries
transmission headers that must be checked by PayPal's own
verify-webhook-signature API, which needs an OAuth client-credentials token.
"""

import json
import time
from collections.abc import Mapping
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from reconciler.core.config import Settings, get_settings
from reconciler.core.exceptions import (
    NormalizationError,
    PayloadMalformed,
    ProviderCommunicationFailure,
    SignatureInvalid,
    WebhookNotConfigured,
)
from reconciler.domain.events import (
    CancellationMode,
    CanonicalEvent,
    CanonicalEventType,
    NormalizedStatus,
    ProviderName,
    normalize_status,
)
from reconciler.providers.base import PaymentProvider, checkout_metadata, parse_time, validate_object
from reconciler.services.currency import to_smallest_unit

logger = structlog.get_logger(__name__)

PAYPAL_API_BASE = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def paypal_api_base(settings: Settings) -> str:
    return PAYPAL_API_BASE.get(settings.paypal_mode, PAYPAL_API_BASE["sandbox"])


# ── OAuth + verification ────────────────────────────────────────────


class PayPalClient:
    """Minimal PayPal REST client: cached OAuth token plus authenticated requests."""

    TOKEN_SKEW_SECONDS = 60

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_wait=None,
    ):
        self.settings = settings or get_settings()
        self.base_url = paypal_api_base(self.settings)
        self._http_client = http_client
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(3),
            wait=self._retry_wait,
            reraise=True,
        ):
            with attempt:
                if self._http_client is not None:
                    return await self._http_client.request(method, url, **kwargs)
                async with httpx.AsyncClient(timeout=15.0) as client:
                    return await client.request(method, url, **kwargs)
        raise ProviderCommunicationFailure("paypal", path)  # unreachable with reraise=True

    async def access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        response = await self._send(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        data = response.json()
        self._token = data["access_token"]
        self._token_expires_at = time.monotonic() + int(data.get("expires_in", 3600)) - self.TOKEN_SKEW_SECONDS
        return self._token

    async def request(self, method: str, path: str, json_body: dict | None = None, headers: dict | None = None) -> dict:
        """Authenticated JSON request. Transport and HTTP errors become ProviderCommunicationFailure."""
        try:
            token = await self.access_token()
            response = await self._send(
                method,
                path,
                json=json_body,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json", **(headers or {})},
            )
            response.raise_for_status()
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise ProviderCommunicationFailure("paypal", f"{method} {path}", str(e)) from e
        return response.json() if response.content else {}


class PayPalWebhookVerifier:
    def __init__(self, client: PayPalClient, webhook_id: str):
        self.client = client
        self.webhook_id = webhook_id

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """Ask PayPal whether the transmission headers match this body.

        Returns False for a definite rejection. Raises ProviderCommunicationFailure
        when PayPal could not be asked.
        """
        fields = {name: headers.get(header) for name, header in TRANSMISSION_HEADERS.items()}
        if not all(fields.values()):
            return False

        try:
            event = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return False

        result = await self.client.request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            {**fields, "webhook_id": self.webhook_id, "webhook_event": event},
        )
        return result.get("verification_status") == "SUCCESS"


# ── Payload models ──────────────────────────────────────────────────


class _PayPalObject(BaseModel):
    model_config = ConfigDict(extra="allow")


class PayPalEvent(_PayPalObject):
    id: str
    event_type: str
    create_time: str | None = None
    resource_type: str | None = None
    resource: dict[str, Any] = Field(default_factory=dict)


class PayPalMoney(_PayPalObject):
    value: str | None = None
    total: str | None = None  # v1 sale objects
    currency_code: str | None = None
    currency: str | None = None  # v1 sale objects

    def smallest_unit(self) -> tuple[int | None, str | None]:
        currency = (self.currency_code or self.currency or "").upper() or None
        value = self.value if self.value is not None else self.total
        if value is None or currency is None:
            return None, currency
        return to_smallest_unit(value, currency), currency


class PayPalSubscriptionResource(_PayPalObject):
    id: str
    status: str | None = None
    custom_id: str | None = None
    plan_id: str | None = None
    start_time: str | None = None
    billing_info: dict[str, Any] = Field(default_factory=dict)
    subscriber: dict[str, Any] = Field(default_factory=dict)


class PayPalPaymentResource(_PayPalObject):
    id: str
    state: str | None = None
    status: str | None = None
    amount: PayPalMoney | None = None
    billing_agreement_id: str | None = None
    custom_id: str | None = None


def _decode_custom_id(custom_id: str | None) -> dict[str, Any]:
    """Checkout context travels in custom_id as a small JSON object."""
    if not custom_id:
        raise NormalizationError("Subscription custom_id carries no checkout context", field="custom_id")
    try:
        data = json.loads(custom_id)
    except json.JSONDecodeError:
        raise NormalizationError("Subscription custom_id is not a JSON object", field="custom_id") from None
    if not isinstance(data, dict):
        raise NormalizationError("Subscription custom_id is not a JSON object", field="custom_id")
    return data


# ── Provider ────────────────────────────────────────────────────────


class PayPalProvider(PaymentProvider[PayPalEvent]):
    name = ProviderName.PAYPAL
    payload_model = PayPalEvent

    def __init__(
        self,
        settings: Settings | None = None,
        verifier: PayPalWebhookVerifier | None = None,
        client: PayPalClient | None = None,
    ):
        self.settings = settings or get_settings()
        self._verifier = verifier
        self._client = client

    @property
    def client(self) -> PayPalClient:
        if self._client is None:
            self._client = PayPalClient(self.settings)
        return self._client

    @property
    def verifier(self) -> PayPalWebhookVerifier:
        if self._verifier is None:
            self._verifier = PayPalWebhookVerifier(self.client, self.settings.paypal_webhook_id)
        return self._verifier

    async def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if not self.settings.paypal_webhook_id:
            logger.error("paypal_webhook_id_missing")
            raise WebhookNotConfigured(self.name.value)
        if not raw_body:
            # Nothing to verify; parse() reports the empty body
            return
        if not await self.verifier.verify(raw_body, headers):
            raise SignatureInvalid("PayPal transmission verification failed")

    def event_id(self, payload: PayPalEvent) -> str:
        return payload.id

    def normalize(self, payload: PayPalEvent) -> CanonicalEvent:
        event_type = payload.event_type
        base = {
            "provider": self.name,
            "event_id": payload.id,
            "provider_event_type": event_type,
            "occurred_at": parse_time(payload.create_time, "create_time"),
        }

        if event_type == "BILLING.SUBSCRIPTION.ACTIVATED":
            return self._subscription_activated(payload.resource, base)
        if event_type in ("BILLING.SUBSCRIPTION.UPDATED", "BILLING.SUBSCRIPTION.RE-ACTIVATED"):
            return self._subscription_updated(payload.resource, base)
        if event_type in ("BILLING.SUBSCRIPTION.CANCELLED", "BILLING.SUBSCRIPTION.SUSPENDED", "BILLING.SUBSCRIPTION.EXPIRED"):
            return self._subscription_cancelled(payload.resource, base)
        if event_type == "BILLING.SUBSCRIPTION.PAYMENT.FAILED":
            return self._subscription_payment_failed(payload.resource, base)
        if event_type in ("PAYMENT.SALE.COMPLETED", "PAYMENT.SALE.REFUNDED", "PAYMENT.SALE.DENIED"):
            return self._sale(payload.resource, base)
        if event_type in ("PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.REFUNDED"):
            return self._capture(payload.resource, base)

        return CanonicalEvent(event_type=CanonicalEventType.UNHANDLED, **base)

    async def enrich(self, event: CanonicalEvent) -> CanonicalEvent:
        """Renewal sales carry no billing period: read next_billing_time off the subscription.

        On any failure the event is returned unchanged and the renewal falls
        back to extending one billing cycle.
        """
        if not event.is_renewal or not event.subscription_reference or event.period_end is not None:
            return event

        path = f"/v1/billing/subscriptions/{event.subscription_reference}"
        try:
            sub = await self.client.request("GET", path)
            billing = sub.get("billing_info") if isinstance(sub, dict) else None
            if not isinstance(billing, dict):
                billing = {}
            period_end = parse_time(billing.get("next_billing_time"), "billing_info.next_billing_time")
        except (ProviderCommunicationFailure, PayloadMalformed, ValueError) as e:
            logger.warning(
                "paypal_next_billing_time_unavailable",
                subscription_reference=event.subscription_reference,
                event_id=event.event_id,
                error=str(e),
            )
            return event

        if period_end is None:
            logger.info("paypal_next_billing_time_missing", subscription_reference=event.subscription_reference)
            return event
        return event.model_copy(update={"period_end": period_end})

    def _subscription_activated(self, resource: dict, base: dict) -> CanonicalEvent:
        sub = validate_object(PayPalSubscriptionResource, resource, "subscription")
        billing = sub.billing_info
        last_payment = PayPalMoney.model_validate((billing.get("last_payment") or {}).get("amount") or {})
        amount, currency = last_payment.smallest_unit()
        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_ACTIVATED,
            status=NormalizedStatus.ACTIVE,
            reference=sub.id,
            subscription_reference=sub.id,
            customer_reference=sub.subscriber.get("payer_id"),
            amount=amount,
            currency=currency,
            period_start=parse_time(sub.start_time, "start_time"),
            period_end=parse_time(billing.get("next_billing_time"), "billing_info.next_billing_time"),
            metadata={**checkout_metadata(_decode_custom_id(sub.custom_id)), "plan_id": sub.plan_id},
            **base,
        )

    def _subscription_updated(self, resource: dict, base: dict) -> CanonicalEvent:
        sub = validate_object(PayPalSubscriptionResource, resource, "subscription")
        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_UPDATED,
            status=normalize_status(sub.status),
            reference=sub.id,
            subscription_reference=sub.id,
            period_end=parse_time(sub.billing_info.get("next_billing_time"), "billing_info.next_billing_time"),
            **base,
        )

    def _subscription_cancelled(self, resource: dict, base: dict) -> CanonicalEvent:
        sub = validate_object(PayPalSubscriptionResource, resource, "subscription")
        event_type = base["provider_event_type"]
        if event_type == "BILLING.SUBSCRIPTION.EXPIRED":
            status, cancellation = NormalizedStatus.EXPIRED, CancellationMode.IMMEDIATE
        elif event_type == "BILLING.SUBSCRIPTION.SUSPENDED":
            status, cancellation = NormalizedStatus.CANCELLED, CancellationMode.IMMEDIATE
        else:
            # A cancelled PayPal subscription keeps the period that was already paid for
            status, cancellation = NormalizedStatus.CANCELLED, CancellationMode.AT_PERIOD_END
        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_CANCELLED,
            status=status,
            reference=sub.id,
            subscription_reference=sub.id,
            period_end=parse_time(sub.billing_info.get("next_billing_time"), "billing_info.next_billing_time"),
            cancellation=cancellation,
            **base,
        )

    def _subscription_payment_failed(self, resource: dict, base: dict) -> CanonicalEvent:
        sub = validate_object(PayPalSubscriptionResource, resource, "subscription")
        failed = sub.billing_info.get("last_failed_payment") or {}
        money = PayPalMoney.model_validate(failed.get("amount") or {})
        amount, currency = money.smallest_unit()
        return CanonicalEvent(
            event_type=CanonicalEventType.SUBSCRIPTION_PAYMENT_FAILED,
            status=NormalizedStatus.FAILED,
            reference=sub.id,
            subscription_reference=sub.id,
            amount=amount,
            currency=currency,
            failure_reason=failed.get("reason_code"),
            **base,
        )

    def _sale(self, resource: dict, base: dict) -> CanonicalEvent:
        sale = validate_object(PayPalPaymentResource, resource, "sale")
        amount, currency = sale.amount.smallest_unit() if sale.amount else (None, None)
        event_type = {
            "PAYMENT.SALE.COMPLETED": CanonicalEventType.PAYMENT_COMPLETED,
            "PAYMENT.SALE.REFUNDED": CanonicalEventType.PAYMENT_REFUNDED,
            "PAYMENT.SALE.DENIED": CanonicalEventType.PAYMENT_FAILED,
        }[base["provider_event_type"]]
        return CanonicalEvent(
            event_type=event_type,
            status=normalize_status(sale.state or sale.status),
            reference=sale.id,
            subscription_reference=sale.billing_agreement_id,
            amount=amount,
            currency=currency,
            is_renewal=event_type is CanonicalEventType.PAYMENT_COMPLETED and bool(sale.billing_agreement_id),
            **base,
        )

    def _capture(self, resource: dict, base: dict) -> CanonicalEvent:
        capture = validate_object(PayPalPaymentResource, resource, "capture")
        amount, currency = capture.amount.smallest_unit() if capture.amount else (None, None)
        event_type = {
            "PAYMENT.CAPTURE.COMPLETED": CanonicalEventType.PAYMENT_COMPLETED,
            "PAYMENT.CAPTURE.DENIED": CanonicalEventType.PAYMENT_FAILED,
            "PAYMENT.CAPTURE.REFUNDED": CanonicalEventType.PAYMENT_REFUNDED,
        }[base["provider_event_type"]]
        return CanonicalEvent(
            event_type=event_type,
            status=normalize_status(capture.status),
            reference=capture.id,
            amount=amount,
            currency=currency,
            **base,
        )
