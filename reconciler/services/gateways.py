"""Synchronous payment gateways: charge, refund, status and subscription cancellation.

Stripe goes through the official SDK's async calls. Paystack, PayPal and
Flutterwave are plain REST APIs called with httpx, retried on transport
errors with tenacity. Any failure to reach a provider surfaces as
ProviderCommunicationFailure; a declined payment is a PaymentResult with
``success=False``, not an exception.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any

import httpx
import stripe
import structlog
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from reconciler.core.config import Settings, get_settings
from reconciler.core.exceptions import ProviderCommunicationFailure, ProviderNotConfigured
from reconciler.domain.events import NormalizedStatus, ProviderName, normalize_status
from reconciler.providers.paypal import PayPalClient
from reconciler.providers.registry import provider_name
from reconciler.services.currency import from_smallest_unit, to_smallest_unit

logger = structlog.get_logger(__name__)


# ── Request / result schemas ────────────────────────────────────────


class ChargeRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    amount_in_smallest_unit: bool = False
    email: str | None = None
    description: str | None = None
    country: str | None = None
    provider: ProviderName | None = None
    payment_method: str | None = None  # Stripe payment method id or Paystack authorization code
    return_url: str | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentResult(BaseModel):
    success: bool
    provider: ProviderName
    transaction_id: str | None = None
    status: NormalizedStatus = NormalizedStatus.UNKNOWN
    amount: int | None = None  # smallest currency unit
    currency: str | None = None
    amount_usd: int | None = None
    redirect_url: str | None = None
    error_message: str | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubscriptionResult(BaseModel):
    success: bool
    provider: ProviderName
    subscription_id: str
    status: str | None = None
    cancel_at_period_end: bool = False
    error_message: str | None = None


# ── Gateways ────────────────────────────────────────────────────────


class PaymentGateway(ABC):
    name: ProviderName

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    @abstractmethod
    async def charge(self, request: ChargeRequest, amount: int, idempotency_key: str) -> PaymentResult:
        """Charge ``amount`` (smallest unit) in ``request.currency``."""

    @abstractmethod
    async def refund(self, transaction_id: str, amount: int | None = None, currency: str | None = None) -> PaymentResult: ...

    @abstractmethod
    async def get_payment_status(self, transaction_id: str) -> PaymentResult: ...

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> SubscriptionResult: ...


class StripeGateway(PaymentGateway):
    name = ProviderName.STRIPE

    def _configure(self) -> None:
        if not self.settings.stripe_secret_key:
            raise ProviderNotConfigured(self.name.value)
        stripe.api_key = self.settings.stripe_secret_key

    def _intent_result(self, intent, idempotency_key: str | None = None) -> PaymentResult:
        return PaymentResult(
            success=intent.status in ("succeeded", "processing", "requires_capture"),
            provider=self.name,
            transaction_id=intent.id,
            status=normalize_status(intent.status),
            amount=intent.amount,
            currency=intent.currency.upper() if intent.currency else None,
            idempotency_key=idempotency_key,
        )

    async def charge(self, request: ChargeRequest, amount: int, idempotency_key: str) -> PaymentResult:
        self._configure()
        params: dict[str, Any] = {
            "amount": amount,
            "currency": request.currency.lower(),
            "metadata": request.metadata,
            "idempotency_key": idempotency_key,
        }
        if request.description:
            params["description"] = request.description
        if request.email:
            params["receipt_email"] = request.email
        if request.payment_method:
            params.update(payment_method=request.payment_method, confirm=True, off_session=True)
        else:
            params["automatic_payment_methods"] = {"enabled": True}

        try:
            intent = await stripe.PaymentIntent.create_async(**params)
        except stripe.CardError as e:
            logger.info("stripe_charge_declined", code=e.code, idempotency_key=idempotency_key)
            return PaymentResult(
                success=False,
                provider=self.name,
                status=NormalizedStatus.FAILED,
                amount=amount,
                currency=request.currency.upper(),
                error_message=e.user_message or str(e),
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise ProviderCommunicationFailure(self.name.value, "charge", str(e)) from e
        return self._intent_result(intent, idempotency_key)

    async def refund(self, transaction_id: str, amount: int | None = None, currency: str | None = None) -> PaymentResult:
        self._configure()
        params: dict[str, Any] = {"payment_intent": transaction_id}
        if amount is not None:
            params["amount"] = amount
        try:
            refund = await stripe.Refund.create_async(**params)
        except stripe.StripeError as e:
            raise ProviderCommunicationFailure(self.name.value, "refund", str(e)) from e
        return PaymentResult(
            success=refund.status in ("succeeded", "pending"),
            provider=self.name,
            transaction_id=refund.id,
            status=NormalizedStatus.REFUNDED if refund.status == "succeeded" else normalize_status(refund.status),
            amount=refund.amount,
            currency=refund.currency.upper() if refund.currency else None,
            metadata={"payment_intent": transaction_id},
        )

    async def get_payment_status(self, transaction_id: str) -> PaymentResult:
        self._configure()
        try:
            intent = await stripe.PaymentIntent.retrieve_async(transaction_id)
        except stripe.StripeError as e:
            raise ProviderCommunicationFailure(self.name.value, "get_payment_status", str(e)) from e
        return self._intent_result(intent)

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> SubscriptionResult:
        self._configure()
        try:
            if at_period_end:
                sub = await stripe.Subscription.modify_async(subscription_id, cancel_at_period_end=True)
            else:
                sub = await stripe.Subscription.cancel_async(subscription_id)
        except stripe.StripeError as e:
            raise ProviderCommunicationFailure(self.name.value, "cancel_subscription", str(e)) from e
        return SubscriptionResult(
            success=True,
            provider=self.name,
            subscription_id=sub.id,
            status=sub.status,
            cancel_at_period_end=bool(sub.cancel_at_period_end),
        )


class HttpGateway(PaymentGateway):
    """Shared httpx plumbing for the REST-only providers."""

    base_url: str = ""

    def __init__(self, settings: Settings | None = None, http_client: httpx.AsyncClient | None = None, retry_wait=None):
        super().__init__(settings)
        self._http_client = http_client
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await client.request(method, url, **kwargs)

    async def _request(self, method: str, path: str, data: dict | None = None, operation: str = "") -> dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TransportError),
                stop=stop_after_attempt(3),
                wait=self._retry_wait,
                reraise=True,
            ):
                with attempt:
                    response = await self._send(method, url, headers=self._headers(), json=data)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("provider_api_error", provider=self.name.value, path=path, error=str(e))
            raise ProviderCommunicationFailure(self.name.value, operation or path, str(e)) from e
        if not isinstance(payload, dict):
            raise ProviderCommunicationFailure(self.name.value, operation or path, "unexpected response shape")
        return payload


class PaystackGateway(HttpGateway):
    name = ProviderName.PAYSTACK

    def __init__(self, settings: Settings | None = None, http_client: httpx.AsyncClient | None = None, retry_wait=None):
        super().__init__(settings, http_client, retry_wait)
        self.base_url = self.settings.paystack_base_url

    def _headers(self) -> dict[str, str]:
        if not self.settings.paystack_secret_key:
            raise ProviderNotConfigured(self.name.value)
        return {
            "Authorization": f"Bearer {self.settings.paystack_secret_key}",
            "Content-Type": "application/json",
        }

    def _transaction_result(self, data: dict, idempotency_key: str | None = None) -> PaymentResult:
        status = normalize_status(data.get("status"))
        return PaymentResult(
            success=status in (NormalizedStatus.COMPLETED, NormalizedStatus.PENDING),
            provider=self.name,
            transaction_id=data.get("reference"),
            status=status,
            amount=data.get("amount"),
            currency=(data.get("currency") or "").upper() or None,
            error_message=data.get("gateway_response") if status is NormalizedStatus.FAILED else None,
            idempotency_key=idempotency_key,
        )

    async def charge(self, request: ChargeRequest, amount: int, idempotency_key: str) -> PaymentResult:
        body = {
            "email": request.email,
            "amount": amount,
            "currency": request.currency.upper(),
            "reference": idempotency_key,
            "metadata": request.metadata,
        }
        if request.payment_method:
            body["authorization_code"] = request.payment_method
            payload = await self._request("POST", "transaction/charge_authorization", body, "charge")
            return self._transaction_result(payload.get("data") or {}, idempotency_key)

        if request.return_url:
            body["callback_url"] = request.return_url
        payload = await self._request("POST", "transaction/initialize", body, "charge")
        data = payload.get("data") or {}
        return PaymentResult(
            success=bool(payload.get("status")),
            provider=self.name,
            transaction_id=data.get("reference", idempotency_key),
            status=NormalizedStatus.PENDING,
            amount=amount,
            currency=request.currency.upper(),
            redirect_url=data.get("authorization_url"),
            idempotency_key=idempotency_key,
            metadata={"access_code": data.get("access_code")},
        )

    async def refund(self, transaction_id: str, amount: int | None = None, currency: str | None = None) -> PaymentResult:
        body: dict[str, Any] = {"transaction": transaction_id}
        if amount is not None:
            body["amount"] = amount
        payload = await self._request("POST", "refund", body, "refund")
        data = payload.get("data") or {}
        return PaymentResult(
            success=bool(payload.get("status")),
            provider=self.name,
            transaction_id=transaction_id,
            status=normalize_status(data.get("status")) if data.get("status") != "pending" else NormalizedStatus.PENDING,
            amount=data.get("amount", amount),
            currency=(data.get("currency") or currency or "").upper() or None,
        )

    async def get_payment_status(self, transaction_id: str) -> PaymentResult:
        payload = await self._request("GET", f"transaction/verify/{transaction_id}", operation="get_payment_status")
        return self._transaction_result(payload.get("data") or {})

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> SubscriptionResult:
        # Disabling stops future charges; access through the paid period is our concern, not Paystack's
        fetched = await self._request("GET", f"subscription/{subscription_id}", operation="cancel_subscription")
        token = (fetched.get("data") or {}).get("email_token")
        payload = await self._request(
            "POST", "subscription/disable", {"code": subscription_id, "token": token}, "cancel_subscription"
        )
        return SubscriptionResult(
            success=bool(payload.get("status")),
            provider=self.name,
            subscription_id=subscription_id,
            status="disabled",
            cancel_at_period_end=at_period_end,
            error_message=None if payload.get("status") else payload.get("message"),
        )


class FlutterwaveGateway(HttpGateway):
    """Flutterwave takes and returns major units."""

    name = ProviderName.FLUTTERWAVE

    def __init__(self, settings: Settings | None = None, http_client: httpx.AsyncClient | None = None, retry_wait=None):
        super().__init__(settings, http_client, retry_wait)
        self.base_url = self.settings.flutterwave_base_url

    def _headers(self) -> dict[str, str]:
        if not self.settings.flutterwave_secret_key:
            raise ProviderNotConfigured(self.name.value)
        return {
            "Authorization": f"Bearer {self.settings.flutterwave_secret_key}",
            "Content-Type": "application/json",
        }

    def _transaction_result(self, data: dict) -> PaymentResult:
        currency = (data.get("currency") or "").upper() or None
        amount = data.get("amount")
        status = normalize_status(data.get("status"))
        return PaymentResult(
            success=status in (NormalizedStatus.COMPLETED, NormalizedStatus.PENDING),
            provider=self.name,
            transaction_id=str(data["id"]) if data.get("id") is not None else data.get("tx_ref"),
            status=status,
            amount=to_smallest_unit(amount, currency) if amount is not None and currency else None,
            currency=currency,
            metadata={"tx_ref": data.get("tx_ref")},
        )

    async def charge(self, request: ChargeRequest, amount: int, idempotency_key: str) -> PaymentResult:
        currency = request.currency.upper()
        body = {
            "tx_ref": idempotency_key,
            "amount": str(from_smallest_unit(amount, currency)),
            "currency": currency,
            "redirect_url": request.return_url or self.settings.frontend_url,
            "customer": {"email": request.email},
            "meta": request.metadata,
        }
        payload = await self._request("POST", "payments", body, "charge")
        data = payload.get("data") or {}
        return PaymentResult(
            success=payload.get("status") == "success",
            provider=self.name,
            transaction_id=idempotency_key,
            status=NormalizedStatus.PENDING,
            amount=amount,
            currency=currency,
            redirect_url=data.get("link"),
            error_message=None if payload.get("status") == "success" else payload.get("message"),
            idempotency_key=idempotency_key,
        )

    async def refund(self, transaction_id: str, amount: int | None = None, currency: str | None = None) -> PaymentResult:
        body = {}
        if amount is not None and currency:
            body["amount"] = str(from_smallest_unit(amount, currency))
        payload = await self._request("POST", f"transactions/{transaction_id}/refund", body, "refund")
        data = payload.get("data") or {}
        return PaymentResult(
            success=payload.get("status") == "success",
            provider=self.name,
            transaction_id=str(data.get("id", transaction_id)),
            status=NormalizedStatus.REFUNDED if payload.get("status") == "success" else normalize_status(data.get("status")),
            amount=amount,
            currency=currency.upper() if currency else None,
            metadata={"transaction_id": transaction_id},
        )

    async def get_payment_status(self, transaction_id: str) -> PaymentResult:
        payload = await self._request("GET", f"transactions/{transaction_id}/verify", operation="get_payment_status")
        return self._transaction_result(payload.get("data") or {})

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> SubscriptionResult:
        payload = await self._request("PUT", f"subscriptions/{subscription_id}/cancel", operation="cancel_subscription")
        data = payload.get("data") or {}
        return SubscriptionResult(
            success=payload.get("status") == "success",
            provider=self.name,
            subscription_id=subscription_id,
            status=data.get("status", "cancelled"),
            cancel_at_period_end=at_period_end,
            error_message=None if payload.get("status") == "success" else payload.get("message"),
        )


class PayPalGateway(PaymentGateway):
    """Orders v2 for one-off charges, Subscriptions v1 for cancellation."""

    name = ProviderName.PAYPAL

    def __init__(self, settings: Settings | None = None, client: PayPalClient | None = None):
        super().__init__(settings)
        self.client = client or PayPalClient(self.settings)

    def _configure(self) -> None:
        if not (self.settings.paypal_client_id and self.settings.paypal_client_secret):
            raise ProviderNotConfigured(self.name.value)

    @staticmethod
    def _link(data: dict, rel: str) -> str | None:
        for link in data.get("links") or []:
            if link.get("rel") in (rel, "payer-action"):
                return link.get("href")
        return None

    async def charge(self, request: ChargeRequest, amount: int, idempotency_key: str) -> PaymentResult:
        self._configure()
        currency = request.currency.upper()
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": idempotency_key,
                    "description": request.description,
                    "amount": {"currency_code": currency, "value": str(from_smallest_unit(amount, currency))},
                }
            ],
        }
        data = await self.client.request("POST", "/v2/checkout/orders", body, headers={"PayPal-Request-Id": idempotency_key})
        return PaymentResult(
            success=True,
            provider=self.name,
            transaction_id=data.get("id"),
            status=normalize_status(data.get("status")) if data.get("status") != "CREATED" else NormalizedStatus.PENDING,
            amount=amount,
            currency=currency,
            redirect_url=self._link(data, "approve"),
            idempotency_key=idempotency_key,
        )

    async def refund(self, transaction_id: str, amount: int | None = None, currency: str | None = None) -> PaymentResult:
        self._configure()
        body = None
        if amount is not None and currency:
            body = {"amount": {"value": str(from_smallest_unit(amount, currency)), "currency_code": currency.upper()}}
        data = await self.client.request("POST", f"/v2/payments/captures/{transaction_id}/refund", body)
        status = normalize_status(data.get("status"))
        return PaymentResult(
            success=status in (NormalizedStatus.COMPLETED, NormalizedStatus.PENDING),
            provider=self.name,
            transaction_id=data.get("id"),
            status=NormalizedStatus.REFUNDED if status is NormalizedStatus.COMPLETED else status,
            amount=amount,
            currency=currency.upper() if currency else None,
            metadata={"capture_id": transaction_id},
        )

    async def get_payment_status(self, transaction_id: str) -> PaymentResult:
        self._configure()
        data = await self.client.request("GET", f"/v2/checkout/orders/{transaction_id}")
        status = data.get("status")
        return PaymentResult(
            success=status in ("COMPLETED", "APPROVED"),
            provider=self.name,
            transaction_id=data.get("id", transaction_id),
            status=NormalizedStatus.PENDING if status in ("CREATED", "APPROVED", "SAVED") else normalize_status(status),
        )

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> SubscriptionResult:
        self._configure()
        # PayPal has one cancel; the paid period is honoured on our side
        await self.client.request(
            "POST", f"/v1/billing/subscriptions/{subscription_id}/cancel", {"reason": "Cancelled by customer"}
        )
        return SubscriptionResult(
            success=True,
            provider=self.name,
            subscription_id=subscription_id,
            status="CANCELLED",
            cancel_at_period_end=at_period_end,
        )


GATEWAY_CLASSES: dict[ProviderName, type[PaymentGateway]] = {
    ProviderName.STRIPE: StripeGateway,
    ProviderName.PAYPAL: PayPalGateway,
    ProviderName.PAYSTACK: PaystackGateway,
    ProviderName.FLUTTERWAVE: FlutterwaveGateway,
}


def get_gateway(name: str | ProviderName, settings: Settings | None = None) -> PaymentGateway:
    return GATEWAY_CLASSES[provider_name(name)](settings or get_settings())
