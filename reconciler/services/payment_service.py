"""Synchronous charge/refund front door with client-keyed idempotency.

A charge result is memoized in Redis under the caller's idempotency key for
``payment_idempotency_ttl`` seconds; a retried request with the same key gets
the stored result back without reaching the provider. While the first call is
still in flight, a second one with the same key is refused with
PaymentInProgress rather than charging twice.
"""

import uuid

import structlog
from redis.asyncio import Redis

from reconciler.core.config import Settings, get_settings
from reconciler.core.exceptions import PaymentInProgress
from reconciler.domain.events import ProviderName
from reconciler.providers.registry import provider_name
from reconciler.services.currency import CurrencyConversionService, to_smallest_unit
from reconciler.services.gateways import ChargeRequest, PaymentGateway, PaymentResult, SubscriptionResult

logger = structlog.get_logger(__name__)

CHARGE_KEY_PREFIX = "payment:idempotency:"
REFUND_KEY_PREFIX = "payment:refund:"
IN_FLIGHT_TTL = 120  # seconds a crashed caller can hold a key


def select_provider(currency: str, country: str | None = None, settings: Settings | None = None) -> ProviderName:
    """Pick a provider: by country, then by currency, then the configured default."""
    settings = settings or get_settings()
    if country and country.upper() in settings.payment_routing_by_country:
        return provider_name(settings.payment_routing_by_country[country.upper()])
    if currency and currency.upper() in settings.payment_routing_by_currency:
        return provider_name(settings.payment_routing_by_currency[currency.upper()])
    return provider_name(settings.payment_default_provider)


class PaymentService:
    def __init__(
        self,
        gateway: PaymentGateway,
        currency: CurrencyConversionService,
        redis: Redis,
        settings: Settings | None = None,
    ):
        self.gateway = gateway
        self.currency = currency
        self.redis = redis
        self.settings = settings or get_settings()

    @property
    def provider(self) -> ProviderName:
        return self.gateway.name

    async def _memoized(self, key: str) -> PaymentResult | None:
        cached = await self.redis.get(key)
        if cached is None:
            return None
        return PaymentResult.model_validate_json(cached)

    async def _run_once(self, key: str, call) -> PaymentResult:
        cached = await self._memoized(key)
        if cached is not None:
            logger.info("payment_idempotent_replay", provider=self.provider.value, key=key)
            return cached

        lock_key = f"{key}:lock"
        if not await self.redis.set(lock_key, "1", nx=True, ex=IN_FLIGHT_TTL):
            # The holder may have finished between our read and the SET
            cached = await self._memoized(key)
            if cached is not None:
                return cached
            raise PaymentInProgress()

        try:
            result = await call()
            await self.redis.set(key, result.model_dump_json(), ex=self.settings.payment_idempotency_ttl)
            return result
        finally:
            await self.redis.delete(lock_key)

    async def charge(self, request: ChargeRequest, idempotency_key: str | None = None) -> PaymentResult:
        key = idempotency_key or request.idempotency_key or uuid.uuid4().hex
        currency = request.currency.upper()
        if request.amount_in_smallest_unit:
            amount = int(request.amount)
        else:
            amount = to_smallest_unit(request.amount, currency)

        async def call() -> PaymentResult:
            logger.info("payment_charge_started", provider=self.provider.value, amount=amount, currency=currency, key=key)
            result = await self.gateway.charge(request, amount, key)
            amount_usd = await self.currency.to_usd_cents(result.amount if result.amount is not None else amount, currency)
            result = result.model_copy(update={"idempotency_key": key, "amount_usd": amount_usd})
            logger.info(
                "payment_charge_finished",
                provider=self.provider.value,
                success=result.success,
                status=result.status.value,
                transaction_id=result.transaction_id,
            )
            return result

        return await self._run_once(f"{CHARGE_KEY_PREFIX}{key}", call)

    async def refund(
        self,
        transaction_id: str,
        amount: int | None = None,
        currency: str | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        """Refund all of a transaction, or ``amount`` smallest units of it."""
        key = idempotency_key or f"{self.provider.value}:{transaction_id}:{amount if amount is not None else 'full'}"

        async def call() -> PaymentResult:
            logger.info("payment_refund_started", provider=self.provider.value, transaction_id=transaction_id, amount=amount)
            result = await self.gateway.refund(transaction_id, amount, currency)
            return result.model_copy(update={"idempotency_key": key})

        return await self._run_once(f"{REFUND_KEY_PREFIX}{key}", call)

    async def get_payment_status(self, transaction_id: str) -> PaymentResult:
        return await self.gateway.get_payment_status(transaction_id)

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> SubscriptionResult:
        result = await self.gateway.cancel_subscription(subscription_id, at_period_end=at_period_end)
        logger.info(
            "provider_subscription_cancelled",
            provider=self.provider.value,
            subscription_id=subscription_id,
            at_period_end=at_period_end,
            success=result.success,
        )
        return result
