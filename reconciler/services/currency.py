"""Currency conversion with cached, periodically refreshed exchange rates.

Rates are USD-based and cached in Redis for ``currency_cache_ttl`` seconds.
On a cache miss the primary source is fetched, then the secondary one. If
both fail, the last good snapshot is used, then the static fallback rates,
then the inverse of a static reverse rate, and finally 1.0 with a warning.
A rate lookup never raises.

The money helpers (to_smallest_unit, from_smallest_unit, format_amount) are
pure and do no I/O.
"""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

import httpx
import redis.asyncio as redis
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from reconciler.core.config import Settings, get_settings

logger = structlog.get_logger(__name__)

BASE_CURRENCY = "USD"
DEFAULT_DECIMALS = 2

CURRENCY_DECIMALS: dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "NGN": 2,
    "ZAR": 2,
    "KES": 2,
    "GHS": 2,
    "CAD": 2,
    "AUD": 2,
    "JPY": 0,
}

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "NGN": "₦",
    "ZAR": "R",
    "KES": "KSh",
    "GHS": "₵",
    "JPY": "¥",
    "CAD": "C$",
    "AUD": "A$",
}


# ── Pure helpers ────────────────────────────────────────────────────


def currency_decimals(currency: str) -> int:
    return CURRENCY_DECIMALS.get(currency.upper(), DEFAULT_DECIMALS)


def _quantum(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def to_smallest_unit(amount: Decimal | float | int | str, currency: str) -> int:
    """Major units -> integer smallest unit (10.50 USD -> 1050, 1500 JPY -> 1500)."""
    scaled = Decimal(str(amount)).scaleb(currency_decimals(currency))
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_smallest_unit(amount: int, currency: str) -> Decimal:
    """Integer smallest unit -> major units as an exact Decimal."""
    decimals = currency_decimals(currency)
    return Decimal(amount).scaleb(-decimals).quantize(_quantum(decimals))


def format_amount(amount: int, currency: str) -> str:
    """Render a smallest-unit amount for display, e.g. 123456 NGN -> '₦1,234.56'."""
    code = currency.upper()
    decimals = currency_decimals(code)
    value = from_smallest_unit(amount, code)
    symbol = CURRENCY_SYMBOLS.get(code)
    number = f"{value:,.{decimals}f}"
    return f"{symbol}{number}" if symbol else f"{number} {code}"


# ── Rate snapshots ──────────────────────────────────────────────────


@dataclass
class ExchangeRateSnapshot:
    """Currency code -> units per 1 USD."""

    rates: dict[str, float]
    fetched_at: datetime
    source: str
    base: str = BASE_CURRENCY
    stale: bool = field(default=False, compare=False)

    def to_json(self) -> str:
        return json.dumps({
            "rates": self.rates,
            "fetched_at": self.fetched_at.isoformat(),
            "source": self.source,
            "base": self.base,
        })

    @classmethod
    def from_json(cls, raw: str, stale: bool = False) -> "ExchangeRateSnapshot":
        data = json.loads(raw)
        return cls(
            rates={k.upper(): float(v) for k, v in data["rates"].items()},
            fetched_at=datetime.fromisoformat(data["fetched_at"]),
            source=data["source"],
            base=data.get("base", BASE_CURRENCY),
            stale=stale,
        )

    def rate(self, from_currency: str, to_currency: str) -> Decimal | None:
        rates = {**self.rates, self.base: 1.0}
        src = rates.get(from_currency)
        dst = rates.get(to_currency)
        if not src or not dst:
            return None
        return Decimal(str(dst)) / Decimal(str(src))


class RateSourceError(Exception):
    """A rate source answered with something unusable."""


class CurrencyConversionService:
    """Converts smallest-unit amounts between currencies."""

    CACHE_KEY = "reconciler:currency:rates:USD"
    LAST_GOOD_KEY = "reconciler:currency:rates:USD:last"

    def __init__(
        self,
        redis_client: redis.Redis,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_wait=None,
    ):
        self.redis = redis_client
        self.settings = settings or get_settings()
        self._http_client = http_client
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)

    # ── Rate acquisition ──

    async def get_rates(self) -> ExchangeRateSnapshot | None:
        """Return the cached snapshot, refreshing it on a miss. None if no source resolved."""
        cached = await self.redis.get(self.CACHE_KEY)
        if cached:
            return ExchangeRateSnapshot.from_json(cached)

        snapshot = await self.refresh_rates()
        if snapshot is not None:
            return snapshot

        last_good = await self.redis.get(self.LAST_GOOD_KEY)
        if last_good:
            logger.warning("exchange_rates_using_last_snapshot")
            return ExchangeRateSnapshot.from_json(last_good, stale=True)

        return None

    async def refresh_rates(self) -> ExchangeRateSnapshot | None:
        """Fetch fresh rates from the primary then secondary source and cache them."""
        sources = [self.settings.currency_rate_provider, self.settings.currency_rate_fallback_provider]
        for source in dict.fromkeys(s for s in sources if s):
            try:
                rates = await self._fetch_with_retry(source)
            except (httpx.HTTPError, RateSourceError, ValueError) as e:
                logger.warning("exchange_rate_source_failed", source=source, error=str(e), error_type=type(e).__name__)
                continue

            snapshot = ExchangeRateSnapshot(rates=rates, fetched_at=datetime.now(UTC), source=source)
            payload = snapshot.to_json()
            await self.redis.set(self.CACHE_KEY, payload, ex=self.settings.currency_cache_ttl)
            await self.redis.set(self.LAST_GOOD_KEY, payload)
            logger.info("exchange_rates_refreshed", source=source, currencies=len(rates))
            return snapshot

        return None

    async def _fetch_with_retry(self, source: str) -> dict[str, float]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(3),
            wait=self._retry_wait,
            reraise=True,
        ):
            with attempt:
                return await self._fetch(source)
        raise RateSourceError(source)  # unreachable with reraise=True

    async def _fetch(self, source: str) -> dict[str, float]:
        url = self.settings.currency_rate_urls.get(source)
        if not url:
            raise RateSourceError(f"Unknown rate source: {source}")

        if source == "exchangerate":
            request_url, params = f"{url.rstrip('/')}/{BASE_CURRENCY}", None
        else:
            request_url, params = url, {"base": BASE_CURRENCY}

        if self._http_client is not None:
            response = await self._http_client.get(request_url, params=params)
        else:
            async with httpx.AsyncClient(timeout=self.settings.currency_http_timeout) as client:
                response = await client.get(request_url, params=params)
        response.raise_for_status()

        data = response.json()
        if not isinstance(data, dict):
            raise RateSourceError(f"{source} returned {type(data).__name__}, expected an object")
        if data.get("result") not in (None, "success"):
            raise RateSourceError(f"{source} returned result={data.get('result')}")
        rates = data.get("rates")
        if not isinstance(rates, dict) or not rates:
            raise RateSourceError(f"{source} returned no rates")
        try:
            return {str(k).upper(): float(v) for k, v in rates.items()}
        except (TypeError, ValueError) as e:
            raise RateSourceError(f"{source} returned a non-numeric rate") from e

    # ── Conversion ──

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        src, dst = from_currency.upper(), to_currency.upper()
        if src == dst:
            return Decimal(1)

        snapshot = await self.get_rates()
        if snapshot is not None:
            rate = snapshot.rate(src, dst)
            if rate is not None:
                return rate

        fallback = self.settings.currency_fallback_rates
        direct = fallback.get(f"{src}_{dst}")
        if direct:
            return Decimal(str(direct))

        reverse = fallback.get(f"{dst}_{src}")
        if reverse:
            return Decimal(1) / Decimal(str(reverse))

        # Cross through USD with the static table
        usd_src = Decimal(1) if src == BASE_CURRENCY else fallback.get(f"{BASE_CURRENCY}_{src}")
        usd_dst = Decimal(1) if dst == BASE_CURRENCY else fallback.get(f"{BASE_CURRENCY}_{dst}")
        if usd_src and usd_dst:
            return Decimal(str(usd_dst)) / Decimal(str(usd_src))

        logger.warning("exchange_rate_unresolved_defaulting", from_currency=src, to_currency=dst)
        return Decimal(1)

    async def convert(self, amount: int, from_currency: str, to_currency: str) -> int:
        """Convert a smallest-unit amount, respecting each currency's decimal precision."""
        if from_currency.upper() == to_currency.upper():
            return amount
        rate = await self.get_rate(from_currency, to_currency)
        major = from_smallest_unit(amount, from_currency) * rate
        return to_smallest_unit(major, to_currency)

    async def convert_usd_cents_to(self, target_currency: str, usd_cents: int) -> int:
        return await self.convert(usd_cents, BASE_CURRENCY, target_currency)

    async def to_usd_cents(self, amount: int, currency: str) -> int:
        return await self.convert(amount, currency, BASE_CURRENCY)

    # Pure helpers exposed on the service for callers holding only an instance
    to_smallest_unit = staticmethod(to_smallest_unit)
    from_smallest_unit = staticmethod(from_smallest_unit)
    format = staticmethod(format_amount)
