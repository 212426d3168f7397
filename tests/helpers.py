"""Payload builders and signing helpers shared by the test suites."""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime

from reconciler.services.currency import CurrencyConversionService, ExchangeRateSnapshot


def to_body(payload: dict) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def stripe_signature(body: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + body
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def hmac_hex(body: bytes, secret: str, digest: str = "sha256") -> str:
    return hmac.new(secret.encode(), body, getattr(hashlib, digest)).hexdigest()


def stripe_event(event_id: str, event_type: str, obj: dict, created: int | None = None) -> dict:
    """Build a minimal Stripe-style event dict."""
    return {
        "id": event_id,
        "type": event_type,
        "created": created or int(time.time()),
        "data": {"object": obj},
    }


# ── Exchange rates ──────────────────────────────────────────────────

TEST_RATES = {"EUR": 0.92, "GBP": 0.79, "NGN": 1500.0, "ZAR": 18.5, "KES": 130.0, "GHS": 12.0, "JPY": 150.0}


async def seed_rates(client, rates: dict[str, float] | None = None) -> None:
    """Put a fresh rate snapshot in the cache so conversions never reach the network."""
    snapshot = ExchangeRateSnapshot(rates=rates or TEST_RATES, fetched_at=datetime.now(UTC), source="test")
    await client.set(CurrencyConversionService.CACHE_KEY, snapshot.to_json())
