"""Flutterwave verification and payload normalization."""

import pytest

from reconciler.core.config import Settings
from reconciler.core.exceptions import SignatureInvalid
from reconciler.domain.events import CanonicalEventType, NormalizedStatus
from reconciler.providers.flutterwave import FlutterwaveProvider
from tests.helpers import hmac_hex, to_body

pytestmark = pytest.mark.unit

SECRET = "flw-unit-hash"
CHECKOUT_META = {"user_id": "user-9", "tier": "business", "billing_cycle": "monthly"}


def _provider(test_mode: bool = False) -> FlutterwaveProvider:
    return FlutterwaveProvider(Settings(flutterwave_secret_hash=SECRET, flutterwave_test_mode=test_mode))


def _charge(status: str = "successful", **extra) -> dict:
    data = {
        "id": 4242,
        "tx_ref": "tx-abc",
        "status": status,
        "amount": 250.5,
        "currency": "KES",
        "created_at": "2026-02-01T08:00:00.000Z",
        "customer": {"id": 77},
    }
    data.update(extra)
    return {"event": "charge.completed", "data": data}


class TestFlutterwaveVerification:
    async def test_hmac_header_accepted(self) -> None:
        body = to_body(_charge())
        await _provider().verify_signature(body, {"flutterwave-signature": hmac_hex(body, SECRET)})

    async def test_verif_hash_refused_outside_test_mode(self) -> None:
        body = to_body({**_charge(), "verif_hash": SECRET})
        with pytest.raises(SignatureInvalid):
            await _provider().verify_signature(body, {})

    async def test_verif_hash_accepted_in_test_mode(self) -> None:
        body = to_body({**_charge(), "verif_hash": SECRET})
        await _provider(test_mode=True).verify_signature(body, {})

    async def test_wrong_verif_hash_in_test_mode(self) -> None:
        body = to_body({**_charge(), "verif_hash": "nope"})
        with pytest.raises(SignatureInvalid):
            await _provider(test_mode=True).verify_signature(body, {})


class TestFlutterwaveNormalization:
    def test_event_id_prefers_transaction_id(self) -> None:
        provider = _provider()
        payload = provider.parse(to_body(_charge()))
        assert provider.event_id(payload) == "charge.completed:4242"

    def test_checkout_charge_activates_with_minor_units(self) -> None:
        event = _provider().normalize_raw(to_body(_charge(meta=CHECKOUT_META)))

        assert event.event_type is CanonicalEventType.SUBSCRIPTION_ACTIVATED
        assert event.subscription_reference == "4242"
        assert event.amount == 25050
        assert event.currency == "KES"
        assert event.customer_reference == "77"
        assert event.metadata["tx_ref"] == "tx-abc"
        assert event.tier.value == "business"

    def test_top_level_meta_data_is_used(self) -> None:
        payload = {**_charge(), "meta_data": CHECKOUT_META}
        event = _provider().normalize_raw(to_body(payload))
        assert event.event_type is CanonicalEventType.SUBSCRIPTION_ACTIVATED

    def test_failed_charge(self) -> None:
        event = _provider().normalize_raw(to_body(_charge(status="failed", processor_response="Insufficient funds")))
        assert event.event_type is CanonicalEventType.PAYMENT_FAILED
        assert event.status is NormalizedStatus.FAILED
        assert event.failure_reason == "Insufficient funds"

    def test_plain_charge_references_tx_ref(self) -> None:
        event = _provider().normalize_raw(to_body(_charge()))
        assert event.event_type is CanonicalEventType.PAYMENT_COMPLETED
        assert event.reference == "tx-abc"

    def test_subscription_cancelled(self) -> None:
        event = _provider().normalize_raw(to_body({"event": "subscription.cancelled", "data": {"id": 310, "status": "cancelled"}}))
        assert event.event_type is CanonicalEventType.SUBSCRIPTION_CANCELLED
        assert event.subscription_reference == "310"

    def test_v4_type_field(self) -> None:
        event = _provider().normalize_raw(to_body({"type": "charge.completed", "data": _charge()["data"]}))
        assert event.event_type is CanonicalEventType.PAYMENT_COMPLETED
