"""Webhook endpoints end to end: signature, ledger, state machine, notifications."""

import asyncio
import json
import time
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from reconciler.api.routes.webhooks import get_webhook_dispatcher
from reconciler.core.config import Settings
from reconciler.core.locking import SubscriptionLock
from reconciler.db.base import get_session_factory
from reconciler.db.models.subscription import Subscription
from reconciler.db.models.subscription_history import SubscriptionHistory
from reconciler.db.models.webhook_event import ProcessedWebhookEvent
from reconciler.providers.registry import EventNormalizer
from reconciler.queue.notifications import NotificationQueue
from reconciler.services.dispatcher import WebhookDispatcher
from tests.helpers import hmac_hex, stripe_event, stripe_signature, to_body

pytestmark = pytest.mark.integration

STRIPE_SECRET = "whsec_test_secret"
CHECKOUT_METADATA = {"user_id": "user-42", "tier": "pro", "billing_cycle": "monthly"}


async def _post_stripe(client, payload: dict, secret: str = STRIPE_SECRET):
    body = to_body(payload)
    return await client.post(
        "/api/webhooks/stripe",
        content=body,
        headers={"stripe-signature": stripe_signature(body, secret), "content-type": "application/json"},
    )


def _checkout(event_id: str = "evt_checkout_1") -> dict:
    return stripe_event(
        event_id,
        "checkout.session.completed",
        {
            "id": "cs_1",
            "subscription": "sub_42",
            "customer": "cus_42",
            "amount_total": 2900,
            "currency": "usd",
            "metadata": CHECKOUT_METADATA,
        },
    )


async def _subscription(external_id: str = "sub_42") -> Subscription | None:
    async with get_session_factory()() as session:
        result = await session.execute(select(Subscription).where(Subscription.external_subscription_id == external_id))
        return result.scalar_one_or_none()


async def _count(model) -> int:
    async with get_session_factory()() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestStripeWebhook:
    async def test_checkout_creates_subscription(self, client, redis_client) -> None:
        response = await _post_stripe(client, _checkout())

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "outcome": "processed",
            "event_id": "evt_checkout_1",
            "event_type": "checkout.session.completed",
        }

        sub = await _subscription()
        assert sub.user_id == "user-42"
        assert sub.status == "active"
        assert sub.amount_usd == 2900
        assert await NotificationQueue(redis_client).get_length() == 1

    async def test_redelivery_is_a_duplicate(self, client, redis_client) -> None:
        first = await _post_stripe(client, _checkout())
        second = await _post_stripe(client, _checkout())

        assert first.json()["outcome"] == "processed"
        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"
        assert await _count(Subscription) == 1
        assert await _count(SubscriptionHistory) == 1
        assert await _count(ProcessedWebhookEvent) == 1
        assert await NotificationQueue(redis_client).get_length() == 1

    async def test_concurrent_duplicates_apply_once(self, client) -> None:
        responses = await asyncio.gather(*(_post_stripe(client, _checkout()) for _ in range(3)))

        assert all(r.status_code == 200 for r in responses)
        assert sorted(r.json()["outcome"] for r in responses) == ["duplicate", "duplicate", "processed"]
        assert await _count(Subscription) == 1

    async def test_concurrent_checkouts_for_one_user_both_apply(self, client) -> None:
        """Two checkouts with different subscription ids: the later one supersedes, none is lost."""

        def checkout(event_id: str, subscription_id: str) -> dict:
            payload = _checkout(event_id)
            payload["data"]["object"].update({"id": f"cs_{subscription_id}", "subscription": subscription_id})
            return payload

        responses = await asyncio.gather(
            _post_stripe(client, checkout("evt_checkout_a", "sub_a")),
            _post_stripe(client, checkout("evt_checkout_b", "sub_b")),
        )

        assert [r.status_code for r in responses] == [200, 200]
        assert [r.json()["outcome"] for r in responses] == ["processed", "processed"]
        async with get_session_factory()() as session:
            rows = (await session.execute(select(Subscription))).scalars().all()
            outcomes = (await session.execute(select(ProcessedWebhookEvent.outcome))).scalars().all()
        assert sorted(r.status for r in rows) == ["active", "canceled"]
        assert outcomes == ["processed", "processed"]

    async def test_bad_signature_is_400_and_changes_nothing(self, client) -> None:
        response = await _post_stripe(client, _checkout(), secret="whsec_wrong")

        assert response.status_code == 400
        assert await _count(Subscription) == 0
        assert await _count(ProcessedWebhookEvent) == 0

    async def test_missing_checkout_metadata_is_400(self, client) -> None:
        payload = stripe_event("evt_nometa", "checkout.session.completed", {"id": "cs_2", "subscription": "sub_2"})
        response = await _post_stripe(client, payload)

        assert response.status_code == 400
        assert "user_id" in response.json()["detail"]
        assert await _count(Subscription) == 0

    async def test_malformed_body_is_400(self, client) -> None:
        body = b"{not json"
        response = await client.post("/api/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body, STRIPE_SECRET)})
        assert response.status_code == 400

    async def test_unhandled_type_is_acknowledged(self, client) -> None:
        response = await _post_stripe(client, stripe_event("evt_cust", "customer.created", {"id": "cus_1"}))

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"
        assert await _count(ProcessedWebhookEvent) == 1

    async def test_unconfigured_secret_fails_closed(self, app, client) -> None:
        settings = Settings(stripe_webhook_secret="")
        app.dependency_overrides[get_webhook_dispatcher] = lambda: WebhookDispatcher(settings=settings, normalizer=EventNormalizer(settings))

        response = await _post_stripe(client, _checkout())

        assert response.status_code == 503
        assert await _count(Subscription) == 0

    async def test_activation_waits_for_the_user_lock(self, app, client, redis_client) -> None:
        settings = Settings(subscription_lock_wait_timeout=0.2, webhook_failure_status={"stripe": 500})
        app.dependency_overrides[get_webhook_dispatcher] = lambda: WebhookDispatcher(settings=settings, normalizer=EventNormalizer(settings))

        async with SubscriptionLock(redis_client, poll_interval=0.05).lock("user", "user-42", owner="other-checkout") as held:
            assert held
            response = await _post_stripe(client, _checkout())

        assert response.status_code == 500
        assert await _count(Subscription) == 0
        assert await _count(ProcessedWebhookEvent) == 0

        retried = await _post_stripe(client, _checkout())
        assert retried.json()["outcome"] == "processed"

    async def test_checkout_past_due_renewal_flow(self, client) -> None:
        """ACTIVE -> PAST_DUE on a failed invoice, back to ACTIVE with a later period on payment."""
        await _post_stripe(client, _checkout())
        original_end = (await _subscription()).current_period_end

        failed = await _post_stripe(
            client,
            stripe_event(
                "evt_fail_1",
                "invoice.payment_failed",
                {"id": "in_1", "subscription": "sub_42", "amount_due": 2900, "currency": "usd", "last_payment_error": {"message": "Card declined"}},
            ),
        )
        assert failed.status_code == 200
        assert (await _subscription()).status == "past_due"

        new_end = int(time.time()) + 60 * 86400
        renewed = await _post_stripe(
            client,
            stripe_event(
                "evt_paid_1",
                "invoice.payment_succeeded",
                {
                    "id": "in_1",
                    "subscription": "sub_42",
                    "billing_reason": "subscription_cycle",
                    "amount_paid": 2900,
                    "currency": "usd",
                    "lines": {"data": [{"period": {"start": int(time.time()), "end": new_end}}]},
                },
            ),
        )
        assert renewed.status_code == 200

        sub = await _subscription()
        assert sub.status == "active"
        assert sub.current_period_end > original_end
        assert int(sub.current_period_end.timestamp()) == new_end

    async def test_paid_invoice_notices_renew_once(self, client, redis_client) -> None:
        """Stripe sends invoice.payment_succeeded and invoice.paid for one invoice; one renewal results."""
        await _post_stripe(client, _checkout())
        new_end = int(time.time()) + 45 * 86400
        invoice = {
            "id": "in_cycle_2",
            "subscription": "sub_42",
            "billing_reason": "subscription_cycle",
            "amount_paid": 2900,
            "currency": "usd",
            "lines": {"data": [{"period": {"start": int(time.time()), "end": new_end}}]},
        }

        succeeded = await _post_stripe(client, stripe_event("evt_ps_1", "invoice.payment_succeeded", invoice))
        paid = await _post_stripe(client, stripe_event("evt_paid_1", "invoice.paid", invoice))

        assert succeeded.status_code == 200
        assert paid.status_code == 200
        async with get_session_factory()() as session:
            actions = (await session.execute(select(SubscriptionHistory.action))).scalars().all()
        assert actions.count("renewed") == 1
        # activation + one renewal
        assert await NotificationQueue(redis_client).get_length() == 2
        assert int((await _subscription()).current_period_end.timestamp()) == new_end

    async def test_cancellation_at_period_end(self, client) -> None:
        await _post_stripe(client, _checkout())
        response = await _post_stripe(
            client,
            stripe_event(
                "evt_upd_1",
                "customer.subscription.updated",
                {"id": "sub_42", "status": "active", "cancel_at_period_end": True, "current_period_end": int(time.time()) + 86400},
            ),
        )
        assert response.status_code == 200
        assert (await _subscription()).status == "grace_period"

    async def test_event_for_unknown_subscription_is_processed_noop(self, client) -> None:
        response = await _post_stripe(
            client, stripe_event("evt_orphan", "invoice.payment_failed", {"id": "in_9", "subscription": "sub_elsewhere"})
        )
        assert response.status_code == 200
        assert response.json()["reason"] == "unknown_reference"


class TestOtherProviders:
    async def test_paystack_checkout(self, client) -> None:
        payload = {
            "event": "charge.success",
            "data": {
                "reference": "ref-ps-1",
                "status": "success",
                "amount": 1_500_000,
                "currency": "NGN",
                "metadata": {"user_id": "user-ng", "tier": "starter", "billing_cycle": "monthly"},
                "customer": {"customer_code": "CUS_ng"},
            },
        }
        body = to_body(payload)
        response = await client.post(
            "/api/webhooks/paystack", content=body, headers={"x-paystack-signature": hmac_hex(body, "sk_test_paystack", "sha512")}
        )

        assert response.status_code == 200
        sub = await _subscription("ref-ps-1")
        assert sub.provider == "paystack"
        assert sub.currency == "NGN"
        assert sub.amount_usd == 1000

    async def test_paystack_bad_signature(self, client) -> None:
        body = to_body({"event": "charge.success", "data": {"reference": "r"}})
        response = await client.post("/api/webhooks/paystack", content=body, headers={"x-paystack-signature": "00"})
        assert response.status_code == 400

    async def test_flutterwave_checkout(self, client) -> None:
        payload = {
            "event": "charge.completed",
            "data": {
                "id": 991,
                "tx_ref": "tx-991",
                "status": "successful",
                "amount": 1300,
                "currency": "KES",
                "customer": {"id": 5},
                "meta": {"user_id": "user-ke", "tier": "pro", "billing_cycle": "monthly"},
            },
        }
        body = to_body(payload)
        response = await client.post(
            "/api/webhooks/flutterwave", content=body, headers={"flutterwave-signature": hmac_hex(body, "flw-secret-hash")}
        )

        assert response.status_code == 200
        sub = await _subscription("991")
        assert sub.user_id == "user-ke"
        assert sub.amount == 130_000
        assert sub.amount_usd == 1000

    async def test_flutterwave_subscription_cancelled_ends_checkout_subscription(self, client) -> None:
        checkout = {
            "event": "charge.completed",
            "data": {
                "id": 991,
                "tx_ref": "tx-991",
                "status": "successful",
                "amount": 1300,
                "currency": "KES",
                "customer": {"id": 5},
                "meta": {"user_id": "user-ke", "tier": "pro", "billing_cycle": "monthly"},
            },
        }
        cancelled = {"event": "subscription.cancelled", "data": {"id": 310, "status": "cancelled", "customer": {"id": 5}}}

        for payload in (checkout, cancelled):
            body = to_body(payload)
            response = await client.post(
                "/api/webhooks/flutterwave", content=body, headers={"flutterwave-signature": hmac_hex(body, "flw-secret-hash")}
            )
            assert response.status_code == 200

        assert response.json()["outcome"] == "processed"
        assert response.json().get("reason") != "unknown_reference"
        sub = await _subscription("991")
        assert sub.status == "canceled"
        assert sub.canceled_at is not None

    async def test_failure_policy_500_invites_redelivery(self, app, client, monkeypatch) -> None:
        """Paystack's failure status is 500, so nothing is recorded and a redelivery retries."""
        from reconciler.domain.state_machine import SubscriptionStateMachine

        async def boom(self, session, event, now=None):
            raise RuntimeError("database went away")

        monkeypatch.setattr(SubscriptionStateMachine, "apply", boom)
        payload = {"event": "subscription.disable", "data": {"subscription_code": "SUB_z"}}
        body = to_body(payload)
        headers = {"x-paystack-signature": hmac_hex(body, "sk_test_paystack", "sha512")}

        response = await client.post("/api/webhooks/paystack", content=body, headers=headers)

        assert response.status_code == 500
        assert await _count(ProcessedWebhookEvent) == 0

    async def test_failure_policy_200_records_failure(self, app, client, monkeypatch) -> None:
        from reconciler.domain.state_machine import SubscriptionStateMachine

        async def boom(self, session, event, now=None):
            raise RuntimeError("database went away")

        monkeypatch.setattr(SubscriptionStateMachine, "apply", boom)
        response = await _post_stripe(client, stripe_event("evt_boom", "customer.subscription.deleted", {"id": "sub_x"}))

        assert response.status_code == 200
        assert response.json()["outcome"] == "failed"
        async with get_session_factory()() as session:
            row = (await session.execute(select(ProcessedWebhookEvent))).scalar_one()
        assert row.outcome == "failed"
        assert "database went away" in row.error_message

    async def test_paypal_sale_renews_to_next_billing_time(self, client, monkeypatch) -> None:
        from reconciler.providers.paypal import PayPalClient, PayPalWebhookVerifier

        now = datetime.now(UTC).replace(microsecond=0)
        first_due = now + timedelta(hours=2)
        second_due = first_due + timedelta(days=31)
        looked_up = []

        async def verified(self, raw_body, headers):
            return True

        async def request(self, method, path, json_body=None, headers=None):
            looked_up.append((method, path))
            return {"id": "I-RENEW", "billing_info": {"next_billing_time": second_due.strftime("%Y-%m-%dT%H:%M:%SZ")}}

        monkeypatch.setattr(PayPalWebhookVerifier, "verify", verified)
        monkeypatch.setattr(PayPalClient, "request", request)

        async def post(payload: dict):
            return await client.post("/api/webhooks/paypal", content=to_body(payload), headers={"content-type": "application/json"})

        activated = await post(
            {
                "id": "WH-ACT-1",
                "event_type": "BILLING.SUBSCRIPTION.ACTIVATED",
                "resource": {
                    "id": "I-RENEW",
                    "status": "ACTIVE",
                    "custom_id": json.dumps(CHECKOUT_METADATA),
                    "start_time": now.strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "billing_info": {"next_billing_time": first_due.strftime("%Y-%m-%dT%H:%M:%SZ")},
                },
            }
        )
        sale = await post(
            {
                "id": "WH-SALE-1",
                "event_type": "PAYMENT.SALE.COMPLETED",
                "resource": {"id": "SALE-9", "state": "completed", "billing_agreement_id": "I-RENEW", "amount": {"total": "29.00", "currency": "USD"}},
            }
        )

        assert activated.json()["outcome"] == "processed"
        assert sale.json()["outcome"] == "processed"
        assert looked_up == [("GET", "/v1/billing/subscriptions/I-RENEW")]
        sub = await _subscription("I-RENEW")
        assert sub.current_period_end == second_due
