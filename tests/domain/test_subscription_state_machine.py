"""SubscriptionStateMachine transitions against the database."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from reconciler.core.config import Settings
from reconciler.db.models.subscription import Subscription
from reconciler.db.models.subscription_history import SubscriptionHistory
from reconciler.domain.events import (
    CancellationMode,
    CanonicalEvent,
    CanonicalEventType,
    NormalizedStatus,
    ProviderName,
    SubscriptionStatus,
)
from reconciler.domain.state_machine import SubscriptionStateMachine

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
CHECKOUT = {"user_id": "user-1", "tier": "pro", "billing_cycle": "monthly"}


def _event(event_type: CanonicalEventType, event_id: str, **fields) -> CanonicalEvent:
    fields.setdefault("subscription_reference", "sub_1")
    return CanonicalEvent(
        provider=fields.pop("provider", ProviderName.STRIPE),
        event_id=event_id,
        event_type=event_type,
        provider_event_type=fields.pop("provider_event_type", event_type.value),
        **fields,
    )


async def _apply(session_factory, machine, event, now=NOW):
    async with session_factory() as session:
        result = await machine.apply(session, event, now=now)
        await session.commit()
    return result


async def _activate(session_factory, machine, reference="sub_1", **fields):
    metadata = fields.pop("metadata", CHECKOUT)
    event = _event(
        CanonicalEventType.SUBSCRIPTION_ACTIVATED,
        f"evt_act_{reference}",
        subscription_reference=reference,
        metadata=metadata,
        period_start=NOW,
        **fields,
    )
    return await _apply(session_factory, machine, event)


async def _load(session_factory, reference="sub_1") -> Subscription:
    async with session_factory() as session:
        result = await session.execute(select(Subscription).where(Subscription.external_subscription_id == reference))
        return result.scalar_one()


class TestTransitionTable:
    @pytest.mark.parametrize(
        ("current", "target", "allowed"),
        [
            (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, True),
            (SubscriptionStatus.PAST_DUE, SubscriptionStatus.ACTIVE, True),
            (SubscriptionStatus.GRACE_PERIOD, SubscriptionStatus.EXPIRED, True),
            (SubscriptionStatus.GRACE_PERIOD, SubscriptionStatus.PAST_DUE, False),
            (SubscriptionStatus.CANCELED, SubscriptionStatus.ACTIVE, False),
            (SubscriptionStatus.EXPIRED, SubscriptionStatus.ACTIVE, False),
        ],
    )
    def test_can_transition(self, current, target, allowed) -> None:
        assert SubscriptionStateMachine.can_transition(current, target) is allowed


class TestLifecycle:
    async def test_activation_creates_row_and_history(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        result = await _activate(session_factory, machine, amount=2900, currency="USD", amount_usd=2900)

        assert result.applied is True
        assert result.new_status is SubscriptionStatus.ACTIVE
        assert [n.type for n in result.notifications] == ["subscription_activated"]

        sub = await _load(session_factory)
        assert sub.user_id == "user-1"
        assert sub.tier == "pro"
        assert sub.status == "active"
        assert sub.current_period_end == datetime(2026, 4, 1, 12, 0, tzinfo=UTC)

        async with session_factory() as session:
            history = (await session.execute(select(SubscriptionHistory))).scalars().all()
        assert [h.action for h in history] == ["created"]

    async def test_duplicate_activation_is_noop(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)
        again = await _activate(session_factory, machine)
        assert again.applied is False
        assert again.reason == "already_exists"

    async def test_past_due_then_renewal_extends_period(self, session_factory) -> None:
        """NONE -> ACTIVE -> PAST_DUE -> ACTIVE with the period pushed one cycle out."""
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)

        failed = await _apply(
            session_factory,
            machine,
            _event(CanonicalEventType.SUBSCRIPTION_PAYMENT_FAILED, "evt_fail", failure_reason="Card declined"),
            now=datetime(2026, 3, 31, tzinfo=UTC),
        )
        assert failed.new_status is SubscriptionStatus.PAST_DUE
        assert failed.notifications[0].priority == "high"

        renewed = await _apply(
            session_factory,
            machine,
            _event(CanonicalEventType.PAYMENT_COMPLETED, "evt_paid", is_renewal=True, amount=2900, currency="USD"),
            now=datetime(2026, 3, 31, 18, 0, tzinfo=UTC),
        )
        assert renewed.previous_status is SubscriptionStatus.PAST_DUE
        assert renewed.new_status is SubscriptionStatus.ACTIVE

        sub = await _load(session_factory)
        assert sub.status == "active"
        assert sub.current_period_start == datetime(2026, 4, 1, 12, 0, tzinfo=UTC)
        assert sub.current_period_end == datetime(2026, 5, 1, 12, 0, tzinfo=UTC)

    async def test_early_renewal_does_not_double_extend(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings(renewal_lead_time_hours=72))
        await _activate(session_factory, machine)

        event = _event(CanonicalEventType.PAYMENT_COMPLETED, "evt_early", is_renewal=True)
        result = await _apply(session_factory, machine, event, now=NOW + timedelta(days=1))

        assert result.applied is False
        assert result.reason == "already_renewed"
        assert result.notifications == []
        sub = await _load(session_factory)
        assert sub.current_period_end == datetime(2026, 4, 1, 12, 0, tzinfo=UTC)

    async def test_second_notice_for_same_period_end_is_noop(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)
        new_end = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)

        first = await _apply(session_factory, machine, _event(CanonicalEventType.PAYMENT_COMPLETED, "evt_r1", is_renewal=True, period_end=new_end))
        second = await _apply(session_factory, machine, _event(CanonicalEventType.PAYMENT_COMPLETED, "evt_r2", is_renewal=True, period_end=new_end))

        assert first.applied is True
        assert second.applied is False
        async with session_factory() as session:
            actions = (await session.execute(select(SubscriptionHistory.action))).scalars().all()
        assert actions.count("renewed") == 1

    async def test_provider_period_end_wins(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)
        new_end = datetime(2026, 5, 15, tzinfo=UTC)

        await _apply(session_factory, machine, _event(CanonicalEventType.PAYMENT_COMPLETED, "evt_p", is_renewal=True, period_end=new_end))

        assert (await _load(session_factory)).current_period_end == new_end

    async def test_one_off_payment_has_no_effect(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        result = await _apply(session_factory, machine, _event(CanonicalEventType.PAYMENT_COMPLETED, "evt_once", subscription_reference=None))
        assert result.applied is False
        assert result.reason == "not_renewal"

    async def test_unknown_reference_is_noop(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        result = await _apply(
            session_factory, machine, _event(CanonicalEventType.SUBSCRIPTION_PAYMENT_FAILED, "evt_x", subscription_reference="sub_missing")
        )
        assert result.applied is False
        assert result.reason == "unknown_reference"


class TestCancellation:
    async def test_at_period_end_starts_grace(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)

        result = await _apply(
            session_factory,
            machine,
            _event(CanonicalEventType.SUBSCRIPTION_CANCELLED, "evt_cancel", cancellation=CancellationMode.AT_PERIOD_END),
        )
        assert result.new_status is SubscriptionStatus.GRACE_PERIOD
        assert (await _load(session_factory)).canceled_at is not None

    async def test_immediate_cancels(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)
        result = await _apply(
            session_factory,
            machine,
            _event(CanonicalEventType.SUBSCRIPTION_CANCELLED, "evt_cancel", cancellation=CancellationMode.IMMEDIATE),
        )
        assert result.new_status is SubscriptionStatus.CANCELED

    async def test_immediate_policy_overrides_provider(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings(cancellation_policy="immediate"))
        await _activate(session_factory, machine)
        result = await _apply(
            session_factory,
            machine,
            _event(CanonicalEventType.SUBSCRIPTION_CANCELLED, "evt_cancel", cancellation=CancellationMode.AT_PERIOD_END),
        )
        assert result.new_status is SubscriptionStatus.CANCELED

    async def test_update_with_cancel_flag_routes_to_cancellation(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)
        result = await _apply(
            session_factory,
            machine,
            _event(
                CanonicalEventType.SUBSCRIPTION_UPDATED,
                "evt_upd",
                status=NormalizedStatus.ACTIVE,
                cancellation=CancellationMode.AT_PERIOD_END,
            ),
        )
        assert result.new_status is SubscriptionStatus.GRACE_PERIOD

    async def test_reactivation_from_grace(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)
        await _apply(
            session_factory,
            machine,
            _event(CanonicalEventType.SUBSCRIPTION_CANCELLED, "evt_cancel", cancellation=CancellationMode.AT_PERIOD_END),
        )
        result = await _apply(
            session_factory, machine, _event(CanonicalEventType.SUBSCRIPTION_UPDATED, "evt_again", status=NormalizedStatus.ACTIVE)
        )
        assert result.new_status is SubscriptionStatus.ACTIVE
        assert (await _load(session_factory)).canceled_at is None

    async def test_terminal_rows_ignore_renewals(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)
        await _apply(
            session_factory,
            machine,
            _event(CanonicalEventType.SUBSCRIPTION_CANCELLED, "evt_cancel", cancellation=CancellationMode.IMMEDIATE),
        )
        result = await _apply(session_factory, machine, _event(CanonicalEventType.PAYMENT_COMPLETED, "evt_late", is_renewal=True))
        assert result.applied is False
        assert result.reason == "terminal"

    async def test_late_cancellation_leaves_terminal_row_alone(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)
        await _apply(
            session_factory,
            machine,
            _event(CanonicalEventType.SUBSCRIPTION_CANCELLED, "evt_cancel", cancellation=CancellationMode.IMMEDIATE),
        )
        ended = await _load(session_factory)

        result = await _apply(
            session_factory,
            machine,
            _event(
                CanonicalEventType.SUBSCRIPTION_CANCELLED,
                "evt_cancel_late",
                cancellation=CancellationMode.IMMEDIATE,
                period_end=datetime(2027, 1, 1, tzinfo=UTC),
            ),
        )

        assert result.applied is False
        assert result.reason == "terminal"
        sub = await _load(session_factory)
        assert sub.current_period_end == ended.current_period_end
        assert sub.status == "canceled"

    async def test_flutterwave_cancellation_matches_by_customer(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings(cancellation_policy="immediate"))
        await _activate(session_factory, machine, reference="991", provider=ProviderName.FLUTTERWAVE, customer_reference="5")

        result = await _apply(
            session_factory,
            machine,
            _event(
                CanonicalEventType.SUBSCRIPTION_CANCELLED,
                "evt_flw_cancel",
                provider=ProviderName.FLUTTERWAVE,
                subscription_reference="310",
                customer_reference="5",
                cancellation=CancellationMode.IMMEDIATE,
            ),
        )

        assert result.applied is True
        assert (await _load(session_factory, "991")).status == "canceled"

    async def test_customer_match_is_not_used_for_other_providers(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine, customer_reference="cus_1")

        result = await _apply(
            session_factory,
            machine,
            _event(
                CanonicalEventType.SUBSCRIPTION_CANCELLED,
                "evt_other_sub",
                subscription_reference="sub_elsewhere",
                customer_reference="cus_1",
                cancellation=CancellationMode.IMMEDIATE,
            ),
        )

        assert result.reason == "unknown_reference"
        assert (await _load(session_factory)).status == "active"

    async def test_payment_failure_during_grace_is_ignored(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)
        await _apply(
            session_factory,
            machine,
            _event(CanonicalEventType.SUBSCRIPTION_CANCELLED, "evt_cancel", cancellation=CancellationMode.AT_PERIOD_END),
        )
        result = await _apply(session_factory, machine, _event(CanonicalEventType.SUBSCRIPTION_PAYMENT_FAILED, "evt_fail"))
        assert result.applied is False
        assert (await _load(session_factory)).status == "grace_period"

    async def test_expiry_sweep(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine)
        await _apply(
            session_factory,
            machine,
            _event(CanonicalEventType.SUBSCRIPTION_CANCELLED, "evt_cancel", cancellation=CancellationMode.AT_PERIOD_END),
        )

        async with session_factory() as session:
            assert await machine.expire_lapsed_subscriptions(session, now=NOW + timedelta(days=10)) == []
            expired = await machine.expire_lapsed_subscriptions(session, now=NOW + timedelta(days=40))
            await session.commit()

        assert len(expired) == 1
        assert (await _load(session_factory)).status == "expired"


class TestSupersede:
    async def test_new_subscription_supersedes_open_one(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine, reference="sub_old")
        result = await _activate(
            session_factory,
            machine,
            reference="sub_new",
            metadata={**CHECKOUT, "tier": "business"},
        )

        assert result.applied is True
        assert (await _load(session_factory, "sub_old")).status == "canceled"
        assert (await _load(session_factory, "sub_new")).tier == "business"

        async with session_factory() as session:
            actions = (await session.execute(select(SubscriptionHistory.action).order_by(SubscriptionHistory.id))).scalars().all()
        assert actions == ["created", "superseded", "upgraded"]

    async def test_checkout_reference_relinks_by_customer(self, session_factory) -> None:
        machine = SubscriptionStateMachine(Settings())
        await _activate(session_factory, machine, reference="ref-checkout", provider=ProviderName.PAYSTACK, customer_reference="CUS_1")

        result = await _apply(
            session_factory,
            machine,
            _event(
                CanonicalEventType.SUBSCRIPTION_UPDATED,
                "subscription.create:SUB_x",
                provider=ProviderName.PAYSTACK,
                subscription_reference="SUB_x",
                customer_reference="CUS_1",
                status=NormalizedStatus.ACTIVE,
                period_end=datetime(2026, 4, 2, tzinfo=UTC),
            ),
        )

        assert result.applied is True
        sub = await _load(session_factory, "SUB_x")
        assert sub.provider == "paystack"
        assert sub.current_period_end == datetime(2026, 4, 2, tzinfo=UTC)
