"""Webhook-driven activation: idempotency, plan resolution, malformed events, cross-plan policy."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from subscription_dashboard.core.config import settings
from subscription_dashboard.core.database import get_db_session, subscriptions
from subscription_dashboard.features.billing import reconciliation
from subscription_dashboard.features.billing.provider import PaymentEvent
from subscription_dashboard.features.plans.service import update_plan
from subscription_dashboard.features.subscriptions import service
from subscription_dashboard.models.plan import PlanUpdate
from subscription_dashboard.models.subscription import SubscriptionSource, SubscriptionStatus
from subscription_dashboard.realtime.hub import hub


def _event(event_id="evt_1", event_type="checkout.session.completed", metadata=None, amount_total=2999, **kwargs):
    return PaymentEvent(
        event_id=event_id,
        event_type=event_type,
        session_id="cs_test_1",
        payment_id="pi_test_1",
        amount_total=amount_total,
        metadata={"user_id": "user_alice", "plan_id": "professional"} if metadata is None else metadata,
        **kwargs,
    )


def _count_rows(user_id="user_alice"):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(subscriptions).where(subscriptions.c.user_id == user_id)
        ).scalar_one()


def test_checkout_completed_creates_webhook_subscription(seeded_plans):
    received = []
    hub.add_listener(received.append)
    try:
        result = reconciliation.on_payment_event(_event())
    finally:
        hub.remove_listener(received.append)

    assert result.outcome == reconciliation.CREATED
    current = service.get_current("user_alice")
    assert current.id == result.subscription_id
    assert current.plan_id == "professional"
    assert current.source == SubscriptionSource.WEBHOOK
    assert current.payment_id == "pi_test_1"
    assert current.amount == pytest.approx(29.99)
    assert received[-1]["type"] == "subscription.activated"


def test_replay_yields_exactly_one_subscription(seeded_plans):
    first = reconciliation.on_payment_event(_event())
    second = reconciliation.on_payment_event(_event())

    assert first.outcome == reconciliation.CREATED
    assert second.outcome == reconciliation.DUPLICATE
    assert second.subscription_id == first.subscription_id
    assert _count_rows() == 1


def test_plan_resolved_through_price_id(seeded_plans):
    update_plan("professional", PlanUpdate(price_id="price_pro_test"))

    result = reconciliation.on_payment_event(_event(metadata={"user_id": "user_alice", "plan_id": "price_pro_test"}))

    assert result.outcome == reconciliation.CREATED
    assert result.plan_id == "professional"


def test_camel_case_metadata_and_client_reference(seeded_plans):
    result = reconciliation.on_payment_event(
        _event(metadata={"planId": "starter"}, client_reference_id="user_carol", amount_total=None)
    )

    assert result.outcome == reconciliation.CREATED
    assert result.user_id == "user_carol"
    assert service.get_current("user_carol").amount == pytest.approx(9.99)


def test_malformed_event_is_acknowledged_and_store_unchanged(seeded_plans):
    result = reconciliation.on_payment_event(_event(metadata={"user_id": "user_alice"}))

    assert result.outcome == reconciliation.MALFORMED
    assert _count_rows() == 0


def test_unknown_plan_is_acknowledged(seeded_plans):
    result = reconciliation.on_payment_event(_event(metadata={"user_id": "user_alice", "plan_id": "price_unknown"}))

    assert result.outcome == reconciliation.UNRESOLVED_PLAN
    assert _count_rows() == 0


def test_other_event_types_ignored(seeded_plans):
    result = reconciliation.on_payment_event(_event(event_type="payment_intent.succeeded"))

    assert result.outcome == reconciliation.IGNORED
    assert _count_rows() == 0


def test_cross_plan_payment_supersedes_by_default(alice, seeded_plans):
    manual = service.subscribe(alice, "starter")

    result = reconciliation.on_payment_event(_event())

    assert result.outcome == reconciliation.SUPERSEDED
    current = service.get_current("user_alice")
    assert current.plan_id == "professional"
    items, _ = service.list_subscriptions()
    statuses = {s.id: s.status for s in items}
    assert statuses[manual.id] == SubscriptionStatus.CANCELLED
    assert list(statuses.values()).count(SubscriptionStatus.ACTIVE) == 1


def test_cross_plan_payment_held_by_policy(alice, seeded_plans, monkeypatch):
    monkeypatch.setattr(settings, "RECONCILE_CROSS_PLAN_POLICY", "hold")
    manual = service.subscribe(alice, "starter")

    result = reconciliation.on_payment_event(_event())

    assert result.outcome == reconciliation.HELD
    assert service.get_current("user_alice").id == manual.id
    assert _count_rows() == 1


def test_expired_subscription_does_not_block_activation(alice, seeded_plans):
    past = datetime.now(timezone.utc) - timedelta(days=40)
    service.subscribe(alice, "professional", now=past)

    result = reconciliation.on_payment_event(_event())

    assert result.outcome == reconciliation.CREATED
    assert _count_rows() == 2


@pytest.mark.parametrize(
    "currency, amount_total, expected",
    [("usd", 2999, 29.99), ("jpy", 2999, 2999.0), ("kwd", 29990, 29.99), (None, 2999, 29.99)],
)
def test_amount_respects_currency_minor_units(seeded_plans, currency, amount_total, expected):
    result = reconciliation.on_payment_event(_event(amount_total=amount_total, currency=currency))

    assert result.outcome == reconciliation.CREATED
    assert service.get_current("user_alice").amount == pytest.approx(expected)


def test_missing_amount_falls_back_to_plan_price(seeded_plans):
    reconciliation.on_payment_event(_event(amount_total=None))
    assert service.get_current("user_alice").amount == pytest.approx(29.99)
