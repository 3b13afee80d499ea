"""Concurrent writers on the file-backed store: the partial unique index decides the winner."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from subscription_dashboard.core.database import get_db_session
from subscription_dashboard.core.errors import AlreadySubscribedError
from subscription_dashboard.features.billing import reconciliation
from subscription_dashboard.features.billing.provider import PaymentEvent
from subscription_dashboard.features.subscriptions import service, store


def _event(event_id, plan_id="professional"):
    return PaymentEvent(
        event_id=event_id,
        event_type="checkout.session.completed",
        payment_id=f"pi_{event_id}",
        amount_total=2999,
        metadata={"user_id": "user_alice", "plan_id": plan_id},
    )


def _current_count(user_id="user_alice"):
    with get_db_session() as session:
        return store.count_current(session, user_id)


@pytest.fixture
def lockstep_reads(monkeypatch):
    """Each writer's first existence check waits until every writer has done its own."""
    barrier = threading.Barrier(2, timeout=10)
    waited = set()
    lock = threading.Lock()
    real_find_active = store.find_active

    def find_active(session, user_id, **kwargs):
        found = real_find_active(session, user_id, **kwargs)
        if threading.current_thread() is threading.main_thread():
            return found
        with lock:
            first_call = threading.get_ident() not in waited
            waited.add(threading.get_ident())
        if first_call:
            barrier.wait()
        return found

    monkeypatch.setattr(store, "find_active", find_active)
    return barrier


def _run_together(*calls):
    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        futures = [pool.submit(call) for call in calls]
        return [(f.result() if f.exception() is None else f.exception()) for f in futures]


def test_concurrent_manual_subscribes_leave_one_active(alice, seeded_plans, lockstep_reads):
    outcomes = _run_together(
        lambda: service.subscribe(alice, "starter"),
        lambda: service.subscribe(alice, "professional"),
    )

    rejected = [o for o in outcomes if isinstance(o, AlreadySubscribedError)]
    created = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(rejected) == 1
    assert len(created) == 1
    assert _current_count() == 1
    assert service.get_current("user_alice").id == created[0].id


def test_manual_subscribe_racing_webhook(alice, seeded_plans, lockstep_reads):
    manual, webhook = _run_together(
        lambda: service.subscribe(alice, "starter"),
        lambda: reconciliation.on_payment_event(_event("evt_race")),
    )

    assert _current_count() == 1
    current = service.get_current("user_alice")
    if isinstance(manual, AlreadySubscribedError):
        assert webhook.outcome == reconciliation.CREATED
        assert current.plan_id == "professional"
    else:
        assert webhook.outcome == reconciliation.HELD
        assert webhook.subscription_id == manual.id
        assert current.plan_id == "starter"


def test_parallel_deliveries_of_one_payment(alice, seeded_plans, lockstep_reads):
    outcomes = _run_together(
        lambda: reconciliation.on_payment_event(_event("evt_a")),
        lambda: reconciliation.on_payment_event(_event("evt_b")),
    )

    assert sorted(r.outcome for r in outcomes) == [reconciliation.CREATED, reconciliation.DUPLICATE]
    assert outcomes[0].subscription_id == outcomes[1].subscription_id
    assert _current_count() == 1


@pytest.fixture
def stale_first_lookup(monkeypatch):
    """The first existence check misses a row another writer has already committed."""
    real_find_active = store.find_active
    calls = []

    def find_active(session, user_id, **kwargs):
        calls.append(user_id)
        if len(calls) == 1:
            return None
        return real_find_active(session, user_id, **kwargs)

    return lambda: monkeypatch.setattr(store, "find_active", find_active)


def test_lost_insert_for_same_plan_is_duplicate(alice, seeded_plans, stale_first_lookup):
    winner = reconciliation.on_payment_event(_event("evt_first"))
    stale_first_lookup()

    result = reconciliation.on_payment_event(_event("evt_second"))

    assert result.outcome == reconciliation.DUPLICATE
    assert result.subscription_id == winner.subscription_id
    assert _current_count() == 1


def test_lost_insert_for_other_plan_is_held(alice, seeded_plans, stale_first_lookup):
    winner = service.subscribe(alice, "starter")
    stale_first_lookup()

    result = reconciliation.on_payment_event(_event("evt_other"))

    assert result.outcome == reconciliation.HELD
    assert result.subscription_id == winner.id
    assert service.get_current("user_alice").plan_id == "starter"
    assert _current_count() == 1
