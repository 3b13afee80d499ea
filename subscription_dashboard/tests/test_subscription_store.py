"""Store-level invariant: at most one active subscription per user."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from subscription_dashboard.core.database import get_db_session, subscriptions
from subscription_dashboard.core.errors import AlreadySubscribedError, NotFoundError
from subscription_dashboard.features.subscriptions import store
from subscription_dashboard.models.subscription import SubscriptionSource, SubscriptionStatus


def _statuses(user_id):
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions.c.status).where(subscriptions.c.user_id == user_id)
        ).fetchall()
        return sorted(r.status for r in rows)


def test_insert_computes_period(starter, t0):
    with get_db_session() as session:
        sub = store.insert_active(session, user_id="u1", plan=starter, source=SubscriptionSource.MANUAL, now=t0)

    assert sub.start_date == t0
    assert sub.end_date == t0 + timedelta(days=30)
    assert sub.status == SubscriptionStatus.ACTIVE

    with get_db_session() as session:
        found = store.find_active(session, "u1", now=t0, with_plan=True)
    assert found.id == sub.id
    assert found.end_date == t0 + timedelta(days=30)
    assert found.plan.name == "Starter"


def test_unique_index_rejects_second_active_row(starter, professional, t0):
    """Bypasses the read fast path: the index alone must hold the line."""
    with get_db_session() as session:
        store.insert_active(session, user_id="u1", plan=starter, source=SubscriptionSource.MANUAL, now=t0)

    with pytest.raises(AlreadySubscribedError):
        with get_db_session() as session:
            store.insert_active(session, user_id="u1", plan=professional, source=SubscriptionSource.WEBHOOK, now=t0)

    assert _statuses("u1") == ["active"]


def test_lapsed_row_is_swept_before_insert(starter, professional, t0):
    with get_db_session() as session:
        store.insert_active(session, user_id="u1", plan=starter, source=SubscriptionSource.MANUAL, now=t0)

    later = t0 + timedelta(days=31)
    with get_db_session() as session:
        assert store.find_active(session, "u1", now=later) is None
        store.insert_active(session, user_id="u1", plan=professional, source=SubscriptionSource.MANUAL, now=later)

    assert _statuses("u1") == ["active", "expired"]


def test_find_active_filters_by_plan(starter, t0):
    with get_db_session() as session:
        store.insert_active(session, user_id="u1", plan=starter, source=SubscriptionSource.MANUAL, now=t0)
        assert store.find_active(session, "u1", plan_id="starter", now=t0) is not None
        assert store.find_active(session, "u1", plan_id="professional", now=t0) is None


def test_mark_cancelled_only_matches_active(starter, t0):
    with get_db_session() as session:
        sub = store.insert_active(session, user_id="u1", plan=starter, source=SubscriptionSource.MANUAL, now=t0)

    with get_db_session() as session:
        cancelled = store.mark_cancelled(session, sub.id, t0)
    assert cancelled.status == SubscriptionStatus.CANCELLED

    with pytest.raises(NotFoundError):
        with get_db_session() as session:
            store.mark_cancelled(session, sub.id, t0)


def test_mark_cancelled_skips_lapsed_rows(starter, t0):
    with get_db_session() as session:
        sub = store.insert_active(session, user_id="u1", plan=starter, source=SubscriptionSource.MANUAL, now=t0)

    with pytest.raises(NotFoundError):
        with get_db_session() as session:
            store.mark_cancelled(session, sub.id, t0 + timedelta(days=31))

    assert _statuses("u1") == [SubscriptionStatus.ACTIVE.value]


def test_count_current_ignores_lapsed_and_cancelled(starter, professional, t0):
    with get_db_session() as session:
        first = store.insert_active(session, user_id="u1", plan=starter, source=SubscriptionSource.MANUAL, now=t0)
        assert store.count_current(session, "u1", now=t0) == 1
        assert store.count_current(session, "u1", now=t0 + timedelta(days=31)) == 0

    with get_db_session() as session:
        store.mark_cancelled(session, first.id, t0)
        store.insert_active(session, user_id="u1", plan=professional, source=SubscriptionSource.UPGRADE, now=t0)
        assert store.count_current(session, "u1", now=t0) == 1


def test_list_subscriptions_newest_first_with_pagination(starter, t0):
    for i in range(3):
        with get_db_session() as session:
            store.insert_active(
                session,
                user_id=f"u{i}",
                plan=starter,
                source=SubscriptionSource.MANUAL,
                now=t0 + timedelta(minutes=i),
            )

    items, total = store.list_subscriptions(page=1, limit=2)
    assert total == 3
    assert [s.user_id for s in items] == ["u2", "u1"]
    assert items[0].plan.id == "starter"
    assert items[0].user.user_id == "u2"

    items, total = store.list_subscriptions(page=2, limit=2)
    assert [s.user_id for s in items] == ["u0"]

    items, total = store.list_subscriptions("cancelled")
    assert total == 0 and items == []
