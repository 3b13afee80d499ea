"""
Subscription store: the single uniqueness-enforcing write path.

Every writer (manual subscribe, webhook reconciliation, cancel, upgrade) goes
through these functions inside one `get_db_session()` transaction. The
one-active-per-user rule is enforced by the partial unique index
`uq_subscriptions_user_active`; the reads here are only a fast path for a
friendly error. Nothing is cached between calls.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
import uuid

from sqlalchemy import and_, func, select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from subscription_dashboard.core.database import get_db_session, plans, subscriptions, users
from subscription_dashboard.core.errors import AlreadySubscribedError, NotFoundError, UpstreamUnavailableError
from subscription_dashboard.features.users.service import ensure_user_row
from subscription_dashboard.models.plan import Plan, PlanSummary
from subscription_dashboard.models.subscription import (
    Subscription,
    SubscriptionSource,
    SubscriptionStatus,
    as_utc,
)
from subscription_dashboard.models.user import UserSummary

ACTIVE_INDEX_NAME = "uq_subscriptions_user_active"


def compute_period(duration_days: int, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """start = now, end = start + duration_days."""
    start = now or datetime.now(timezone.utc)
    return start, start + timedelta(days=int(duration_days))


def _is_active_uniqueness_violation(exc: IntegrityError) -> bool:
    text = str(getattr(exc, "orig", exc))
    return ACTIVE_INDEX_NAME in text or "subscriptions.user_id" in text


def row_to_subscription(row, *, with_plan: bool = False, with_user: bool = False) -> Subscription:
    mapping = row._mapping
    plan = None
    if with_plan and mapping.get("plan_name") is not None:
        plan = PlanSummary(
            id=mapping["plan_id"],
            name=mapping["plan_name"],
            price=float(mapping["plan_price"]),
            duration_days=int(mapping["plan_duration_days"]),
            features=list(mapping["plan_features"] or []),
        )
    user = None
    if with_user and mapping.get("user_role") is not None:
        user = UserSummary(
            user_id=mapping["user_id"],
            display_name=mapping.get("user_display_name"),
            email=mapping.get("user_email"),
            role=mapping["user_role"] if mapping["user_role"] in ("user", "admin") else "user",
        )
    amount = mapping.get("amount")
    return Subscription(
        id=mapping["id"],
        user_id=mapping["user_id"],
        plan_id=mapping["plan_id"],
        start_date=as_utc(mapping["start_date"]),
        end_date=as_utc(mapping["end_date"]),
        status=SubscriptionStatus(mapping["status"]),
        payment_id=mapping.get("payment_id"),
        amount=float(amount) if amount is not None else None,
        source=SubscriptionSource(mapping.get("source") or "manual"),
        created_at=as_utc(mapping.get("created_at")),
        plan=plan,
        user=user,
    )


def _select_with_plan(with_user: bool = False):
    columns = [
        subscriptions,
        plans.c.name.label("plan_name"),
        plans.c.price.label("plan_price"),
        plans.c.duration_days.label("plan_duration_days"),
        plans.c.features.label("plan_features"),
    ]
    joined = subscriptions.outerjoin(plans, plans.c.id == subscriptions.c.plan_id)
    if with_user:
        columns += [
            users.c.display_name.label("user_display_name"),
            users.c.email.label("user_email"),
            users.c.role.label("user_role"),
        ]
        joined = joined.outerjoin(users, users.c.user_id == subscriptions.c.user_id)
    return select(*columns).select_from(joined)


def find_active(
    session: Session,
    user_id: str,
    *,
    plan_id: Optional[str] = None,
    now: Optional[datetime] = None,
    with_plan: bool = False,
) -> Optional[Subscription]:
    """Newest subscription with status active and end_date >= now."""
    ts = now or datetime.now(timezone.utc)
    conditions = [
        subscriptions.c.user_id == user_id,
        subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
        subscriptions.c.end_date >= ts,
    ]
    if plan_id is not None:
        conditions.append(subscriptions.c.plan_id == plan_id)

    stmt = _select_with_plan() if with_plan else select(subscriptions)
    row = session.execute(
        stmt.where(and_(*conditions)).order_by(subscriptions.c.created_at.desc()).limit(1)
    ).first()
    return row_to_subscription(row, with_plan=with_plan) if row else None


def get_by_id(session: Session, subscription_id: str, *, with_plan: bool = False) -> Optional[Subscription]:
    stmt = _select_with_plan() if with_plan else select(subscriptions)
    row = session.execute(stmt.where(subscriptions.c.id == subscription_id)).first()
    return row_to_subscription(row, with_plan=with_plan) if row else None


def sweep_expired(session: Session, user_id: str, now: Optional[datetime] = None) -> int:
    """Flip the user's lapsed `active` rows to `expired` so the unique index frees up."""
    ts = now or datetime.now(timezone.utc)
    result = session.execute(
        update(subscriptions)
        .where(
            and_(
                subscriptions.c.user_id == user_id,
                subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                subscriptions.c.end_date < ts,
            )
        )
        .values(status=SubscriptionStatus.EXPIRED.value, updated_at=ts)
    )
    return result.rowcount or 0


def insert_active(
    session: Session,
    *,
    user_id: str,
    plan: Plan,
    source: SubscriptionSource,
    payment_id: Optional[str] = None,
    amount: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Conditional insert of an active subscription.

    Raises:
        AlreadySubscribedError: another active row exists for the user
            (including one written concurrently after our checks)
        UpstreamUnavailableError: any other storage failure (retryable)
    """
    start, end = compute_period(plan.duration_days, now)
    subscription_id = str(uuid.uuid4())
    try:
        ensure_user_row(session, user_id)
        sweep_expired(session, user_id, start)
        session.execute(
            insert(subscriptions).values(
                id=subscription_id,
                user_id=user_id,
                plan_id=plan.id,
                start_date=start,
                end_date=end,
                status=SubscriptionStatus.ACTIVE.value,
                payment_id=payment_id,
                amount=amount,
                source=source.value,
                created_at=start,
                updated_at=start,
            )
        )
    except IntegrityError as e:
        if _is_active_uniqueness_violation(e):
            raise AlreadySubscribedError("You already have an active subscription")
        raise UpstreamUnavailableError(f"Failed to store subscription: {e.orig}")
    except SQLAlchemyError as e:
        raise UpstreamUnavailableError(f"Failed to store subscription: {e}")

    return Subscription(
        id=subscription_id,
        user_id=user_id,
        plan_id=plan.id,
        start_date=start,
        end_date=end,
        status=SubscriptionStatus.ACTIVE,
        payment_id=payment_id,
        amount=amount,
        source=source,
        created_at=start,
        plan=PlanSummary(
            id=plan.id,
            name=plan.name,
            price=plan.price,
            duration_days=plan.duration_days,
            features=plan.features,
        ),
    )


def mark_cancelled(session: Session, subscription_id: str, now: Optional[datetime] = None) -> Subscription:
    """
    Conditional update active and unexpired -> cancelled.

    Raises:
        NotFoundError: no such subscription, or it is no longer active or has lapsed
    """
    ts = now or datetime.now(timezone.utc)
    try:
        result = session.execute(
            update(subscriptions)
            .where(
                and_(
                    subscriptions.c.id == subscription_id,
                    subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                    subscriptions.c.end_date >= ts,
                )
            )
            .values(status=SubscriptionStatus.CANCELLED.value, updated_at=ts)
        )
    except SQLAlchemyError as e:
        raise UpstreamUnavailableError(f"Failed to update subscription: {e}")
    if not result.rowcount:
        raise NotFoundError("No active subscription found")
    return get_by_id(session, subscription_id, with_plan=True)


def list_subscriptions(
    status: Optional[str] = None,
    *,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Subscription], int]:
    """Admin listing, newest first, with plan and user joined."""
    page = max(1, int(page))
    limit = max(1, int(limit))
    stmt = _select_with_plan(with_user=True)
    count_stmt = select(func.count()).select_from(subscriptions)
    if status:
        stmt = stmt.where(subscriptions.c.status == status)
        count_stmt = count_stmt.where(subscriptions.c.status == status)

    with get_db_session() as session:
        total = session.execute(count_stmt).scalar_one()
        rows = session.execute(
            stmt.order_by(subscriptions.c.created_at.desc(), subscriptions.c.id.asc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).fetchall()
        return [row_to_subscription(r, with_plan=True, with_user=True) for r in rows], int(total)


def count_current(session: Session, user_id: str, now: Optional[datetime] = None) -> int:
    """Number of active, unexpired rows for a user (0 or 1 by invariant)."""
    ts = now or datetime.now(timezone.utc)
    return session.execute(
        select(func.count())
        .select_from(subscriptions)
        .where(
            and_(
                subscriptions.c.user_id == user_id,
                subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                subscriptions.c.end_date >= ts,
            )
        )
    ).scalar_one()
