"""
subscription_dashboard/features/subscriptions/service.py

Subscription lifecycle.

Handles:
- Current subscription lookup (admins exempt)
- Manual subscribe, cancel, upgrade
- Access gating for protected routes
- Admin listing

Every mutation runs in one transaction and publishes a change notification
after commit.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from fastapi import Depends

from subscription_dashboard.core.config import settings
from subscription_dashboard.core.database import get_db_session
from subscription_dashboard.core.auth import get_current_principal
from subscription_dashboard.core.errors import AlreadySubscribedError, NotFoundError, PermissionError, ValidationError
from subscription_dashboard.core.logging import log_event
from subscription_dashboard.core.metrics import subscription_mutations_total
from subscription_dashboard.features.plans.service import get_active_plan
from subscription_dashboard.features.subscriptions import store
from subscription_dashboard.models.subscription import Subscription, SubscriptionSource, SubscriptionStatus
from subscription_dashboard.models.user import Principal
from subscription_dashboard.realtime.hub import notify_subscription_change


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str
    subscription: Optional[Subscription] = None


def _record_mutation(kind: str, subscription: Subscription, event_type: str) -> None:
    subscription_mutations_total.inc(labels={"type": kind, "source": subscription.source.value})
    log_event(
        "info",
        event_type,
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        event_type=event_type,
        extra={"plan_id": subscription.plan_id, "source": subscription.source.value},
    )
    notify_subscription_change(event_type, subscription)


def get_current(user_id: str, role: str = "user", now: Optional[datetime] = None) -> Optional[Subscription]:
    """Newest active, unexpired subscription with its plan, or None. Admins always get None."""
    if role == "admin":
        return None
    with get_db_session() as session:
        return store.find_active(session, user_id, now=now, with_plan=True)


def subscribe(principal: Principal, plan_id: str, now: Optional[datetime] = None) -> Subscription:
    """
    Activate a plan without payment (manual source).

    Raises:
        PermissionError: caller is an admin
        NotFoundError: plan absent or inactive
        AlreadySubscribedError: caller already holds an active subscription
    """
    if principal.is_admin:
        raise PermissionError("Admins are exempt from subscriptions")

    plan = get_active_plan(plan_id)
    ts = now or datetime.now(timezone.utc)
    with get_db_session() as session:
        if store.find_active(session, principal.user_id, now=ts) is not None:
            raise AlreadySubscribedError("You already have an active subscription")
        subscription = store.insert_active(
            session,
            user_id=principal.user_id,
            plan=plan,
            source=SubscriptionSource.MANUAL,
            amount=plan.price,
            now=ts,
        )

    _record_mutation("create", subscription, "subscription.created")
    return subscription


def cancel(principal: Principal, subscription_id: Optional[str] = None, now: Optional[datetime] = None) -> Subscription:
    """
    Cancel a subscription.

    Target is the explicit id, or the caller's own active subscription.

    Raises:
        NotFoundError: nothing active to cancel
        PermissionError: caller is neither the owner nor an admin
    """
    ts = now or datetime.now(timezone.utc)
    with get_db_session() as session:
        if subscription_id:
            target = store.get_by_id(session, subscription_id)
            if target is None or target.status != SubscriptionStatus.ACTIVE or target.end_date < ts:
                raise NotFoundError("No active subscription found")
            if target.user_id != principal.user_id and not principal.is_admin:
                raise PermissionError("You can only cancel your own subscription")
        else:
            target = store.find_active(session, principal.user_id, now=ts)
            if target is None:
                raise NotFoundError("No active subscription found")

        cancelled = store.mark_cancelled(session, target.id, ts)

    _record_mutation("cancel", cancelled, "subscription.cancelled")
    return cancelled


def upgrade(principal: Principal, new_plan_id: str, now: Optional[datetime] = None) -> Subscription:
    """
    Replace the caller's active subscription with a new plan, atomically.

    Raises:
        NotFoundError: no active subscription, or new plan absent/inactive
    """
    ts = now or datetime.now(timezone.utc)
    plan = get_active_plan(new_plan_id)
    with get_db_session() as session:
        current = store.find_active(session, principal.user_id, now=ts)
        if current is None:
            raise NotFoundError("No active subscription found")

        store.mark_cancelled(session, current.id, ts)
        subscription = store.insert_active(
            session,
            user_id=principal.user_id,
            plan=plan,
            source=SubscriptionSource.UPGRADE,
            amount=plan.price,
            now=ts,
        )

    log_event(
        "info",
        "subscription.upgraded",
        user_id=principal.user_id,
        subscription_id=subscription.id,
        event_type="subscription.upgraded",
        extra={"from_plan_id": current.plan_id, "to_plan_id": plan.id},
    )
    subscription_mutations_total.inc(labels={"type": "upgrade", "source": subscription.source.value})
    notify_subscription_change("subscription.upgraded", subscription)
    return subscription


def check_access(principal: Principal, now: Optional[datetime] = None) -> AccessDecision:
    if principal.is_admin:
        return AccessDecision(allowed=True, reason="admin_exempt")
    current = get_current(principal.user_id, principal.role, now=now)
    if current is not None:
        return AccessDecision(allowed=True, reason="active_subscription", subscription=current)
    return AccessDecision(allowed=False, reason="subscription_required")


def require_active_subscription(principal: Principal = Depends(get_current_principal)) -> Principal:
    """FastAPI dependency gating routes behind an active subscription."""
    decision = check_access(principal)
    if not decision.allowed:
        raise PermissionError("Active subscription required", code="subscription_required")
    return principal


def list_subscriptions(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Subscription], int]:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > settings.ADMIN_PAGE_LIMIT_MAX:
        raise ValidationError(f"limit must be between 1 and {settings.ADMIN_PAGE_LIMIT_MAX}")
    if status is not None and status not in {s.value for s in SubscriptionStatus}:
        raise ValidationError(f"Unknown status: {status}")
    return store.list_subscriptions(status, page=page, limit=limit)
