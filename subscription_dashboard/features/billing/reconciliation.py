"""
Reconciliation engine: turns a verified payment event into at most one active
subscription.

Safe to run any number of times for the same delivery. Every outcome except
a storage failure is acknowledged to the provider; storage failures raise
UpstreamUnavailableError so the provider redelivers.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from subscription_dashboard.core.config import settings
from subscription_dashboard.core.database import get_db_session
from subscription_dashboard.core.errors import AlreadySubscribedError, MalformedEventError
from subscription_dashboard.core.logging import log_event
from subscription_dashboard.core.metrics import subscription_mutations_total
from subscription_dashboard.features.billing.provider import PaymentEvent, from_minor_units
from subscription_dashboard.features.plans.service import resolve_plan
from subscription_dashboard.features.subscriptions import store
from subscription_dashboard.models.subscription import SubscriptionSource
from subscription_dashboard.realtime.hub import notify_subscription_change

ACTIVATING_EVENT = "checkout.session.completed"

CREATED = "created"
DUPLICATE = "duplicate"
IGNORED = "ignored"
MALFORMED = "malformed"
UNRESOLVED_PLAN = "unresolved_plan"
HELD = "held"
SUPERSEDED = "superseded"
FAILED = "failed"

POLICY_SUPERSEDE = "supersede"
POLICY_HOLD = "hold"


@dataclass
class ReconcileResult:
    outcome: str
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    subscription_id: Optional[str] = None
    detail: Optional[str] = None


def _first(metadata: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = metadata.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def extract_correlation(event: PaymentEvent) -> Tuple[str, str]:
    """
    Pull (user_id, plan_id) out of the session metadata.

    camelCase keys are still accepted from sessions created by older clients.

    Raises:
        MalformedEventError: either identifier missing
    """
    metadata = event.metadata or {}
    user_id = _first(metadata, "user_id", "userId") or (event.client_reference_id or None)
    plan_id = _first(metadata, "plan_id", "planId")
    if not user_id or not plan_id:
        raise MalformedEventError(
            f"Event {event.event_id} missing correlation data (user_id={user_id!r}, plan_id={plan_id!r})"
        )
    return user_id, plan_id


def on_payment_event(event: PaymentEvent, now: Optional[datetime] = None) -> ReconcileResult:
    """
    Apply one verified payment event.

    Raises:
        UpstreamUnavailableError: the store could not be written (retryable)
    """
    if event.event_type != ACTIVATING_EVENT:
        log_event("info", "reconcile.ignored", event_type=event.event_type, extra={"provider_event_id": event.event_id})
        return ReconcileResult(outcome=IGNORED)

    try:
        user_id, plan_ref = extract_correlation(event)
    except MalformedEventError as e:
        log_event("warning", "reconcile.malformed", event_type=event.event_type, error_code=e.code, extra={"provider_event_id": event.event_id, "error": e.message})
        return ReconcileResult(outcome=MALFORMED, detail=e.message)

    plan = resolve_plan(plan_ref)
    if plan is None:
        log_event(
            "warning",
            "reconcile.unresolved_plan",
            user_id=user_id,
            event_type=event.event_type,
            extra={"provider_event_id": event.event_id, "plan_ref": plan_ref},
        )
        return ReconcileResult(outcome=UNRESOLVED_PLAN, user_id=user_id, detail=f"Unknown plan {plan_ref}")

    ts = now or datetime.now(timezone.utc)
    currency = event.currency or settings.STRIPE_CURRENCY
    amount = from_minor_units(event.amount_total, currency) if event.amount_total is not None else plan.price
    outcome = CREATED
    try:
        with get_db_session() as session:
            existing = store.find_active(session, user_id, now=ts)
            if existing is not None and existing.plan_id == plan.id:
                return ReconcileResult(outcome=DUPLICATE, user_id=user_id, plan_id=plan.id, subscription_id=existing.id)

            if existing is not None:
                if settings.RECONCILE_CROSS_PLAN_POLICY.lower() == POLICY_HOLD:
                    log_event(
                        "warning",
                        "reconcile.held",
                        user_id=user_id,
                        subscription_id=existing.id,
                        event_type=event.event_type,
                        extra={"provider_event_id": event.event_id, "paid_plan_id": plan.id, "held_plan_id": existing.plan_id},
                    )
                    return ReconcileResult(outcome=HELD, user_id=user_id, plan_id=plan.id, subscription_id=existing.id)
                store.mark_cancelled(session, existing.id, ts)
                outcome = SUPERSEDED

            subscription = store.insert_active(
                session,
                user_id=user_id,
                plan=plan,
                source=SubscriptionSource.WEBHOOK,
                payment_id=event.payment_id,
                amount=amount,
                now=ts,
            )
    except AlreadySubscribedError:
        # A concurrent writer won the unique index
        with get_db_session() as session:
            winner = store.find_active(session, user_id, now=ts)
        if winner is not None and winner.plan_id == plan.id:
            return ReconcileResult(outcome=DUPLICATE, user_id=user_id, plan_id=plan.id, subscription_id=winner.id)
        return ReconcileResult(
            outcome=HELD,
            user_id=user_id,
            plan_id=plan.id,
            subscription_id=winner.id if winner else None,
            detail="Concurrent activation for another plan",
        )

    subscription_mutations_total.inc(labels={"type": "create", "source": SubscriptionSource.WEBHOOK.value})
    log_event(
        "info",
        "reconcile.activated",
        user_id=user_id,
        subscription_id=subscription.id,
        event_type=event.event_type,
        extra={"provider_event_id": event.event_id, "plan_id": plan.id, "outcome": outcome},
    )
    notify_subscription_change("subscription.activated", subscription)
    return ReconcileResult(outcome=outcome, user_id=user_id, plan_id=plan.id, subscription_id=subscription.id)
