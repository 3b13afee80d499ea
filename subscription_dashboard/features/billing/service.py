"""
Webhook processing orchestrator.

1. Verify signature (raw body)
2. Claim the provider event id (skip if already processed, retry later if in flight)
3. Reconcile
4. Record outcome, or the error for a redelivery to retry

All Stripe-specific code is in stripe_provider.py.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from subscription_dashboard.core.config import settings
from subscription_dashboard.core.database import get_db_session, payment_events
from subscription_dashboard.core.errors import UpstreamUnavailableError, WebhookVerificationError
from subscription_dashboard.core.logging import log_event
from subscription_dashboard.core.metrics import webhook_events_total, webhook_verification_failures_total
from subscription_dashboard.features.billing import reconciliation
from subscription_dashboard.features.billing.gateway import verify_webhook
from subscription_dashboard.features.billing.provider import PaymentEvent

IN_PROGRESS_CODE = "event_in_progress"


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str
    subscription_id: Optional[str] = None


def _claim_event(event: PaymentEvent, payload_hash: str, now: Optional[datetime] = None) -> bool:
    """
    Record the delivery. Returns False when this event id was already handled.

    A previously failed event is claimed again so redelivery retries it. So is
    an unfinished claim whose lease ran out: the worker holding it died between
    claim and outcome, and reconciliation is safe to repeat.

    Raises:
        UpstreamUnavailableError: another delivery holds a live claim on this
            event (code event_in_progress), or storage failure
    """
    ts = now or datetime.now(timezone.utc)
    lease_expired_before = ts - timedelta(seconds=settings.WEBHOOK_CLAIM_LEASE_SEC)
    try:
        with get_db_session() as session:
            row = session.execute(
                select(payment_events.c.outcome).where(payment_events.c.provider_event_id == event.event_id)
            ).first()
            if row is None:
                session.execute(
                    insert(payment_events).values(
                        provider_event_id=event.event_id,
                        event_type=event.event_type,
                        payload_hash=payload_hash,
                        received_at=ts,
                        claimed_at=ts,
                    )
                )
                return True

            if row.outcome is not None and row.outcome != reconciliation.FAILED:
                return False

            # Conditional takeover: only one redelivery can win a failed or stale claim
            result = session.execute(
                update(payment_events)
                .where(
                    and_(
                        payment_events.c.provider_event_id == event.event_id,
                        or_(
                            payment_events.c.outcome == reconciliation.FAILED,
                            and_(
                                payment_events.c.outcome.is_(None),
                                or_(
                                    payment_events.c.claimed_at.is_(None),
                                    payment_events.c.claimed_at <= lease_expired_before,
                                ),
                            ),
                        ),
                    )
                )
                .values(outcome=None, error=None, payload_hash=payload_hash, claimed_at=ts)
            )
            if not result.rowcount:
                raise _in_progress(event)
            return True
    except IntegrityError:
        # Another delivery inserted this event id first and is processing it
        raise _in_progress(event)
    except SQLAlchemyError as e:
        raise UpstreamUnavailableError(f"Failed to record payment event: {e}")


def _in_progress(event: PaymentEvent) -> UpstreamUnavailableError:
    return UpstreamUnavailableError(
        f"Payment event {event.event_id} is already being processed",
        code=IN_PROGRESS_CODE,
    )


def _finish_event(event_id: str, **values) -> None:
    values["processed_at"] = datetime.now(timezone.utc)
    with get_db_session() as session:
        session.execute(
            update(payment_events).where(payment_events.c.provider_event_id == event_id).values(**values)
        )


def process_webhook_event(body: bytes, signature_header: Optional[str]) -> WebhookResult:
    """
    Process a payment webhook delivery (idempotent).

    Raises:
        WebhookVerificationError: signature invalid (400, not retried)
        UpstreamUnavailableError: storage failure or event still in flight (provider should redeliver)
    """
    try:
        event = verify_webhook(body, signature_header)
    except WebhookVerificationError as e:
        webhook_verification_failures_total.inc()
        log_event("warning", "webhook.verification_failed", error_code=e.code, extra={"error": e.message})
        raise

    payload_hash = hashlib.sha256(body).hexdigest()
    if not event.event_id:
        event.event_id = f"sha256:{payload_hash}"

    try:
        claimed = _claim_event(event, payload_hash)
    except UpstreamUnavailableError as e:
        log_event("warning", "webhook.claim_unavailable", event_type=event.event_type, error_code=e.code, extra={"provider_event_id": event.event_id})
        raise

    if not claimed:
        webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": reconciliation.DUPLICATE})
        log_event("info", "webhook.duplicate", event_type=event.event_type, extra={"provider_event_id": event.event_id})
        return WebhookResult(event.event_id, event.event_type, reconciliation.DUPLICATE)

    try:
        result = reconciliation.on_payment_event(event)
    except Exception as e:
        webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": reconciliation.FAILED})
        log_event("error", "webhook.failed", event_type=event.event_type, extra={"provider_event_id": event.event_id, "error": str(e)})
        try:
            _finish_event(event.event_id, outcome=reconciliation.FAILED, error=str(e)[:1000])
        except SQLAlchemyError as record_error:
            log_event("error", "webhook.failed_record_error", extra={"provider_event_id": event.event_id, "error": str(record_error)})
        if isinstance(e, UpstreamUnavailableError):
            raise
        raise UpstreamUnavailableError(f"Failed to process payment event: {e}")

    try:
        _finish_event(
            event.event_id,
            outcome=result.outcome,
            user_id=result.user_id,
            plan_id=result.plan_id,
            subscription_id=result.subscription_id,
            error=result.detail,
        )
    except SQLAlchemyError as e:
        # The subscription write already committed; a redelivery past the lease reconciles to duplicate
        log_event("error", "webhook.outcome_record_failed", extra={"provider_event_id": event.event_id, "error": str(e)})

    webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": result.outcome})
    return WebhookResult(event.event_id, event.event_type, result.outcome, result.subscription_id)


def get_event_outcome(provider_event_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(payment_events.c.outcome).where(payment_events.c.provider_event_id == provider_event_id)
        ).first()
        return row.outcome if row else None
