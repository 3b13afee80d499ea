"""
Payment session gateway.

- create_session(user_id, plan_id): hosted checkout for one plan, nothing persisted
- retrieve_session_status(session_id): informational status for the return page
- verify_webhook(body, signature): signature check + normalization

Provider SDK calls are blocking; they run in a worker thread bounded by
PAYMENT_PROVIDER_TIMEOUT_SEC so a slow provider never stalls the event loop.
"""
import asyncio
from typing import Any, Callable, Optional

from subscription_dashboard.core.config import settings
from subscription_dashboard.core.database import get_db_session
from subscription_dashboard.core.errors import AlreadySubscribedError, UpstreamUnavailableError
from subscription_dashboard.core.logging import log_event
from subscription_dashboard.core.metrics import checkout_sessions_total
from subscription_dashboard.features.billing.provider import (
    CheckoutSession,
    LineItem,
    PaymentEvent,
    PaymentProvider,
    PaymentProviderError,
    SessionStatus,
    to_minor_units,
)
from subscription_dashboard.features.billing.stripe_provider import StripeProvider
from subscription_dashboard.features.plans.service import get_active_plan
from subscription_dashboard.features.subscriptions import store

_provider_override: Optional[PaymentProvider] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return _provider_override is not None or bool(settings.STRIPE_SECRET_KEY)


def set_provider(provider: Optional[PaymentProvider]) -> None:
    """Install a provider instance (tests, alternative providers). None restores Stripe."""
    global _provider_override
    _provider_override = provider


def get_provider() -> PaymentProvider:
    """
    Raises:
        UpstreamUnavailableError: billing is not configured (code billing_disabled)
    """
    if _provider_override is not None:
        return _provider_override
    if not billing_enabled():
        raise UpstreamUnavailableError("Billing is not enabled", code="billing_disabled")
    try:
        return StripeProvider()
    except PaymentProviderError as e:
        raise UpstreamUnavailableError(str(e), code="billing_disabled")


async def _call_provider(fn: Callable[..., Any], *args, **kwargs) -> Any:
    timeout = settings.PAYMENT_PROVIDER_TIMEOUT_SEC
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError:
        raise UpstreamUnavailableError(f"Payment provider did not respond within {timeout}s")
    except PaymentProviderError as e:
        raise UpstreamUnavailableError(f"Payment provider error: {e}")


def _prepare_session(user_id: str, plan_id: str):
    """Blocking checks before talking to the provider."""
    plan = get_active_plan(plan_id)
    with get_db_session() as session:
        if store.find_active(session, user_id) is not None:
            raise AlreadySubscribedError("You already have an active subscription")
    return plan


async def create_session(user_id: str, plan_id: str) -> CheckoutSession:
    """
    Create a hosted checkout session for a plan.

    Raises:
        NotFoundError: plan absent or inactive
        AlreadySubscribedError: user already holds an active subscription
        UpstreamUnavailableError: billing disabled, provider timeout or failure
    """
    provider = get_provider()
    try:
        plan = await asyncio.to_thread(_prepare_session, user_id, plan_id)
    except AlreadySubscribedError:
        checkout_sessions_total.inc(labels={"result": "already_subscribed"})
        raise

    line_item = LineItem(
        name=plan.name,
        description=f"{plan.duration_days} days subscription",
        unit_amount=to_minor_units(plan.price, settings.STRIPE_CURRENCY),
        currency=settings.STRIPE_CURRENCY,
        price_id=plan.price_id,
    )
    client_url = settings.CLIENT_URL.rstrip("/")
    try:
        checkout = await _call_provider(
            provider.create_checkout_session,
            line_item,
            success_url=f"{client_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{client_url}/plans?cancelled=true",
            metadata={"user_id": user_id, "plan_id": plan.id},
            client_reference_id=user_id,
        )
    except UpstreamUnavailableError as e:
        checkout_sessions_total.inc(labels={"result": "upstream_error"})
        log_event("error", "checkout.session_failed", user_id=user_id, error_code=e.code, extra={"plan_id": plan.id, "error": e.message})
        raise

    checkout_sessions_total.inc(labels={"result": "created"})
    log_event(
        "info",
        "checkout.session_created",
        user_id=user_id,
        event_type="checkout.session_created",
        extra={"plan_id": plan.id, "session_id": checkout.session_id},
    )
    return checkout


async def retrieve_session_status(session_id: str) -> SessionStatus:
    provider = get_provider()
    return await _call_provider(provider.retrieve_session, session_id)


def verify_webhook(body: bytes, signature_header: Optional[str]) -> PaymentEvent:
    """
    Raises:
        WebhookVerificationError: bad signature or payload
        UpstreamUnavailableError: billing disabled
    """
    return get_provider().parse_webhook(body, signature_header)
