"""
Payment API routes.

- POST /api/checkout-sessions: create hosted checkout for a plan
- GET  /api/checkout-sessions/{session_id}: informational session status
- POST /api/payments/webhook: provider webhook (signature auth, raw body)
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from subscription_dashboard.api.envelope import ok
from subscription_dashboard.core.auth import get_current_principal
from subscription_dashboard.features.billing.gateway import create_session, retrieve_session_status
from subscription_dashboard.features.billing.service import process_webhook_event
from subscription_dashboard.models.user import Principal

router = APIRouter(prefix="/api", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    plan_id: str = Field(..., min_length=1)


@router.post("/checkout-sessions")
async def create_checkout(payload: CheckoutRequest, principal: Principal = Depends(get_current_principal)):
    """
    Create a checkout session for a plan.

    Errors:
        404: plan absent or inactive
        409: caller already has an active subscription
        503: billing disabled or provider unavailable (retryable)
    """
    checkout = await create_session(principal.user_id, payload.plan_id)
    return ok({"session_id": checkout.session_id, "redirect_url": checkout.redirect_url})


@router.get("/checkout-sessions/{session_id}")
async def get_checkout_status(session_id: str, principal: Principal = Depends(get_current_principal)):
    """Provider-side status. Informational only: access comes from the webhook."""
    status = await retrieve_session_status(session_id)
    return ok({"session_id": status.session_id, "status": status.status, "payment_status": status.payment_status})


@router.post("/payments/webhook")
async def payment_webhook(request: Request):
    """
    Provider webhook. Reads the unmodified raw body for signature verification.

    Errors:
        400: signature verification failed (not retried)
        503: storage failure (provider redelivers)
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature")
    result = await run_in_threadpool(process_webhook_event, body, signature)
    return ok({"received": True, "event_id": result.event_id, "outcome": result.outcome})
