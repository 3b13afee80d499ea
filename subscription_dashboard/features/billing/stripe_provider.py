"""
Stripe payment provider implementation.

Implements the PaymentProvider protocol using the Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
from typing import Dict, Any, Optional
import stripe

from subscription_dashboard.core.config import settings
from subscription_dashboard.core.errors import WebhookVerificationError
from subscription_dashboard.features.billing.provider import (
    CheckoutSession,
    LineItem,
    PaymentEvent,
    PaymentProviderError,
    SessionStatus,
)


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET setting)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES

    def create_checkout_session(
        self,
        line_item: LineItem,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        client_reference_id: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a one-shot Stripe checkout session."""
        if line_item.price_id:
            stripe_item: Dict[str, Any] = {"price": line_item.price_id, "quantity": 1}
        else:
            stripe_item = {
                "price_data": {
                    "currency": line_item.currency,
                    "product_data": {
                        "name": line_item.name,
                        "description": line_item.description,
                    },
                    "unit_amount": line_item.unit_amount,
                },
                "quantity": 1,
            }

        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [stripe_item],
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        if client_reference_id:
            params["client_reference_id"] = client_reference_id

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe checkout session creation failed: {e}")
        return CheckoutSession(session_id=session.id, redirect_url=session.url)

    def retrieve_session(self, session_id: str) -> SessionStatus:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe session lookup failed: {e}")
        return SessionStatus(
            session_id=session.id,
            status=getattr(session, "status", None),
            payment_status=getattr(session, "payment_status", None),
        )

    def parse_webhook(self, body: bytes, signature_header: Optional[str]) -> PaymentEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise WebhookVerificationError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature_header:
            raise WebhookVerificationError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, signature_header, self.webhook_secret)
        except ValueError as e:
            raise WebhookVerificationError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e}")

        # Signature already checked over these exact bytes
        try:
            event = json.loads(body)
        except ValueError as e:
            raise WebhookVerificationError(f"Invalid payload: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> PaymentEvent:
        """Parse Stripe event into normalized PaymentEvent."""
        data = (event.get("data") or {}).get("object") or {}
        payment_id = data.get("payment_intent")
        if isinstance(payment_id, dict):
            payment_id = payment_id.get("id")

        return PaymentEvent(
            event_id=str(event.get("id") or ""),
            event_type=str(event.get("type") or ""),
            session_id=data.get("id") if data.get("object") == "checkout.session" else None,
            payment_id=payment_id,
            amount_total=data.get("amount_total"),
            currency=data.get("currency"),
            client_reference_id=data.get("client_reference_id"),
            metadata=dict(data.get("metadata") or {}),
        )
