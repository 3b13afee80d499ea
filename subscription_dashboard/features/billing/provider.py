"""
Payment provider protocol.

Defines the interface for payment providers (Stripe, etc.) so the gateway and
reconciliation never touch provider SDK types directly.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field

# Currencies whose minor unit is not 1/100 (Stripe's published lists)
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})
THREE_DECIMAL_CURRENCIES = frozenset({"bhd", "jod", "kwd", "omr", "tnd"})


def minor_unit_factor(currency: Optional[str]) -> int:
    code = (currency or "").lower()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 1
    if code in THREE_DECIMAL_CURRENCIES:
        return 1000
    return 100


def to_minor_units(amount: float, currency: Optional[str]) -> int:
    return int(round(amount * minor_unit_factor(currency)))


def from_minor_units(amount: int, currency: Optional[str]) -> float:
    return amount / minor_unit_factor(currency)


@dataclass
class LineItem:
    """One purchasable line: either an external price reference or inline price data."""
    name: str
    description: str
    unit_amount: int  # minor units of currency
    currency: str
    price_id: Optional[str] = None


@dataclass
class CheckoutSession:
    session_id: str
    redirect_url: str


@dataclass
class SessionStatus:
    """Informational only; never grants access."""
    session_id: str
    status: Optional[str]  # open, complete, expired
    payment_status: Optional[str]  # paid, unpaid, no_payment_required


@dataclass
class PaymentEvent:
    """Normalized, verified webhook delivery."""
    event_id: str
    event_type: str
    session_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount_total: Optional[int] = None  # minor units of currency
    currency: Optional[str] = None
    client_reference_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle:
    - Checkout session creation (one-shot payment)
    - Session status retrieval
    - Webhook signature verification and parsing
    """

    def create_checkout_session(
        self,
        line_item: LineItem,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        client_reference_id: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Create a hosted checkout session.

        Raises:
            PaymentProviderError: If session creation fails
        """
        ...

    def retrieve_session(self, session_id: str) -> SessionStatus:
        """
        Raises:
            PaymentProviderError: If the provider cannot be reached
        """
        ...

    def parse_webhook(self, body: bytes, signature_header: Optional[str]) -> PaymentEvent:
        """
        Verify webhook signature over the raw body and parse the event.

        Raises:
            WebhookVerificationError: If signature invalid or payload unparseable
        """
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""
    pass
