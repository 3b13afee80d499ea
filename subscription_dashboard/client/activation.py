"""
Post-checkout activation polling.

The webhook, not the browser redirect, creates the subscription, so the return
page polls /api/subscriptions/me with bounded exponential backoff. A timing
gap alone is never reported as a failure.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from subscription_dashboard.client.api_client import ApiError, SubscriptionClient

logger = logging.getLogger(__name__)


class ActivationState(str, Enum):
    ACTIVE = "active"          # subscription visible
    PROCESSING = "processing"  # budget exhausted, provider status unknown or open
    DELAYED = "delayed"        # provider says paid, record not visible yet
    FAILED = "failed"          # provider says the session will never pay


@dataclass
class ActivationResult:
    state: ActivationState
    attempts: int
    subscription: Optional[Dict[str, Any]] = None
    session_status: Optional[Dict[str, Any]] = None


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay after the given 1-based attempt."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def _session_failed(status: Dict[str, Any]) -> bool:
    if status.get("status") == "expired":
        return True
    return status.get("status") == "complete" and status.get("payment_status") == "unpaid"


async def wait_for_activation(
    client: SubscriptionClient,
    session_id: Optional[str] = None,
    *,
    attempts: int = 10,
    base_delay: float = 1.0,
    max_delay: float = 8.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ActivationResult:
    """
    Poll until the subscription is visible or the attempt budget runs out.

    Transient API failures (network, 5xx) count as a missed attempt; other
    API errors propagate.
    """
    session_status: Optional[Dict[str, Any]] = None
    for attempt in range(1, attempts + 1):
        try:
            subscription = await client.get_current_subscription()
        except ApiError as e:
            if not e.retryable:
                raise
            logger.debug(f"activation poll {attempt} failed: {e}")
            subscription = None

        if subscription and subscription.get("status") == "active":
            return ActivationResult(ActivationState.ACTIVE, attempt, subscription=subscription, session_status=session_status)

        if session_id:
            try:
                session_status = await client.get_checkout_session(session_id)
            except ApiError as e:
                if not e.retryable:
                    raise
                logger.debug(f"session status lookup failed: {e}")
            if session_status and _session_failed(session_status):
                return ActivationResult(ActivationState.FAILED, attempt, session_status=session_status)

        if attempt < attempts:
            await sleep(backoff_delay(attempt, base_delay, max_delay))

    if session_status and session_status.get("payment_status") == "paid":
        return ActivationResult(ActivationState.DELAYED, attempts, session_status=session_status)
    return ActivationResult(ActivationState.PROCESSING, attempts, session_status=session_status)
