"""
Client-side view of the caller's subscription.

The server is the source of truth: the cache only saves round trips between
invalidations (explicit call, TTL poll tick, or a change notification).
"""
import asyncio
import time
from typing import Any, Callable, Dict, Optional

from subscription_dashboard.client.api_client import SubscriptionClient

_UNSET = object()


class SubscriptionCache:
    def __init__(self, client: SubscriptionClient, *, ttl: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self._client = client
        self._ttl = ttl
        self._clock = clock
        self._value: Any = _UNSET
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def is_fresh(self) -> bool:
        return self._value is not _UNSET and (self._clock() - self._fetched_at) < self._ttl

    def invalidate(self) -> None:
        self._value = _UNSET

    def on_change(self, message: Dict[str, Any]) -> None:
        """Feed WebSocket messages here; any subscription.* event drops the cached view."""
        if str(message.get("type", "")).startswith("subscription."):
            self.invalidate()

    async def get(self, *, force: bool = False) -> Optional[Dict[str, Any]]:
        async with self._lock:
            if force or not self.is_fresh:
                self._value = await self._client.get_current_subscription()
                self._fetched_at = self._clock()
            return self._value
