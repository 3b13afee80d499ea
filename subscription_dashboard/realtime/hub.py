"""
In-memory per-user notification hub for subscription changes.

Writers (request handlers running in the threadpool, webhook reconciliation)
call `notify_subscription_change`; every WebSocket the user has open receives
the event and re-queries /api/subscriptions/me. Messages are invalidation
signals only, never the source of truth.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set
from fastapi import WebSocket
import asyncio
import logging

from subscription_dashboard.core.metrics import (
    ws_active_connections,
    ws_connections_total,
    ws_messages_sent_total,
)

logger = logging.getLogger(__name__)


class SubscriptionHub:
    """
    Room-per-user broadcast hub.

    Maps user_id -> Set[WebSocket]. In-process listeners (callables taking
    the message dict) receive every event regardless of user.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[WebSocket]] = {}
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = asyncio.Lock()

    async def register(self, user_id: str, websocket: WebSocket) -> None:
        self._loop = asyncio.get_running_loop()
        async with self._lock:
            self._rooms.setdefault(user_id, set()).add(websocket)
            ws_connections_total.inc()
            ws_active_connections.set(sum(len(s) for s in self._rooms.values()))
        logger.debug(f"[HUB] Registered socket for user {user_id}")

    async def unregister(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            room = self._rooms.get(user_id)
            if room is not None:
                room.discard(websocket)
                if not room:
                    del self._rooms[user_id]
            ws_active_connections.set(sum(len(s) for s in self._rooms.values()))

    async def broadcast(self, user_id: str, message: Dict[str, Any]) -> None:
        """Send to every socket of the user, pruning dead ones."""
        async with self._lock:
            sockets = set(self._rooms.get(user_id, set()))

        dead = []
        for ws in sockets:
            try:
                await ws.send_json(message)
                ws_messages_sent_total.inc(labels={"event_type": str(message.get("type", "unknown"))})
            except Exception as e:
                logger.debug(f"[HUB] Failed to send to socket: {e}")
                dead.append(ws)

        if dead:
            async with self._lock:
                room = self._rooms.get(user_id, set())
                for ws in dead:
                    room.discard(ws)

    def add_listener(self, listener: Callable[[Dict[str, Any]], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[Dict[str, Any]], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, user_id: str, message: Dict[str, Any]) -> None:
        """
        Fire-and-forget publish, safe from both sync and async contexts.

        Delivery failures are logged, never raised: a lost notification only
        delays the client until its next poll.
        """
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.warning(f"[HUB] listener failed: {e}")

        loop = self._loop
        if loop is None or loop.is_closed() or user_id not in self._rooms:
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            loop.create_task(self.broadcast(user_id, message))
        else:
            asyncio.run_coroutine_threadsafe(self.broadcast(user_id, message), loop)

    def connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self._rooms.get(user_id, set()))
        return sum(len(s) for s in self._rooms.values())


hub = SubscriptionHub()


def notify_subscription_change(event_type: str, subscription) -> None:
    """Publish a change event for the subscription's owner."""
    status = getattr(subscription.status, "value", subscription.status)
    hub.publish(
        subscription.user_id,
        {
            "type": event_type,
            "user_id": subscription.user_id,
            "subscription_id": subscription.id,
            "plan_id": subscription.plan_id,
            "status": status,
            "at": datetime.now(timezone.utc).isoformat(),
        },
    )
