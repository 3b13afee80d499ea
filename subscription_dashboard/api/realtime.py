"""
WebSocket endpoint for subscription change notifications.

/v1/ws/subscriptions authenticates like REST (Bearer JWT, or X-User-Id when
header auth is enabled). Query parameters `token` / `user_id` are accepted for
browsers that cannot set headers. Read-only: clients receive
subscription.* events and re-query /api/subscriptions/me.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from subscription_dashboard.core.auth import resolve_principal
from subscription_dashboard.core.errors import AppError
from subscription_dashboard.core.logging import log_event
from subscription_dashboard.models.user import Principal
from subscription_dashboard.realtime.hub import hub

router = APIRouter()


async def _authenticate_websocket(websocket: WebSocket) -> Optional[Principal]:
    authorization = websocket.headers.get("authorization")
    token = websocket.query_params.get("token")
    if not authorization and token:
        authorization = f"Bearer {token}"
    x_user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")
    try:
        return await run_in_threadpool(resolve_principal, authorization, x_user_id)
    except AppError:
        return None


@router.websocket("/v1/ws/subscriptions")
async def subscription_events(websocket: WebSocket):
    await websocket.accept()
    request_id = websocket.headers.get("x-request-id") or str(uuid4())
    connection_id = str(uuid4())

    principal = await _authenticate_websocket(websocket)
    if principal is None:
        log_event("info", "ws.unauthorized", request_id=request_id, event_type="ws.unauthorized", extra={"connection_id": connection_id})
        await websocket.send_json({"type": "error", "code": "unauthenticated", "message": "Missing or invalid credentials", "request_id": request_id})
        await websocket.close(code=1008)
        return

    user_id = principal.user_id
    await hub.register(user_id, websocket)
    log_event("info", "ws.connected", request_id=request_id, user_id=user_id, event_type="ws.connected", extra={"connection_id": connection_id})

    await websocket.send_json({
        "type": "connected",
        "user_id": user_id,
        "ts": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "connection_id": connection_id,
    })

    try:
        while True:
            raw_message = await websocket.receive_text()
            try:
                data = json.loads(raw_message)
            except ValueError:
                continue
            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({"type": "pong", "ts": datetime.now(timezone.utc).isoformat(), "request_id": request_id})
    except WebSocketDisconnect:
        log_event("info", "ws.disconnected", request_id=request_id, user_id=user_id, event_type="ws.disconnected", extra={"connection_id": connection_id})
    finally:
        await hub.unregister(user_id, websocket)
