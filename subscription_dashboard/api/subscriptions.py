"""
Subscription lifecycle API.

- GET  /api/subscriptions/me: current subscription or null
- GET  /api/subscriptions/me/access: access decision
- POST /api/subscriptions/{plan_id}/subscribe: manual activation
- POST /api/subscriptions/cancel: cancel own (or any, for admins)
- POST /api/subscriptions/upgrade: swap plan atomically
- GET  /api/subscriptions: admin listing
"""
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from subscription_dashboard.api.envelope import ok
from subscription_dashboard.core.auth import get_current_principal, require_admin
from subscription_dashboard.features.subscriptions import service
from subscription_dashboard.models.user import Principal

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


class CancelRequest(BaseModel):
    subscription_id: Optional[str] = None


class UpgradeRequest(BaseModel):
    new_plan_id: str = Field(..., min_length=1)


@router.get("/me")
def get_my_subscription(principal: Principal = Depends(get_current_principal)):
    current = service.get_current(principal.user_id, principal.role)
    return ok({"subscription": current})


@router.get("/me/access")
def get_my_access(principal: Principal = Depends(get_current_principal)):
    decision = service.check_access(principal)
    return ok({"allowed": decision.allowed, "reason": decision.reason, "subscription": decision.subscription})


@router.post("/cancel")
def cancel_subscription(
    payload: Optional[CancelRequest] = Body(None),
    principal: Principal = Depends(get_current_principal),
):
    subscription_id = payload.subscription_id if payload else None
    return ok(service.cancel(principal, subscription_id), "Subscription cancelled")


@router.post("/upgrade")
def upgrade_subscription(payload: UpgradeRequest, principal: Principal = Depends(get_current_principal)):
    return ok(service.upgrade(principal, payload.new_plan_id), "Subscription upgraded")


@router.post("/{plan_id}/subscribe", status_code=201)
def subscribe(plan_id: str, principal: Principal = Depends(get_current_principal)):
    return ok(service.subscribe(principal, plan_id), "Subscribed")


@router.get("")
def list_subscriptions(
    status: Optional[str] = Query(None),
    page: int = Query(1),
    limit: int = Query(10),
    admin: Principal = Depends(require_admin),
):
    items, total = service.list_subscriptions(status, page=page, limit=limit)
    return ok({
        "items": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    })
