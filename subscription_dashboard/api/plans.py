"""
Plan catalog API.

- GET    /api/plans: active plans (public)
- GET    /api/plans/all: every plan, inactive included (admin)
- GET    /api/plans/{plan_id}: one active plan (public)
- POST   /api/plans: create (admin)
- PUT    /api/plans/{plan_id}: update (admin)
- DELETE /api/plans/{plan_id}: soft deactivate (admin)
"""
from fastapi import APIRouter, Depends

from subscription_dashboard.api.envelope import ok
from subscription_dashboard.core.auth import require_admin
from subscription_dashboard.features.plans.service import (
    create_plan,
    deactivate_plan,
    get_active_plan,
    list_active_plans,
    list_all_plans,
    update_plan,
)
from subscription_dashboard.models.plan import PlanCreate, PlanUpdate
from subscription_dashboard.models.user import Principal

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.get("")
def list_plans():
    return ok(list_active_plans())


@router.get("/all")
def list_every_plan(admin: Principal = Depends(require_admin)):
    return ok(list_all_plans())


@router.get("/{plan_id}")
def get_plan(plan_id: str):
    return ok(get_active_plan(plan_id))


@router.post("", status_code=201)
def create(payload: PlanCreate, admin: Principal = Depends(require_admin)):
    return ok(create_plan(payload), "Plan created")


@router.put("/{plan_id}")
def update(plan_id: str, payload: PlanUpdate, admin: Principal = Depends(require_admin)):
    return ok(update_plan(plan_id, payload), "Plan updated")


@router.delete("/{plan_id}")
def deactivate(plan_id: str, admin: Principal = Depends(require_admin)):
    return ok(deactivate_plan(plan_id), "Plan deactivated")
