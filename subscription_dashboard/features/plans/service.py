"""
subscription_dashboard/features/plans/service.py

Plan catalog.

Handles:
- Catalog reads (active plans, lookup by id, alternate-identifier resolution)
- Plan seeding (Starter, Professional, Enterprise, Annual Pro)
- Admin maintenance (create, update, soft deactivate)
"""

from datetime import datetime, timezone
from typing import List, Optional
import re
import uuid

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from subscription_dashboard.core.database import get_db_session, plans
from subscription_dashboard.core.errors import ConflictError, NotFoundError, ValidationError
from subscription_dashboard.core.logging import log_event
from subscription_dashboard.models.plan import Plan, PlanCreate, PlanUpdate


DEFAULT_PLANS = [
    {
        "id": "starter",
        "name": "Starter",
        "price": 9.99,
        "duration_days": 30,
        "features": ["5 Projects", "Basic Support", "10GB Storage", "Email Reports", "Community Access"],
    },
    {
        "id": "professional",
        "name": "Professional",
        "price": 29.99,
        "duration_days": 30,
        "features": [
            "Unlimited Projects",
            "Priority Support",
            "100GB Storage",
            "Advanced Analytics",
            "Custom Domain",
            "API Access",
            "Team Collaboration",
        ],
    },
    {
        "id": "enterprise",
        "name": "Enterprise",
        "price": 99.99,
        "duration_days": 30,
        "features": [
            "Unlimited Everything",
            "24/7 Dedicated Support",
            "Unlimited Storage",
            "White Label",
            "Advanced API Access",
            "Custom Integrations",
            "Priority Feature Requests",
            "Dedicated Account Manager",
            "SLA Guarantee",
        ],
    },
    {
        "id": "annual-pro",
        "name": "Annual Pro",
        "price": 299.99,
        "duration_days": 365,
        "features": [
            "All Professional Features",
            "Annual Billing (Save 20%)",
            "200GB Storage",
            "Premium Templates",
            "Advanced Security",
        ],
    },
]


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")


def row_to_plan(row) -> Plan:
    return Plan(
        id=row.id,
        name=row.name,
        price=float(row.price),
        duration_days=int(row.duration_days),
        features=list(row.features or []),
        price_id=row.price_id,
        slug=row.slug,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def list_active_plans() -> List[Plan]:
    """Active plans, cheapest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(plans).where(plans.c.is_active == True).order_by(plans.c.price.asc(), plans.c.name.asc())  # noqa: E712
        ).fetchall()
        return [row_to_plan(r) for r in rows]


def list_all_plans() -> List[Plan]:
    """Admin view: inactive plans included."""
    with get_db_session() as session:
        rows = session.execute(select(plans).order_by(plans.c.price.asc(), plans.c.name.asc())).fetchall()
        return [row_to_plan(r) for r in rows]


def get_plan(plan_id: str) -> Optional[Plan]:
    """Lookup by canonical id. Inactive plans are returned; callers decide."""
    with get_db_session() as session:
        row = session.execute(select(plans).where(plans.c.id == plan_id)).first()
        return row_to_plan(row) if row else None


def get_active_plan(plan_id: str) -> Plan:
    """
    Lookup a purchasable plan.

    Raises:
        NotFoundError: plan absent or inactive (deliberately indistinguishable)
    """
    plan = get_plan(plan_id) if plan_id else None
    if plan is None or not plan.is_active:
        raise NotFoundError("Plan not found or inactive")
    return plan


def resolve_plan(identifier: Optional[str]) -> Optional[Plan]:
    """
    Resolve a plan from whatever identifier a payment session carried.

    Order: canonical id, external price reference, slug. The first match wins.
    Inactive plans still resolve: a payment that already happened must be honoured.
    """
    if not identifier:
        return None
    with get_db_session() as session:
        for column in (plans.c.id, plans.c.price_id, plans.c.slug):
            row = session.execute(select(plans).where(column == identifier).limit(1)).first()
            if row:
                return row_to_plan(row)
    return None


def seed_plans() -> int:
    """
    Seed default plans (idempotent).

    Returns:
        Number of plans inserted
    """
    inserted = 0
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        for config in DEFAULT_PLANS:
            existing = session.execute(
                select(plans.c.id).where(
                    (plans.c.id == config["id"]) | (plans.c.name == config["name"])
                )
            ).first()
            if existing:
                continue
            session.execute(
                insert(plans).values(
                    id=config["id"],
                    name=config["name"],
                    price=config["price"],
                    duration_days=config["duration_days"],
                    features=config["features"],
                    slug=_slugify(config["name"]),
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
            )
            inserted += 1
    if inserted:
        log_event("info", "plans.seeded", event_type="plans.seeded", extra={"inserted": inserted})
    return inserted


def create_plan(payload: PlanCreate) -> Plan:
    now = datetime.now(timezone.utc)
    plan_id = payload.id or _slugify(payload.name) or str(uuid.uuid4())
    try:
        with get_db_session() as session:
            session.execute(
                insert(plans).values(
                    id=plan_id,
                    name=payload.name.strip(),
                    price=payload.price,
                    duration_days=payload.duration_days,
                    features=payload.features,
                    price_id=payload.price_id,
                    slug=payload.slug or _slugify(payload.name),
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        raise ConflictError("Plan with this name already exists")

    log_event("info", "plan.created", event_type="plan.created", extra={"plan_id": plan_id})
    return get_plan(plan_id)


def update_plan(plan_id: str, payload: PlanUpdate) -> Plan:
    values = payload.model_dump(exclude_unset=True)
    if "features" in values:
        features = [f.strip() for f in values["features"] or [] if f and f.strip()]
        if not features:
            raise ValidationError("At least one feature is required")
        values["features"] = features
    if values.get("name") is not None:
        values["name"] = values["name"].strip()
    if not values:
        plan = get_plan(plan_id)
        if plan is None:
            raise NotFoundError("Plan not found")
        return plan

    values["updated_at"] = datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            result = session.execute(update(plans).where(plans.c.id == plan_id).values(**values))
            if result.rowcount == 0:
                raise NotFoundError("Plan not found")
    except IntegrityError:
        raise ConflictError("Plan with this name already exists")

    log_event("info", "plan.updated", event_type="plan.updated", extra={"plan_id": plan_id, "fields": sorted(values)})
    return get_plan(plan_id)


def deactivate_plan(plan_id: str) -> Plan:
    """Soft delete: flip is_active. Existing subscriptions keep their plan reference."""
    return update_plan(plan_id, PlanUpdate(is_active=False))
