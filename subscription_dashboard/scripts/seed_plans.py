#!/usr/bin/env python3
"""
Seed the plan catalog (and optionally promote an admin).

Usage:
    python -m subscription_dashboard.scripts.seed_plans
    python -m subscription_dashboard.scripts.seed_plans --admin-user-id user_123
    python -m subscription_dashboard.scripts.seed_plans --database-url sqlite:///./dev.db
"""
import argparse
import sys
from typing import List, Optional

from subscription_dashboard.core.database import create_all_tables, init_engine
from subscription_dashboard.core.logging import configure_logging
from subscription_dashboard.core.config import settings
from subscription_dashboard.features.plans.service import list_active_plans, seed_plans
from subscription_dashboard.features.users.service import set_role


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Seed subscription plans")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    parser.add_argument("--admin-user-id", help="Grant the admin role to this user id")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    if args.database_url:
        init_engine(args.database_url)
    create_all_tables()

    inserted = seed_plans()
    print(f"Seeded {inserted} plan(s)")
    for plan in list_active_plans():
        print(f"  {plan.id:<14} {plan.name:<14} {plan.price:>8.2f} / {plan.duration_days}d")

    if args.admin_user_id:
        user = set_role(args.admin_user_id, "admin")
        print(f"Granted admin role to {user.user_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
