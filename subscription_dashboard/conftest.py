# subscription_dashboard/conftest.py
import os
from datetime import datetime, timezone

import pytest

# Configure before the settings object is first built
os.environ.setdefault("ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-0123456789abcdefghij")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ALLOW_HEADER_AUTH", "true")
os.environ.pop("STRIPE_SECRET_KEY", None)

from subscription_dashboard.core.database import create_all_tables, dispose_engine, init_engine  # noqa: E402
from subscription_dashboard.core.metrics import METRICS  # noqa: E402
from subscription_dashboard.features.billing.gateway import set_provider  # noqa: E402
from subscription_dashboard.features.plans.service import get_plan, seed_plans  # noqa: E402
from subscription_dashboard.features.users.service import get_or_create_user  # noqa: E402
from subscription_dashboard.models.user import Principal  # noqa: E402


@pytest.fixture(scope="function", autouse=True)
def db(tmp_path):
    """
    Fresh SQLite file database per test.

    A file (not :memory:) so request handlers running in the threadpool share
    the same data.
    """
    url = f"sqlite:///{tmp_path / 'test.db'}"
    dispose_engine()
    init_engine(url)
    create_all_tables()
    yield url
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_global_state():
    """Metrics and installed payment provider are process-wide."""
    METRICS.reset()
    set_provider(None)
    yield
    set_provider(None)


@pytest.fixture
def seeded_plans(db):
    seed_plans()
    return {plan_id: get_plan(plan_id) for plan_id in ("starter", "professional", "enterprise", "annual-pro")}


@pytest.fixture
def starter(seeded_plans):
    return seeded_plans["starter"]


@pytest.fixture
def professional(seeded_plans):
    return seeded_plans["professional"]


@pytest.fixture
def alice(db):
    get_or_create_user("user_alice")
    return Principal(user_id="user_alice", role="user")


@pytest.fixture
def bob(db):
    get_or_create_user("user_bob")
    return Principal(user_id="user_bob", role="user")


@pytest.fixture
def admin(db):
    get_or_create_user("user_admin", role="admin")
    return Principal(user_id="user_admin", role="admin")


@pytest.fixture
def t0():
    return datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
