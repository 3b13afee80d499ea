"""Credential boundary: JWT verification and the X-User-Id fallback."""

import time

import jwt
import pytest
from fastapi.testclient import TestClient

from subscription_dashboard.core.auth import decode_token, resolve_principal
from subscription_dashboard.core.config import Settings, settings
from subscription_dashboard.core.errors import UnauthenticatedError
from subscription_dashboard.features.users.service import get_user
from subscription_dashboard.main import app


def _token(sub="user_jwt", role=None, exp_offset=3600, secret=None):
    claims = {"sub": sub, "iat": int(time.time()), "exp": int(time.time()) + exp_offset}
    if role:
        claims["role"] = role
    return jwt.encode(claims, secret or settings.JWT_SECRET, algorithm="HS256")


def test_bearer_token_resolves_principal(db):
    principal = resolve_principal(f"Bearer {_token()}", None)
    assert principal.user_id == "user_jwt"
    assert principal.role == "user"
    assert get_user("user_jwt") is not None


def test_role_claim_is_applied(db):
    principal = resolve_principal(f"Bearer {_token(role='admin')}", None)
    assert principal.is_admin
    assert get_user("user_jwt").role == "admin"


def test_expired_token_rejected(db):
    with pytest.raises(UnauthenticatedError, match="expired"):
        decode_token(_token(exp_offset=-60))


def test_wrong_secret_rejected(db):
    with pytest.raises(UnauthenticatedError):
        decode_token(_token(secret="not-the-secret-at-all-0123456789"))


def test_header_fallback_can_be_disabled(db, monkeypatch):
    assert resolve_principal(None, "user_hdr").user_id == "user_hdr"

    monkeypatch.setattr(settings, "ALLOW_HEADER_AUTH", False)
    with pytest.raises(UnauthenticatedError):
        resolve_principal(None, "user_hdr")


def test_bearer_over_http(seeded_plans):
    client = TestClient(app)
    resp = client.get("/api/subscriptions/me", headers={"Authorization": f"Bearer {_token()}"})
    assert resp.status_code == 200

    bad = client.get("/api/subscriptions/me", headers={"Authorization": "Bearer garbage"})
    assert bad.status_code == 401


def test_header_fallback_is_off_by_default(monkeypatch):
    monkeypatch.delenv("ALLOW_HEADER_AUTH", raising=False)
    assert Settings(_env_file=None).ALLOW_HEADER_AUTH is False


def test_header_alone_cannot_reach_admin_listing_when_disabled(admin, monkeypatch):
    monkeypatch.setattr(settings, "ALLOW_HEADER_AUTH", False)
    client = TestClient(app)
    resp = client.get("/api/subscriptions", headers={"X-User-Id": admin.user_id})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthenticated"
