"""
Credential boundary.

Token issuance lives in an external credential service; this module only
verifies what it hands us and yields a Principal(user_id, role).

Priority:
1. Authorization: Bearer <JWT> (HS256 by default, `sub` + optional `role` claim)
2. X-User-Id header when ALLOW_HEADER_AUTH is on (dev/tests)
3. Unauthenticated (401)
"""
from typing import Any, Dict, Optional
import logging

import jwt
from fastapi import Depends, Header, Request

from subscription_dashboard.core.config import settings
from subscription_dashboard.core.errors import PermissionError, UnauthenticatedError
from subscription_dashboard.models.user import Principal

logger = logging.getLogger(__name__)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Verify a bearer token and return its claims.

    Raises:
        UnauthenticatedError: invalid, expired, or unverifiable token
    """
    if not settings.JWT_SECRET:
        raise UnauthenticatedError("Token verification is not configured")

    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_signature": True, "verify_exp": True, "require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthenticatedError("Invalid token")

    return claims


def resolve_principal(authorization: Optional[str], x_user_id: Optional[str]) -> Principal:
    """Shared by REST dependencies and the WebSocket handshake."""
    from subscription_dashboard.features.users.service import get_or_create_user

    if authorization and authorization.startswith("Bearer "):
        claims = decode_token(authorization[7:].strip())
        user = get_or_create_user(
            str(claims["sub"]),
            role=claims.get("role"),
            email=claims.get("email"),
            display_name=claims.get("name"),
        )
        return Principal(user_id=user.user_id, role=user.role)

    if x_user_id and settings.ALLOW_HEADER_AUTH:
        user = get_or_create_user(x_user_id.strip())
        return Principal(user_id=user.user_id, role=user.role)

    raise UnauthenticatedError("Missing Authorization (Bearer JWT) or X-User-Id header")


def get_current_principal(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
) -> Principal:
    """FastAPI dependency yielding the authenticated caller."""
    principal = resolve_principal(request.headers.get("Authorization"), x_user_id)
    request.state.user_id = principal.user_id
    return principal


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """FastAPI dependency: caller must hold the admin role."""
    if not principal.is_admin:
        raise PermissionError("Access denied. Required role: admin")
    return principal
