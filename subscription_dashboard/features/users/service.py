"""
User directory (referenced, not owned).
- get_user(user_id)
- get_or_create_user(user_id, role=None)
- ensure_user_row(session, user_id) for writers inside an open transaction
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from subscription_dashboard.core.database import get_db_session, users as app_users
from subscription_dashboard.models.user import User

VALID_ROLES = {"user", "admin"}


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        created_at=row.created_at,
        display_name=row.display_name or User.normalized_display_name(row.user_id, None),
        email=row.email,
        role=row.role if row.role in VALID_ROLES else "user",
    )


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        return _row_to_user(row) if row else None


def ensure_user_row(session: Session, user_id: str) -> None:
    """Insert a bare user row if missing, inside the caller's transaction."""
    exists = session.execute(
        select(app_users.c.user_id).where(app_users.c.user_id == user_id)
    ).first()
    if exists:
        return
    session.execute(
        insert(app_users).values(
            user_id=user_id,
            display_name=User.normalized_display_name(user_id, None),
            role="user",
            created_at=datetime.now(timezone.utc),
        )
    )


def get_or_create_user(
    user_id: str,
    *,
    role: Optional[str] = None,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
) -> User:
    """Upsert a user seen at the credential boundary.

    A role asserted by the credential service wins over the stored one.
    """
    if role is not None and role not in VALID_ROLES:
        role = None

    existing = get_user(user_id)
    if existing:
        if role and role != existing.role:
            with get_db_session() as session:
                session.execute(
                    update(app_users).where(app_users.c.user_id == user_id).values(role=role)
                )
            return existing.model_copy(update={"role": role})
        return existing

    now = datetime.now(timezone.utc)
    display = User.normalized_display_name(user_id, display_name)
    try:
        with get_db_session() as session:
            session.execute(
                insert(app_users).values(
                    user_id=user_id,
                    display_name=display,
                    email=email,
                    role=role or "user",
                    created_at=now,
                )
            )
    except IntegrityError:
        # Another request created the row first
        return get_user(user_id)

    return User(user_id=user_id, created_at=now, display_name=display, email=email, role=role or "user")


def set_role(user_id: str, role: str) -> User:
    if role not in VALID_ROLES:
        raise ValueError(f"Unknown role: {role}")
    get_or_create_user(user_id)
    with get_db_session() as session:
        session.execute(update(app_users).where(app_users.c.user_id == user_id).values(role=role))
    return get_user(user_id)
