"""
User domain service.
- get_or_create_user(user_id)
- get_user(user_id)
- normalize_display_name()

Registration and login live in the auth service; this module only knows
enough about users to attach entitlements and gateway customer details.
"""

from typing import Optional
from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError

from melodia.core.database import get_db_session, users as app_users
from melodia.core.timeutil import as_utc, utc_now
from melodia.models.user import User


def normalize_display_name(user_id: str, display_name: Optional[str]) -> str:
    return User.normalized_display_name(user_id, display_name)


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        if not row:
            return None
        display = row.display_name or normalize_display_name(row.user_id, None)
        return User(
            user_id=row.user_id,
            created_at=as_utc(row.created_at),
            username=row.username,
            email=row.email,
            display_name=display,
            status=row.status,
        )


def get_or_create_user(
    user_id: str,
    *,
    username: Optional[str] = None,
    email: Optional[str] = None,
) -> User:
    existing = get_user(user_id)
    if existing:
        return existing

    now = utc_now()
    display = normalize_display_name(user_id, username)
    try:
        with get_db_session() as session:
            session.execute(
                insert(app_users).values(
                    user_id=user_id,
                    username=username,
                    email=email,
                    display_name=display,
                    status="active",
                    is_premium=False,
                    premium_expires_at=None,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # Concurrent first request inserted the same id
        existing = get_user(user_id)
        if existing:
            return existing
        raise

    return User(
        user_id=user_id,
        created_at=now,
        username=username,
        email=email,
        display_name=display,
        status="active",
    )
