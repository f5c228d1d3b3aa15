"""
Auth utilities for the Melodia API.

Validates session JWTs issued by the auth service and resolves the caller.
Falls back to X-User-Id header outside production (tests, local tooling).

Every authenticated request runs the entitlement self-healing read, so a
lapsed premium window is cleared the first time its owner shows up.
"""
from dataclasses import dataclass
from typing import Optional
import logging

import jwt
from fastapi import Depends, Header, HTTPException, Request

from melodia.core.config import is_production, settings
from melodia.core.errors import NotFoundError, PremiumRequiredError
from melodia.features.entitlements.service import check_and_correct_entitlement
from melodia.features.users.service import get_or_create_user, get_user
from melodia.models.user import Entitlement, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    user: User
    entitlement: Entitlement

    @property
    def user_id(self) -> str:
        return self.user.user_id


def verify_session_jwt(token: str) -> str:
    """
    Verify a session JWT and extract user_id.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        user_id: Extracted from JWT's 'sub' claim

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.JWT_SECRET:
        logger.warning("JWT_SECRET not configured, rejecting bearer token")
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired. Please login again.")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return str(user_id)


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Non-production: test user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (non-production only; upserts the user)
    3. Raise 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_session_jwt(auth_header[7:])
        if get_user(user_id) is None:
            raise HTTPException(status_code=401, detail="User not found.")
        return user_id

    if x_user_id and not is_production():
        get_or_create_user(x_user_id)
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail="Access denied. No token provided.",
    )


async def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Non-production: test user ID"),
) -> AuthenticatedUser:
    """Resolve the caller and their (lazily corrected) entitlement."""
    user_id = await get_current_user_id(request, x_user_id)
    user = get_user(user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found.")
    try:
        entitlement = check_and_correct_entitlement(user_id)
    except NotFoundError:
        raise HTTPException(status_code=401, detail="User not found.")
    request.state.user_id = user_id
    return AuthenticatedUser(user=user, entitlement=entitlement)


async def require_premium(current: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """Gate a route on an active premium window; 403 premium_required otherwise."""
    if not current.entitlement.is_premium:
        raise PremiumRequiredError("Premium subscription required.")
    return current
