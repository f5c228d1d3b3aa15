"""
Auth-facing routes.

Token issuance lives in the auth service; this router only exposes the
caller's profile with their entitlement after the self-healing read.
"""
from fastapi import APIRouter, Depends

from melodia.core.auth import AuthenticatedUser, get_current_user


router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me")
def me(current: AuthenticatedUser = Depends(get_current_user)):
    user = current.user
    entitlement = current.entitlement
    return {
        "success": True,
        "user": {
            "id": user.user_id,
            "username": user.username,
            "email": user.email,
            "display_name": user.display_name,
            "is_premium": entitlement.is_premium,
            "premium_expires_at": (
                entitlement.premium_expires_at.isoformat() if entitlement.premium_expires_at else None
            ),
        },
    }
