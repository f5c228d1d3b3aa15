import hashlib
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Entitlement(BaseModel):
    """Premium state as last read (and, if lapsed, corrected) from storage."""
    model_config = ConfigDict(frozen=True)

    is_premium: bool = False
    premium_expires_at: Optional[datetime] = None


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    username: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    status: str = "active"

    @staticmethod
    def normalized_display_name(user_id: str, display_name: Optional[str] = None) -> str:
        if display_name and display_name.strip():
            return display_name.strip()
        # Stable anonymous handle derived from the id
        return "@u_" + hashlib.sha1(user_id.encode("utf-8")).hexdigest()[-6:]
