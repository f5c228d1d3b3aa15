"""UTC helpers shared by the ledger and entitlement code."""

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return utc_now()
    return as_utc(now)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values read back from drivers that drop tzinfo (SQLite)."""
    if value is None:
        return None
    if getattr(value, "tzinfo", None) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
