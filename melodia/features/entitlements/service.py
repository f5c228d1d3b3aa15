"""
melodia/features/entitlements/service.py

Premium entitlement service.

Handles:
- Extending a user's premium window after a successful purchase
- Self-healing reads: an expired window is cleared the first time it is read

Both writes are conditional updates. Extension only ever moves a user to
premium with a fresh expiry; correction only ever clears a window that is
still the one it observed as expired, so a correction can never wipe out a
grant that landed between its read and its write.
"""

from datetime import datetime, timedelta
from typing import Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from melodia.core.database import session_scope, users
from melodia.core.errors import InvalidPlanError, NotFoundError
from melodia.core.metrics import entitlement_corrections_total, entitlement_grants_total
from melodia.core.timeutil import as_utc, normalize_now
from melodia.features.plans.service import PlanCatalog, get_plan
from melodia.models.plan import Plan
from melodia.models.user import Entitlement


logger = logging.getLogger(__name__)

# One retry covers a grant racing the correction; after that the fresh row wins.
_CORRECTION_ATTEMPTS = 2


def compute_expiry(plan: Plan, now: datetime) -> datetime:
    """Premium windows restart at `now`; remaining time is not carried over."""
    return now + timedelta(days=plan.entitlement_days)


def extend_entitlement(
    user_id: str,
    plan_id: str,
    *,
    catalog: Optional[PlanCatalog] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
    source: str = "notification",
) -> datetime:
    """
    Grant premium for the plan's duration starting at `now`.

    Returns:
        The new premium_expires_at

    Raises:
        InvalidPlanError: plan_id is not in the catalog
        NotFoundError: user does not exist
    """
    plan = get_plan(plan_id, catalog)
    if plan is None:
        raise InvalidPlanError(f"Unknown plan: {plan_id}")

    current = normalize_now(now)
    new_expiry = compute_expiry(plan, current)

    with session_scope(session) as s:
        result = s.execute(
            update(users)
            .where(users.c.user_id == user_id)
            .values(is_premium=True, premium_expires_at=new_expiry, updated_at=current)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"User not found: {user_id}")

    entitlement_grants_total.inc(labels={"plan_id": plan.plan_id, "source": source})
    logger.info(
        "[entitlements] premium extended",
        extra={
            "user_id": user_id,
            "plan_id": plan.plan_id,
            "premium_expires_at": new_expiry.isoformat(),
            "source": source,
        },
    )
    return new_expiry


def _is_stale(is_premium: bool, expires_at: Optional[datetime], now: datetime) -> bool:
    if expires_at is not None and expires_at <= now:
        return True
    return bool(is_premium) and expires_at is None


def check_and_correct_entitlement(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Entitlement:
    """
    Read a user's entitlement, clearing it first if it has lapsed.

    Called by the auth layer on every authenticated request; there is no
    background expiry sweep.

    Raises:
        NotFoundError: user does not exist
    """
    current = normalize_now(now)

    with session_scope(session) as s:
        for _ in range(_CORRECTION_ATTEMPTS):
            row = s.execute(
                select(users.c.is_premium, users.c.premium_expires_at)
                .where(users.c.user_id == user_id)
            ).first()
            if row is None:
                raise NotFoundError(f"User not found: {user_id}")

            expires_at = as_utc(row.premium_expires_at)
            if not _is_stale(row.is_premium, expires_at, current):
                return Entitlement(is_premium=bool(row.is_premium), premium_expires_at=expires_at)

            # Guard on the exact observed window; the raw driver value keeps
            # the comparison byte-for-byte with what is stored.
            observed = (
                users.c.premium_expires_at.is_(None)
                if row.premium_expires_at is None
                else users.c.premium_expires_at == row.premium_expires_at
            )
            result = s.execute(
                update(users)
                .where(users.c.user_id == user_id)
                .where(users.c.is_premium == row.is_premium)
                .where(observed)
                .values(is_premium=False, premium_expires_at=None, updated_at=current)
            )
            if result.rowcount == 1:
                entitlement_corrections_total.inc()
                logger.info(
                    "[entitlements] expired premium cleared",
                    extra={"user_id": user_id, "expired_at": expires_at.isoformat() if expires_at else None},
                )
                return Entitlement(is_premium=False, premium_expires_at=None)

            logger.info(
                "[entitlements] correction lost to concurrent write, re-reading",
                extra={"user_id": user_id},
            )

        # Row kept changing under us; report what is stored now, read-only.
        row = s.execute(
            select(users.c.is_premium, users.c.premium_expires_at)
            .where(users.c.user_id == user_id)
        ).first()
        if row is None:
            raise NotFoundError(f"User not found: {user_id}")
        expires_at = as_utc(row.premium_expires_at)
        if _is_stale(row.is_premium, expires_at, current):
            return Entitlement(is_premium=False, premium_expires_at=None)
        return Entitlement(is_premium=bool(row.is_premium), premium_expires_at=expires_at)

