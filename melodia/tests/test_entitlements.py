"""Tests for premium entitlement extension and self-healing reads."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from melodia.core.database import get_db_session, users
from melodia.core.errors import InvalidPlanError, NotFoundError
from melodia.core.metrics import entitlement_corrections_total, entitlement_grants_total
from melodia.core.timeutil import as_utc
from melodia.features.entitlements import service as entitlements
from melodia.features.plans.service import PlanCatalog


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _stored(user_id):
    with get_db_session() as session:
        row = session.execute(
            select(users.c.is_premium, users.c.premium_expires_at).where(users.c.user_id == user_id)
        ).first()
    return bool(row.is_premium), as_utc(row.premium_expires_at)


def test_extend_entitlement_grants_plan_duration(make_user):
    make_user("alice")

    expires_at = entitlements.extend_entitlement("alice", "monthly", now=NOW)

    assert expires_at == NOW + timedelta(days=30)
    assert _stored("alice") == (True, NOW + timedelta(days=30))
    assert entitlement_grants_total.value({"plan_id": "monthly", "source": "notification"}) == 1


def test_extend_entitlement_restarts_window_from_now(make_user):
    make_user("alice", is_premium=True, premium_expires_at=NOW + timedelta(days=20))

    expires_at = entitlements.extend_entitlement("alice", "yearly", now=NOW)

    assert expires_at == NOW + timedelta(days=365)


def test_extend_entitlement_uses_supplied_catalog(make_user):
    make_user("alice")
    catalog = PlanCatalog.from_config({
        "weekly": {"display_name": "Premium Weekly", "price_minor_units": 15000, "entitlement_days": 7},
    })

    assert entitlements.extend_entitlement("alice", "weekly", catalog=catalog, now=NOW) == NOW + timedelta(days=7)
    with pytest.raises(InvalidPlanError):
        entitlements.extend_entitlement("alice", "monthly", catalog=catalog, now=NOW)


def test_extend_entitlement_unknown_user():
    with pytest.raises(NotFoundError):
        entitlements.extend_entitlement("ghost", "monthly", now=NOW)


def test_active_entitlement_is_left_alone(make_user):
    make_user("alice", is_premium=True, premium_expires_at=NOW + timedelta(seconds=1))

    entitlement = entitlements.check_and_correct_entitlement("alice", now=NOW)

    assert entitlement.is_premium is True
    assert entitlement.premium_expires_at == NOW + timedelta(seconds=1)
    assert entitlement_corrections_total.value() == 0


def test_expired_entitlement_is_cleared_on_read(make_user):
    make_user("alice", is_premium=True, premium_expires_at=NOW - timedelta(seconds=1))

    entitlement = entitlements.check_and_correct_entitlement("alice", now=NOW)

    assert entitlement.is_premium is False
    assert entitlement.premium_expires_at is None
    assert _stored("alice") == (False, None)
    assert entitlement_corrections_total.value() == 1


def test_expiry_boundary_counts_as_expired(make_user):
    make_user("alice", is_premium=True, premium_expires_at=NOW)

    assert entitlements.check_and_correct_entitlement("alice", now=NOW).is_premium is False


def test_premium_without_expiry_is_cleared(make_user):
    make_user("alice", is_premium=True, premium_expires_at=None)

    assert entitlements.check_and_correct_entitlement("alice", now=NOW).is_premium is False
    assert _stored("alice") == (False, None)


def test_free_user_is_not_rewritten(make_user):
    make_user("alice")

    entitlement = entitlements.check_and_correct_entitlement("alice", now=NOW)

    assert entitlement.is_premium is False
    assert entitlement_corrections_total.value() == 0


def test_check_unknown_user():
    with pytest.raises(NotFoundError):
        entitlements.check_and_correct_entitlement("ghost", now=NOW)


def test_correction_does_not_clobber_concurrent_grant(make_user, monkeypatch):
    """A grant landing between the correction's read and write survives."""
    make_user("alice", is_premium=True, premium_expires_at=NOW - timedelta(days=1))

    real_is_stale = entitlements._is_stale
    state = {"granted": False}

    def grant_then_check(is_premium, expires_at, now):
        if not state["granted"]:
            state["granted"] = True
            entitlements.extend_entitlement("alice", "monthly", now=NOW)
        return real_is_stale(is_premium, expires_at, now)

    monkeypatch.setattr(entitlements, "_is_stale", grant_then_check)

    entitlement = entitlements.check_and_correct_entitlement("alice", now=NOW)

    assert entitlement.is_premium is True
    assert entitlement.premium_expires_at == NOW + timedelta(days=30)
    assert _stored("alice") == (True, NOW + timedelta(days=30))
    assert entitlement_corrections_total.value() == 0

