"""
Tests for the payment transaction ledger.

Covers purchase creation, the status state machine and compare-and-set
behavior under a simulated concurrent writer.
"""
import re
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import pytest
from sqlalchemy import func, select

from melodia.core.database import get_db_session, payment_transactions
from melodia.core.errors import (
    AlreadyEntitledError,
    ForbiddenError,
    GatewayUnavailableError,
    InternalError,
    InvalidPlanError,
    UnknownOrderError,
)
from melodia.core.metrics import payment_transactions_created_total
from melodia.features.billing import ledger
from melodia.features.billing.provider import GatewayCustomer
from melodia.models.transaction import TransactionStatus as S


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _row_count() -> int:
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(payment_transactions)).scalar()


def test_generate_order_id_format_and_uniqueness():
    ids = {ledger.generate_order_id(NOW) for _ in range(50)}
    assert len(ids) == 50
    millis = int(NOW.timestamp() * 1000)
    for order_id in ids:
        assert re.match(rf"^ORD-{millis}-[0-9a-f]{{12}}$", order_id)


@pytest.mark.parametrize(
    "current,requested,expected",
    [
        (S.PENDING, S.SUCCESS, S.SUCCESS),
        (S.PENDING, S.CHALLENGE, S.CHALLENGE),
        (S.PENDING, S.FAILED, S.FAILED),
        (S.PENDING, S.PENDING, S.PENDING),
        (S.CHALLENGE, S.SUCCESS, S.SUCCESS),
        (S.CHALLENGE, S.FAILED, S.FAILED),
        (S.CHALLENGE, S.PENDING, S.CHALLENGE),
        (S.SUCCESS, S.CHALLENGE, S.SUCCESS),
        (S.SUCCESS, S.FAILED, S.SUCCESS),
        (S.SUCCESS, S.PENDING, S.SUCCESS),
        (S.FAILED, S.SUCCESS, S.FAILED),
        (S.FAILED, S.PENDING, S.FAILED),
    ],
)
def test_resolve_transition(current, requested, expected):
    assert ledger.resolve_transition(current, requested) == expected


def test_create_pending_records_plan_price_and_gateway_handles(make_user, provider, snap):
    make_user("alice")

    txn = ledger.create_pending(
        "alice",
        "monthly",
        provider=provider,
        customer=GatewayCustomer(first_name="alice"),
        now=NOW,
    )

    assert txn.status == S.PENDING
    assert txn.amount == 54990
    assert txn.plan_id == "monthly"
    assert txn.user_id == "alice"
    assert txn.gateway_token == "snap-token-1"
    assert txn.created_at == NOW
    assert snap.last_payload["transaction_details"]["order_id"] == txn.order_id
    assert payment_transactions_created_total.value({"plan_id": "monthly"}) == 1


def test_create_pending_generates_distinct_order_ids(make_user, provider):
    make_user("alice")

    first = ledger.create_pending("alice", "monthly", provider=provider, now=NOW)
    second = ledger.create_pending("alice", "yearly", provider=provider, now=NOW)

    assert first.order_id != second.order_id
    assert second.amount == 549900
    assert _row_count() == 2


def test_create_pending_rejects_unknown_plan(make_user, provider, snap):
    make_user("alice")

    with pytest.raises(InvalidPlanError):
        ledger.create_pending("alice", "lifetime", provider=provider, now=NOW)

    assert snap.requests == []
    assert _row_count() == 0


def test_create_pending_rejects_active_premium(make_user, provider, snap):
    make_user("alice", is_premium=True, premium_expires_at=NOW + timedelta(days=10))

    with pytest.raises(AlreadyEntitledError) as exc_info:
        ledger.create_pending("alice", "monthly", provider=provider, now=NOW)

    assert exc_info.value.status_code == 409
    assert snap.requests == []
    assert _row_count() == 0


def test_create_pending_allows_lapsed_premium(make_user, provider):
    make_user("alice", is_premium=True, premium_expires_at=NOW - timedelta(seconds=1))

    txn = ledger.create_pending("alice", "monthly", provider=provider, now=NOW)
    assert txn.status == S.PENDING


def test_gateway_failure_leaves_no_row(make_user, provider, snap):
    make_user("alice")
    snap.error = httpx.ConnectTimeout("timed out")

    with pytest.raises(GatewayUnavailableError):
        ledger.create_pending("alice", "monthly", provider=provider, now=NOW)

    assert _row_count() == 0
    assert payment_transactions_created_total.value({"plan_id": "monthly"}) == 0


def test_record_status_follows_state_machine(make_user, provider):
    make_user("alice")
    txn = ledger.create_pending("alice", "monthly", provider=provider, now=NOW)

    challenged = ledger.record_status(txn.order_id, S.CHALLENGE, now=NOW + timedelta(minutes=1))
    assert (challenged.previous, challenged.current) == (S.PENDING, S.CHALLENGE)
    assert not challenged.entered_success

    succeeded = ledger.record_status(txn.order_id, S.SUCCESS, "credit_card", now=NOW + timedelta(minutes=2))
    assert (succeeded.previous, succeeded.current) == (S.CHALLENGE, S.SUCCESS)
    assert succeeded.entered_success
    assert succeeded.transaction.payment_type == "credit_card"

    late_failure = ledger.record_status(txn.order_id, S.FAILED, now=NOW + timedelta(minutes=3))
    assert (late_failure.previous, late_failure.current) == (S.SUCCESS, S.SUCCESS)
    assert not late_failure.entered_success


def test_record_status_is_idempotent(make_user, provider):
    make_user("alice")
    txn = ledger.create_pending("alice", "monthly", provider=provider, now=NOW)

    first = ledger.record_status(txn.order_id, S.SUCCESS, "bank_transfer", now=NOW)
    second = ledger.record_status(txn.order_id, S.SUCCESS, now=NOW + timedelta(minutes=5))

    assert first.entered_success
    assert not second.entered_success
    assert second.transaction.status == S.SUCCESS
    # payment_type is kept when a later delivery omits it
    assert second.transaction.payment_type == "bank_transfer"
    assert second.transaction.updated_at == NOW + timedelta(minutes=5)


def test_failed_is_terminal(make_user, provider):
    make_user("alice")
    txn = ledger.create_pending("alice", "monthly", provider=provider, now=NOW)

    ledger.record_status(txn.order_id, S.FAILED, now=NOW)
    transition = ledger.record_status(txn.order_id, S.SUCCESS, now=NOW)

    assert transition.current == S.FAILED
    assert not transition.entered_success


def test_record_status_unknown_order():
    with pytest.raises(UnknownOrderError):
        ledger.record_status("ORD-missing", S.SUCCESS)


def test_compare_and_set_loser_sees_winner_status(make_user, provider, monkeypatch):
    """A delivery whose read predates another delivery's commit must not re-enter success."""
    make_user("alice")
    txn = ledger.create_pending("alice", "monthly", provider=provider, now=NOW)
    ledger.record_status(txn.order_id, S.SUCCESS, now=NOW)

    real_fetch = ledger._fetch
    calls = {"n": 0}

    def stale_first_read(session, order_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return SimpleNamespace(status=S.PENDING.value)
        return real_fetch(session, order_id)

    monkeypatch.setattr(ledger, "_fetch", stale_first_read)

    transition = ledger.record_status(txn.order_id, S.SUCCESS, now=NOW)

    assert transition.previous == S.SUCCESS
    assert transition.current == S.SUCCESS
    assert not transition.entered_success
    assert calls["n"] == 3


def test_compare_and_set_gives_up_after_bounded_retries(make_user, provider, monkeypatch):
    make_user("alice")
    txn = ledger.create_pending("alice", "monthly", provider=provider, now=NOW)
    ledger.record_status(txn.order_id, S.SUCCESS, now=NOW)

    monkeypatch.setattr(ledger, "_fetch", lambda session, order_id: SimpleNamespace(status=S.PENDING.value))

    with pytest.raises(InternalError):
        ledger.record_status(txn.order_id, S.SUCCESS, now=NOW)


def test_get_by_order_id_checks_owner(make_user, provider):
    make_user("alice")
    make_user("bob")
    txn = ledger.create_pending("alice", "monthly", provider=provider, now=NOW)

    assert ledger.get_by_order_id(txn.order_id, require_owner="alice").order_id == txn.order_id
    assert ledger.get_by_order_id(txn.order_id).user_id == "alice"
    with pytest.raises(ForbiddenError):
        ledger.get_by_order_id(txn.order_id, require_owner="bob")
    with pytest.raises(UnknownOrderError):
        ledger.get_by_order_id("ORD-missing", require_owner="alice")


def test_list_for_user_most_recent_first_and_limited(make_user, provider):
    make_user("alice")
    make_user("bob")
    created = [
        ledger.create_pending("alice", "monthly", provider=provider, now=NOW + timedelta(minutes=i))
        for i in range(3)
    ]
    ledger.create_pending("bob", "monthly", provider=provider, now=NOW)

    listed = ledger.list_for_user("alice")
    assert [t.order_id for t in listed] == [t.order_id for t in reversed(created)]

    limited = ledger.list_for_user("alice", limit=2)
    assert [t.order_id for t in limited] == [created[2].order_id, created[1].order_id]

    assert ledger.list_for_user("nobody") == []


def test_list_for_user_clamps_limit(make_user, provider, monkeypatch):
    from melodia.core.config import settings

    make_user("alice")
    for i in range(3):
        ledger.create_pending("alice", "monthly", provider=provider, now=NOW + timedelta(minutes=i))

    monkeypatch.setattr(settings, "TRANSACTIONS_MAX_LIMIT", 2)
    assert len(ledger.list_for_user("alice", limit=50)) == 2
    assert len(ledger.list_for_user("alice", limit=0)) == 1
