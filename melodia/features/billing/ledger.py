"""
Payment transaction ledger.

One row per purchase attempt, keyed by a locally generated order id. Rows
are inserted once (after the gateway has issued its handles), updated only
through record_status(), and never deleted.

Status changes use compare-and-set:

    UPDATE payment_transactions
    SET status = :target, ...
    WHERE order_id = :order_id AND status = :observed

so when two deliveries for the same order race, exactly one of them moves
the row out of the observed status; the loser re-reads and sees the
winner's status as its `previous`.
"""
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional
from uuid import uuid4
import logging

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from melodia.core.config import settings
from melodia.core.database import payment_transactions, session_scope
from melodia.core.errors import (
    AlreadyEntitledError,
    ForbiddenError,
    InternalError,
    InvalidPlanError,
    UnknownOrderError,
)
from melodia.core.metrics import payment_transactions_created_total
from melodia.core.timeutil import as_utc, normalize_now
from melodia.features.billing.provider import GatewayCustomer, GatewayItem, GatewayProvider
from melodia.features.entitlements.service import check_and_correct_entitlement
from melodia.features.plans.service import PlanCatalog, get_plan
from melodia.models.transaction import StatusTransition, Transaction, TransactionStatus


logger = logging.getLogger(__name__)

ORDER_ID_PREFIX = "ORD"

S = TransactionStatus

# success and failed are terminal; challenge can still resolve either way
ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    S.PENDING: frozenset({S.SUCCESS, S.CHALLENGE, S.FAILED}),
    S.CHALLENGE: frozenset({S.SUCCESS, S.FAILED}),
    S.SUCCESS: frozenset(),
    S.FAILED: frozenset(),
}

# Each successful CAS moves strictly forward, so the loop is bounded by the
# longest path through the state machine plus the final no-op write.
_MAX_CAS_ATTEMPTS = 4


def generate_order_id(now: Optional[datetime] = None) -> str:
    """Timestamp-prefixed random id: sortable by creation, no central sequence."""
    current = normalize_now(now)
    millis = int(current.timestamp() * 1000)
    return f"{ORDER_ID_PREFIX}-{millis}-{uuid4().hex[:12]}"


def resolve_transition(current: TransactionStatus, requested: TransactionStatus) -> TransactionStatus:
    """Status the row should end up in; disallowed requests keep the current status."""
    if requested in ALLOWED_TRANSITIONS[current]:
        return requested
    return current


def _row_to_transaction(row) -> Transaction:
    return Transaction(
        order_id=row.order_id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        amount=row.amount,
        status=TransactionStatus(row.status),
        payment_type=row.payment_type,
        gateway_token=row.gateway_token,
        gateway_redirect_url=row.gateway_redirect_url,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _fetch(session: Session, order_id: str):
    return session.execute(
        select(payment_transactions).where(payment_transactions.c.order_id == order_id)
    ).first()


def create_pending(
    user_id: str,
    plan_id: str,
    *,
    provider: GatewayProvider,
    customer: Optional[GatewayCustomer] = None,
    catalog: Optional[PlanCatalog] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """
    Create a pending transaction for a plan purchase.

    The gateway is called before anything is written, and the row is
    inserted in one statement with the gateway handles, so readers never
    see a half-initialized transaction and a gateway failure leaves nothing
    behind.

    Raises:
        InvalidPlanError: plan_id is not in the catalog
        AlreadyEntitledError: the user's premium window is still active
        GatewayUnavailableError: the gateway call failed (nothing persisted)
    """
    plan = get_plan(plan_id, catalog)
    if plan is None:
        raise InvalidPlanError("Invalid plan selected")

    current = normalize_now(now)
    entitlement = check_and_correct_entitlement(user_id, now=current)
    if entitlement.is_premium:
        raise AlreadyEntitledError("You already have an active premium subscription")

    order_id = generate_order_id(current)
    checkout = provider.create_transaction(
        order_id=order_id,
        amount=plan.price_minor_units,
        item=GatewayItem(item_id=plan.plan_id, name=plan.display_name, price=plan.price_minor_units),
        customer=customer or GatewayCustomer(),
    )

    with session_scope() as session:
        session.execute(
            insert(payment_transactions).values(
                order_id=order_id,
                user_id=user_id,
                plan_id=plan.plan_id,
                amount=plan.price_minor_units,
                status=TransactionStatus.PENDING.value,
                payment_type=None,
                gateway_token=checkout.token,
                gateway_redirect_url=checkout.redirect_url,
                created_at=current,
                updated_at=current,
            )
        )
        row = _fetch(session, order_id)

    payment_transactions_created_total.inc(labels={"plan_id": plan.plan_id})
    logger.info(
        "[ledger] pending transaction created",
        extra={"order_id": order_id, "user_id": user_id, "plan_id": plan.plan_id, "amount": plan.price_minor_units},
    )
    return _row_to_transaction(row)


def record_status(
    order_id: str,
    status: TransactionStatus,
    payment_type: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> StatusTransition:
    """
    Move a transaction toward `status`, honoring the state machine.

    Re-applying the current status (or requesting a transition the state
    machine does not allow) only refreshes updated_at and, when given,
    payment_type.

    Returns:
        StatusTransition with the status before and after this call

    Raises:
        UnknownOrderError: no such order_id
    """
    requested = TransactionStatus(status)
    current_time = normalize_now(now)

    with session_scope(session) as s:
        for _ in range(_MAX_CAS_ATTEMPTS):
            row = _fetch(s, order_id)
            if row is None:
                raise UnknownOrderError(f"Transaction not found: {order_id}")

            observed = TransactionStatus(row.status)
            target = resolve_transition(observed, requested)
            if target != requested:
                logger.info(
                    "[ledger] transition ignored",
                    extra={"order_id": order_id, "from": observed.value, "requested": requested.value},
                )

            values = {"status": target.value, "updated_at": current_time}
            if payment_type:
                values["payment_type"] = payment_type

            result = s.execute(
                update(payment_transactions)
                .where(payment_transactions.c.order_id == order_id)
                .where(payment_transactions.c.status == observed.value)
                .values(**values)
            )
            if result.rowcount == 1:
                return StatusTransition(
                    previous=observed,
                    current=target,
                    transaction=_row_to_transaction(_fetch(s, order_id)),
                )

            logger.info(
                "[ledger] status changed concurrently, retrying",
                extra={"order_id": order_id, "observed": observed.value},
            )

    raise InternalError(f"Could not record status for {order_id}: too much contention")


def get_by_order_id(order_id: str, require_owner: Optional[str] = None) -> Transaction:
    """
    Raises:
        UnknownOrderError: no such order_id
        ForbiddenError: require_owner given and does not own the transaction
    """
    with session_scope() as session:
        row = _fetch(session, order_id)
    if row is None:
        raise UnknownOrderError("Transaction not found")
    if require_owner is not None and row.user_id != require_owner:
        raise ForbiddenError("Transaction belongs to another user")
    return _row_to_transaction(row)


def list_for_user(user_id: str, limit: Optional[int] = None) -> List[Transaction]:
    """Most recent first."""
    page = limit if limit is not None else settings.TRANSACTIONS_PAGE_LIMIT
    page = max(1, min(page, settings.TRANSACTIONS_MAX_LIMIT))
    with session_scope() as session:
        rows = session.execute(
            select(payment_transactions)
            .where(payment_transactions.c.user_id == user_id)
            .order_by(payment_transactions.c.created_at.desc(), payment_transactions.c.id.desc())
            .limit(page)
        ).fetchall()
    return [_row_to_transaction(row) for row in rows]
