"""
Billing service orchestrator.

Coordinates:
- Purchase start (ledger + gateway)
- Gateway notification processing (idempotent)
- Non-production payment simulation
- Ledger reads for the owner

All Midtrans-specific code is in midtrans_provider.py.

Exactly-once entitlement comes from the ledger itself: the grant runs only
when record_status() reports a transition from something other than
success into success, and the status write and the grant share one
database transaction. Duplicate or late notifications find the order
already in success and leave the premium window alone.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional
import logging

from melodia.core.config import is_production, settings
from melodia.core.database import get_db_session
from melodia.core.errors import (
    AppError,
    BillingDisabledError,
    ForbiddenError,
    InternalError,
    MalformedNotificationError,
    UnknownOrderError,
)
from melodia.core.logging import log_event
from melodia.core.metrics import payment_notifications_total
from melodia.core.timeutil import normalize_now
from melodia.features.billing import ledger
from melodia.features.billing.midtrans_provider import MidtransProvider
from melodia.features.billing.provider import GatewayCustomer, GatewayProvider
from melodia.features.entitlements.service import extend_entitlement
from melodia.features.plans.service import PlanCatalog, list_plans as catalog_plans
from melodia.features.users.service import get_user
from melodia.models.plan import Plan
from melodia.models.transaction import StatusTransition, Transaction, TransactionStatus


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationOutcome:
    """What happened to one notification (or simulation)."""
    acknowledged: bool
    order_id: Optional[str] = None
    previous_status: Optional[TransactionStatus] = None
    status: Optional[TransactionStatus] = None
    entitlement_applied: bool = False
    premium_expires_at: Optional[datetime] = None
    reason: Optional[str] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Midtrans configured)."""
    return bool(settings.MIDTRANS_SERVER_KEY)


def get_provider() -> Optional[GatewayProvider]:
    """Get gateway provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return MidtransProvider()
    except BillingDisabledError:
        return None


def _require_provider(provider: Optional[GatewayProvider]) -> GatewayProvider:
    resolved = provider or get_provider()
    if resolved is None:
        raise BillingDisabledError("Payment gateway is not configured. Set MIDTRANS_SERVER_KEY.")
    return resolved


def list_plans(catalog: Optional[PlanCatalog] = None) -> List[Plan]:
    return catalog_plans(catalog)


def start_purchase(
    user_id: str,
    plan_id: str,
    *,
    provider: Optional[GatewayProvider] = None,
    catalog: Optional[PlanCatalog] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """
    Start a premium purchase.

    Returns:
        The pending transaction, carrying the gateway token and redirect URL

    Raises:
        BillingDisabledError: no gateway configured
        InvalidPlanError, AlreadyEntitledError, GatewayUnavailableError
    """
    gateway = _require_provider(provider)
    user = get_user(user_id)
    customer = GatewayCustomer(
        first_name=(user.username or user.display_name) if user else None,
        email=user.email if user else None,
    )
    return ledger.create_pending(
        user_id,
        plan_id,
        provider=gateway,
        customer=customer,
        catalog=catalog,
        now=now,
    )


def _apply_status(
    order_id: str,
    status: TransactionStatus,
    payment_type: Optional[str],
    *,
    catalog: Optional[PlanCatalog],
    now: datetime,
    source: str,
) -> NotificationOutcome:
    """Record the status and, on first entry into success, grant premium; one DB transaction."""
    premium_expires_at = None
    with get_db_session() as session:
        transition: StatusTransition = ledger.record_status(
            order_id, status, payment_type, now=now, session=session
        )
        if transition.entered_success:
            txn = transition.transaction
            try:
                premium_expires_at = extend_entitlement(
                    txn.user_id,
                    txn.plan_id,
                    catalog=catalog,
                    now=now,
                    session=session,
                    source=source,
                )
            except AppError as e:
                # Order no longer matches the catalog or user table
                raise InternalError(f"Could not grant premium for {order_id}: {e.message}") from e

    return NotificationOutcome(
        acknowledged=True,
        order_id=order_id,
        previous_status=transition.previous,
        status=transition.current,
        entitlement_applied=transition.entered_success,
        premium_expires_at=premium_expires_at,
        reason="applied" if transition.previous != transition.current else "no_change",
    )


def process_notification(
    payload: Any,
    *,
    provider: Optional[GatewayProvider] = None,
    catalog: Optional[PlanCatalog] = None,
    now: Optional[datetime] = None,
) -> NotificationOutcome:
    """
    Process a gateway notification (idempotent, order-tolerant).

    1. Parse (malformed -> acknowledge, no action)
    2. Verify signature (invalid -> NotificationSignatureError)
    3. Look up the order (unknown -> acknowledge, no action)
    4. Record status; grant premium on first entry into success

    Raises:
        BillingDisabledError: no gateway configured
        NotificationSignatureError: signature check failed
        Anything else is an internal failure the gateway should retry.
    """
    gateway = _require_provider(provider)
    current = normalize_now(now)

    try:
        notification = gateway.parse_notification(payload)
    except MalformedNotificationError as e:
        payment_notifications_total.inc(labels={"outcome": "malformed"})
        log_event(
            "warning",
            "payment.notification.malformed",
            event_type="payment.notification",
            error_code=e.code,
            extra={"reason": e.message},
        )
        return NotificationOutcome(acknowledged=True, reason="malformed")

    gateway.verify_notification(payload)

    try:
        ledger.get_by_order_id(notification.order_id)
    except UnknownOrderError:
        payment_notifications_total.inc(labels={"outcome": "unknown_order"})
        log_event(
            "warning",
            "payment.notification.unknown_order",
            order_id=notification.order_id,
            event_type="payment.notification",
            error_code=UnknownOrderError.code,
            extra={"gateway_status": notification.gateway_status},
        )
        return NotificationOutcome(acknowledged=True, order_id=notification.order_id, reason="unknown_order")

    outcome = _apply_status(
        notification.order_id,
        notification.local_status,
        notification.payment_type,
        catalog=catalog,
        now=current,
        source="notification",
    )

    payment_notifications_total.inc(labels={"outcome": outcome.reason})
    log_event(
        "info",
        "payment.notification.processed",
        order_id=notification.order_id,
        event_type="payment.notification",
        extra={
            "gateway_status": notification.gateway_status,
            "fraud_status": notification.fraud_status,
            "previous_status": outcome.previous_status.value,
            "status": outcome.status.value,
            "entitlement_applied": outcome.entitlement_applied,
        },
    )
    return outcome


def simulate_success(
    order_id: str,
    requesting_user_id: str,
    *,
    catalog: Optional[PlanCatalog] = None,
    now: Optional[datetime] = None,
) -> NotificationOutcome:
    """
    Force a transaction to success without the gateway (non-production only).

    Obeys the same state machine and exactly-once grant as real notifications.

    Raises:
        ForbiddenError: production deployment, or caller does not own the order
        UnknownOrderError: no such order_id
    """
    if is_production():
        raise ForbiddenError("Not available in production")

    ledger.get_by_order_id(order_id, require_owner=requesting_user_id)
    outcome = _apply_status(
        order_id,
        TransactionStatus.SUCCESS,
        None,
        catalog=catalog,
        now=normalize_now(now),
        source="simulation",
    )
    log_event(
        "info",
        "payment.simulated",
        user_id=requesting_user_id,
        order_id=order_id,
        event_type="payment.simulation",
        extra={"status": outcome.status.value, "entitlement_applied": outcome.entitlement_applied},
    )
    return outcome


def get_transaction_status(order_id: str, user_id: str) -> Transaction:
    return ledger.get_by_order_id(order_id, require_owner=user_id)


def list_transactions(user_id: str, limit: Optional[int] = None) -> List[Transaction]:
    return ledger.list_for_user(user_id, limit)
