"""
Payment API routes.

Surface:
- GET  /api/payment/plans: List premium plans
- POST /api/payment/create-transaction: Start a purchase at the gateway
- POST /api/payment/notification: Midtrans notification webhook
- GET  /api/payment/status/{order_id}: Owner's view of one transaction
- GET  /api/payment/transactions: Caller's ledger, most recent first
- POST /api/payment/simulate-success/{order_id}: Non-production payment simulation
"""
import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import AliasChoices, BaseModel, Field

from melodia.core.auth import AuthenticatedUser, get_current_user
from melodia.features.billing.service import (
    list_plans,
    start_purchase,
    process_notification,
    simulate_success,
    get_transaction_status,
    list_transactions,
)
from melodia.features.entitlements.service import check_and_correct_entitlement

router = APIRouter(prefix="/payment", tags=["payment"])


class CreateTransactionRequest(BaseModel):
    """Request to start a plan purchase (accepts the legacy planId key)."""
    plan_id: str = Field(validation_alias=AliasChoices("plan_id", "planId"))


class CreateTransactionResponse(BaseModel):
    """Gateway handles for completing payment."""
    success: bool = True
    token: str
    redirect_url: str
    order_id: str


@router.get("/plans")
def get_plans():
    """Public plan listing."""
    return {
        "success": True,
        "plans": [
            {
                "id": plan.plan_id,
                "name": plan.display_name,
                "price": plan.price_minor_units,
                "duration": plan.entitlement_days,
            }
            for plan in list_plans()
        ],
    }


@router.post("/create-transaction", response_model=CreateTransactionResponse)
def create_transaction(
    request: CreateTransactionRequest,
    current: AuthenticatedUser = Depends(get_current_user),
):
    """
    Create a pending transaction and a Snap payment page.

    Errors:
        400: Invalid plan
        409: Premium already active
        503: Gateway unavailable (retry) or billing disabled
    """
    txn = start_purchase(current.user_id, request.plan_id)
    return {
        "success": True,
        "token": txn.gateway_token,
        "redirect_url": txn.gateway_redirect_url,
        "order_id": txn.order_id,
    }


@router.post("/notification")
async def handle_notification(request: Request):
    """
    Handle Midtrans payment notifications.

    Acknowledges (200) everything that is permanently unprocessable
    (unparseable bodies, unknown orders) so the gateway stops redelivering.
    401 on a bad signature; 500 on internal failure so the gateway retries.
    """
    body = await request.body()
    try:
        payload = json.loads(body) if body else None
    except (ValueError, UnicodeDecodeError):
        payload = None

    outcome = process_notification(payload)
    return {"message": "OK", "order_id": outcome.order_id, "status": outcome.status.value if outcome.status else None}


@router.get("/status/{order_id}")
def get_status(order_id: str, current: AuthenticatedUser = Depends(get_current_user)):
    """Owner-only transaction summary."""
    txn = get_transaction_status(order_id, current.user_id)
    return {"success": True, "transaction": txn.summary()}


@router.get("/transactions")
def get_transactions(
    limit: Optional[int] = Query(None, ge=1),
    current: AuthenticatedUser = Depends(get_current_user),
):
    """Caller's transactions, most recent first."""
    transactions = list_transactions(current.user_id, limit)
    return {"success": True, "transactions": [txn.summary() for txn in transactions]}


@router.post("/simulate-success/{order_id}")
def post_simulate_success(order_id: str, current: AuthenticatedUser = Depends(get_current_user)):
    """Force a transaction to success (disabled in production)."""
    outcome = simulate_success(order_id, current.user_id)
    expires_at = outcome.premium_expires_at
    if expires_at is None:
        expires_at = check_and_correct_entitlement(current.user_id).premium_expires_at
    return {
        "success": True,
        "message": "Payment simulated successfully",
        "status": outcome.status.value,
        "premium_expires_at": expires_at.isoformat() if expires_at else None,
    }
