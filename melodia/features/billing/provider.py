"""
Payment gateway provider protocol.

Defines the interface for payment gateways (Midtrans Snap, etc.) and the
normalized shapes the rest of the billing code works with. Gateway
vocabulary stops here: everything past parse_notification() only sees
GatewayNotification and TransactionStatus.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass

from melodia.models.transaction import TransactionStatus


@dataclass(frozen=True)
class GatewayItem:
    """Line item sent to the gateway (one plan per purchase)."""
    item_id: str
    name: str
    price: int
    quantity: int = 1


@dataclass(frozen=True)
class GatewayCustomer:
    first_name: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class GatewayCheckout:
    """Handles the client needs to complete payment at the gateway."""
    token: str
    redirect_url: str


@dataclass(frozen=True)
class GatewayNotification:
    """Normalized asynchronous callback from the gateway."""
    order_id: str
    gateway_status: str
    fraud_status: Optional[str]
    payment_type: Optional[str]

    @property
    def local_status(self) -> TransactionStatus:
        return map_gateway_status(self.gateway_status, self.fraud_status)


_FAILED_STATUSES = frozenset({"cancel", "deny", "expire"})


def map_gateway_status(transaction_status: Optional[str], fraud_status: Optional[str]) -> TransactionStatus:
    """
    Map gateway transaction/fraud status to the local status.

    capture + accept        -> success
    capture + anything else -> challenge
    settlement              -> success
    cancel / deny / expire  -> failed
    anything else           -> pending
    """
    if transaction_status == "capture":
        if fraud_status == "accept":
            return TransactionStatus.SUCCESS
        return TransactionStatus.CHALLENGE
    if transaction_status == "settlement":
        return TransactionStatus.SUCCESS
    if transaction_status in _FAILED_STATUSES:
        return TransactionStatus.FAILED
    return TransactionStatus.PENDING


class GatewayProvider(Protocol):
    """
    Protocol for payment gateways.

    Implementations must handle:
    - Payable transaction creation
    - Notification authenticity check
    - Notification parsing
    """

    def create_transaction(
        self,
        order_id: str,
        amount: int,
        item: GatewayItem,
        customer: GatewayCustomer,
    ) -> GatewayCheckout:
        """
        Create a payable transaction at the gateway.

        Raises:
            GatewayUnavailableError: network error, timeout or gateway rejection
        """
        ...

    def verify_notification(self, payload: Dict[str, Any]) -> None:
        """
        Check the notification's shared-secret signature.

        Raises:
            NotificationSignatureError: signature missing or wrong
        """
        ...

    def parse_notification(self, payload: Any) -> GatewayNotification:
        """
        Parse a raw callback body.

        Raises:
            MalformedNotificationError: required fields absent
        """
        ...
