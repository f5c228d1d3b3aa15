"""
Midtrans Snap payment provider.

Implements GatewayProvider over the Snap REST API with httpx.
Handles transaction creation, notification signature checks and parsing.
"""
import hashlib
import hmac
import logging
from contextlib import contextmanager
from typing import Dict, Any, Iterator, Optional

import httpx

from melodia.core.config import settings
from melodia.core.errors import (
    BillingDisabledError,
    GatewayUnavailableError,
    MalformedNotificationError,
    NotificationSignatureError,
)
from melodia.features.billing.provider import (
    GatewayCheckout,
    GatewayCustomer,
    GatewayItem,
    GatewayNotification,
)


logger = logging.getLogger(__name__)

SNAP_SANDBOX_URL = "https://app.sandbox.midtrans.com/snap/v1/transactions"
SNAP_PRODUCTION_URL = "https://app.midtrans.com/snap/v1/transactions"

_REQUIRED_NOTIFICATION_FIELDS = ("order_id", "transaction_status")


def notification_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """Midtrans signature_key: sha512(order_id + status_code + gross_amount + server_key)."""
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


class MidtransProvider:
    """Midtrans Snap implementation of GatewayProvider protocol."""

    def __init__(
        self,
        server_key: Optional[str] = None,
        *,
        is_production: Optional[bool] = None,
        timeout: Optional[float] = None,
        finish_url_base: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        """
        Initialize Midtrans provider.

        Args:
            server_key: Midtrans server key (defaults to MIDTRANS_SERVER_KEY setting)
            is_production: Use the production Snap endpoint (defaults to MIDTRANS_IS_PRODUCTION)
            timeout: Seconds before a Snap call counts as unavailable (defaults to GATEWAY_TIMEOUT_SECONDS)
            finish_url_base: Base of the post-payment redirect (defaults to APP_URL)
            client: Preconfigured httpx client, owned by the caller (tests inject a MockTransport here)
        """
        self.server_key = server_key or settings.MIDTRANS_SERVER_KEY
        if not self.server_key:
            raise BillingDisabledError("MIDTRANS_SERVER_KEY not configured")

        self.is_production = settings.MIDTRANS_IS_PRODUCTION if is_production is None else is_production
        self.timeout = timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS
        self.finish_url_base = (finish_url_base or settings.APP_URL).rstrip("/")
        self.snap_url = SNAP_PRODUCTION_URL if self.is_production else SNAP_SANDBOX_URL
        self._client = client

    @contextmanager
    def _http(self) -> Iterator[httpx.Client]:
        """Injected client as-is; otherwise a client scoped to this one call."""
        if self._client is not None:
            yield self._client
            return
        with httpx.Client(timeout=self.timeout) as client:
            yield client

    def close(self) -> None:
        """Close an injected client."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def _build_payload(
        self,
        order_id: str,
        amount: int,
        item: GatewayItem,
        customer: GatewayCustomer,
    ) -> Dict[str, Any]:
        customer_details: Dict[str, Any] = {}
        if customer.first_name:
            customer_details["first_name"] = customer.first_name
        if customer.email:
            customer_details["email"] = customer.email

        return {
            "transaction_details": {"order_id": order_id, "gross_amount": amount},
            "item_details": [
                {
                    "id": item.item_id,
                    "price": item.price,
                    "quantity": item.quantity,
                    "name": item.name,
                }
            ],
            "customer_details": customer_details,
            "callbacks": {
                "finish": f"{self.finish_url_base}/payment-success?order_id={order_id}",
            },
        }

    def create_transaction(
        self,
        order_id: str,
        amount: int,
        item: GatewayItem,
        customer: GatewayCustomer,
    ) -> GatewayCheckout:
        """Create a Snap transaction; any failure is GatewayUnavailableError."""
        payload = self._build_payload(order_id, amount, item, customer)
        try:
            with self._http() as client:
                response = client.post(
                    self.snap_url,
                    json=payload,
                    auth=(self.server_key, ""),
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            logger.warning(
                "[midtrans] snap request failed",
                extra={"order_id": order_id, "error": type(e).__name__},
            )
            raise GatewayUnavailableError("Payment gateway unavailable, please try again") from e

        if response.status_code >= 400:
            logger.warning(
                "[midtrans] snap rejected transaction",
                extra={"order_id": order_id, "status": response.status_code},
            )
            raise GatewayUnavailableError(
                f"Payment gateway rejected the request (HTTP {response.status_code}), please try again"
            )

        try:
            body = response.json()
            return GatewayCheckout(token=body["token"], redirect_url=body["redirect_url"])
        except (ValueError, KeyError, TypeError) as e:
            raise GatewayUnavailableError("Payment gateway returned an unexpected response") from e

    def verify_notification(self, payload: Dict[str, Any]) -> None:
        """Verify Midtrans signature_key against the server key."""
        signature = payload.get("signature_key")
        if not signature:
            raise NotificationSignatureError("Missing signature_key")

        expected = notification_signature(
            str(payload.get("order_id", "")),
            str(payload.get("status_code", "")),
            str(payload.get("gross_amount", "")),
            self.server_key,
        )
        if not hmac.compare_digest(str(signature), expected):
            raise NotificationSignatureError("Invalid notification signature")

    def parse_notification(self, payload: Any) -> GatewayNotification:
        """Parse Midtrans notification into normalized GatewayNotification."""
        if not isinstance(payload, dict):
            raise MalformedNotificationError("Notification body must be a JSON object")

        missing = [field for field in _REQUIRED_NOTIFICATION_FIELDS if not payload.get(field)]
        if missing:
            raise MalformedNotificationError(f"Missing required fields: {', '.join(missing)}")

        return GatewayNotification(
            order_id=str(payload["order_id"]),
            gateway_status=str(payload["transaction_status"]),
            fraud_status=payload.get("fraud_status"),
            payment_type=payload.get("payment_type"),
        )
