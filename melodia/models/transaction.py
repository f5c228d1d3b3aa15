"""
melodia/models/transaction.py

Payment ledger models.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class TransactionStatus(str, Enum):
    """Local transaction status."""
    PENDING = "pending"
    SUCCESS = "success"
    CHALLENGE = "challenge"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.SUCCESS, TransactionStatus.FAILED)


class Transaction(BaseModel):
    """One purchase attempt, keyed by a locally generated order id."""
    model_config = ConfigDict(frozen=True)

    order_id: str
    user_id: str
    plan_id: str
    amount: int
    status: TransactionStatus
    payment_type: Optional[str] = None
    gateway_token: Optional[str] = None
    gateway_redirect_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def summary(self) -> dict:
        """Client-facing view (no gateway handles)."""
        return {
            "order_id": self.order_id,
            "amount": self.amount,
            "status": self.status.value,
            "plan_type": self.plan_id,
            "payment_type": self.payment_type,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class StatusTransition:
    """Result of recording a status: the status before the call and after it."""
    previous: TransactionStatus
    current: TransactionStatus
    transaction: Transaction

    @property
    def entered_success(self) -> bool:
        return (
            self.previous != TransactionStatus.SUCCESS
            and self.current == TransactionStatus.SUCCESS
        )
