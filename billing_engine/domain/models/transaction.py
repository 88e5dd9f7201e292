"""Ledger entries recorded from gateway charge notifications."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class TransactionStatus(str, Enum):
    SUCCESSFUL = "successful"
    FAILED = "failed"


class TransactionKind(str, Enum):
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    ADJUSTMENT = "adjustment"


@dataclass(slots=True, frozen=True)
class Transaction:
    """
    One attempted charge. Never updated after creation.

    ``gateway_event_id`` is unique across the ledger and is the idempotency
    key for webhook redelivery.
    """

    id: str
    user_id: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    gateway_event_id: str
    created_at: datetime
    subscription_id: Optional[str] = None
    reference: Optional[str] = None
    kind: TransactionKind = TransactionKind.SUBSCRIPTION

    @property
    def is_successful(self) -> bool:
        return self.status is TransactionStatus.SUCCESSFUL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "gateway_event_id": self.gateway_event_id,
            "reference": self.reference,
            "kind": self.kind.value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class BillingAdjustment:
    """Prorated obligation recorded by a mid-cycle plan change.

    Positive ``amount`` is owed by the customer, negative is a credit. The
    charge itself is confirmed later through the webhook path under
    ``reference``.
    """

    id: str
    subscription_id: str
    from_plan_id: str
    to_plan_id: str
    amount: Decimal
    currency: str
    reference: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "from_plan_id": self.from_plan_id,
            "to_plan_id": self.to_plan_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "reference": self.reference,
            "created_at": self.created_at.isoformat(),
        }
