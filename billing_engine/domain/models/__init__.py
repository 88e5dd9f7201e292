"""Domain models for the billing engine."""

from .plan import Plan
from .subscription import (
    BillingPeriod,
    Subscription,
    SubscriptionStatus,
    add_billing_period,
    utcnow,
)
from .transaction import BillingAdjustment, Transaction, TransactionKind, TransactionStatus
from .user import User

__all__ = [
    "BillingAdjustment",
    "BillingPeriod",
    "Plan",
    "Subscription",
    "SubscriptionStatus",
    "Transaction",
    "TransactionKind",
    "TransactionStatus",
    "User",
    "add_billing_period",
    "utcnow",
]
