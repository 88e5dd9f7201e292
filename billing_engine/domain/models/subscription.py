"""Subscription domain model linking users to billing plans."""

from __future__ import annotations

import calendar
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from ..exceptions import ValidationError


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"

    @classmethod
    def parse(cls, value: Any) -> "BillingPeriod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Unsupported billing period: {value!r}") from exc


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_billing_period(moment: datetime, period: BillingPeriod) -> datetime:
    """Advance ``moment`` by one calendar month or year.

    The day of month is clamped, so Jan 31 + 1 month is the last day of
    February and Feb 29 + 1 year is Feb 28.
    """
    months = 1 if BillingPeriod.parse(period) is BillingPeriod.MONTHLY else 12
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


@dataclass(slots=True, frozen=True)
class Subscription:
    """
    Billing relationship between one user and one plan.

    Instances are immutable; every change produces a new value through
    ``dataclasses.replace`` and is persisted with a compare-and-swap on
    ``version``.

    Attributes:
        id: Unique identifier
        user_id: Reference to User
        plan_id: Reference to Plan
        billing_period: monthly or annual
        status: pending, active, cancelled or expired
        current_period_start: Start of current billing period
        current_period_end: End of current billing period
        cancel_at_period_end: Whether the scheduler cancels at period end
        cancelled_at: When the subscription reached ``cancelled``
        cancellation_reason: Free text supplied with the cancel request
        external_subscription_id: Gateway-side correlation key
        renewal_reference: tx_ref of the outstanding renewal charge intent
        renewal_requested_at: When that intent was emitted
        renewal_attempts: Intents emitted for the current period
        version: Compare-and-swap token, bumped on every write
    """

    id: str
    user_id: str
    plan_id: str
    billing_period: BillingPeriod
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    external_subscription_id: Optional[str] = None
    renewal_reference: Optional[str] = None
    renewal_requested_at: Optional[datetime] = None
    renewal_attempts: int = 0
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not isinstance(self.status, SubscriptionStatus):
            object.__setattr__(self, "status", SubscriptionStatus(self.status))
        if not isinstance(self.billing_period, BillingPeriod):
            object.__setattr__(self, "billing_period", BillingPeriod.parse(self.billing_period))
        if self.current_period_end <= self.current_period_start:
            raise ValidationError(
                f"Subscription {self.id}: current_period_end must be after current_period_start"
            )
        if self.cancel_at_period_end and self.status is not SubscriptionStatus.ACTIVE:
            raise ValidationError(
                f"Subscription {self.id}: cancel_at_period_end requires an active subscription"
            )

    @property
    def is_active(self) -> bool:
        return self.status is SubscriptionStatus.ACTIVE

    def is_due(self, now: datetime) -> bool:
        return self.is_active and self.current_period_end <= now

    def with_confirmed_payment(self, now: datetime) -> "Subscription":
        """Apply a confirmed charge.

        Pending and expired subscriptions start a fresh period at ``now``; an
        active one is extended by one period from ``max(now, current_period_end)``.
        Outstanding renewal bookkeeping is cleared either way.
        """
        if self.status is SubscriptionStatus.ACTIVE:
            start = max(now, self.current_period_end)
        else:
            start = now
        return replace(
            self,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=start,
            current_period_end=add_billing_period(start, self.billing_period),
            renewal_reference=None,
            renewal_requested_at=None,
            renewal_attempts=0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "billing_period": self.billing_period.value,
            "status": self.status.value,
            "is_active": self.is_active,
            "cancel_at_period_end": self.cancel_at_period_end,
            "cancelled_at": _iso(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
            "external_subscription_id": self.external_subscription_id,
            "renewal_reference": self.renewal_reference,
            "renewal_requested_at": _iso(self.renewal_requested_at),
            "renewal_attempts": self.renewal_attempts,
            "version": self.version,
        }

    def __repr__(self) -> str:
        return (
            f"<Subscription id={self.id} user_id={self.user_id} "
            f"status={self.status.value} version={self.version}>"
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
