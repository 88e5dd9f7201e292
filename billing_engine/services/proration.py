"""Mid-cycle plan change arithmetic."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict

from ..domain.exceptions import InvalidPeriodError
from ..domain.models import BillingPeriod

CENTS = Decimal("0.01")
_ONE_DAY = timedelta(days=1)


@dataclass(slots=True, frozen=True)
class ProrationResult:
    """Outcome of a proration.

    Attributes:
        amount: Signed net amount; positive is owed, negative is a credit
        is_upgrade: Whether the new plan is more expensive
        unused_credit: Unused value of the current plan for the remainder
        new_charge: Value of the new plan for the remainder
        remaining_ratio: Fraction of the period still to run, in [0, 1]
        days_remaining: Remaining time in days, second resolution
        total_days: Length of the period in days
    """

    amount: Decimal
    is_upgrade: bool
    unused_credit: Decimal
    new_charge: Decimal
    remaining_ratio: Decimal
    days_remaining: Decimal
    total_days: Decimal

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": str(self.amount),
            "is_upgrade": self.is_upgrade,
            "unused_credit": str(self.unused_credit),
            "new_charge": str(self.new_charge),
            "remaining_ratio": str(self.remaining_ratio),
            "days_remaining": str(self.days_remaining),
            "total_days": str(self.total_days),
        }


def _to_money(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # floats go through str() so 9.99 stays 9.99
    return Decimal(str(value))


def _days(delta: timedelta) -> Decimal:
    seconds = Decimal(int(delta.total_seconds()))
    return seconds / Decimal(int(_ONE_DAY.total_seconds()))


def prorate(
    current_plan_price: Any,
    new_plan_price: Any,
    current_date: datetime,
    period_start: datetime,
    period_end: datetime,
    billing_period: BillingPeriod = BillingPeriod.MONTHLY,
) -> ProrationResult:
    """
    Compute the net charge for switching plans part way through a period.

    Args:
        current_plan_price: Price of the current plan for ``billing_period``
        new_plan_price: Price of the new plan for ``billing_period``
        current_date: Moment the change takes effect
        period_start: Start of the current period
        period_end: End of the current period
        billing_period: Period the prices refer to

    Returns:
        ProrationResult with ``amount`` rounded half-up to cents

    Raises:
        InvalidPeriodError: If ``period_end`` is not after ``period_start``
    """
    BillingPeriod.parse(billing_period)
    current_price = _to_money(current_plan_price)
    new_price = _to_money(new_plan_price)

    total = period_end - period_start
    if total <= timedelta(0):
        raise InvalidPeriodError(
            f"Billing period end {period_end.isoformat()} is not after start {period_start.isoformat()}"
        )

    remaining = period_end - current_date
    if remaining < timedelta(0):
        remaining = timedelta(0)
    elif remaining > total:
        remaining = total

    total_days = _days(total)
    days_remaining = _days(remaining)
    is_upgrade = new_price > current_price

    if days_remaining == 0:
        zero = Decimal("0.00")
        return ProrationResult(
            amount=zero,
            is_upgrade=is_upgrade,
            unused_credit=zero,
            new_charge=zero,
            remaining_ratio=Decimal(0),
            days_remaining=days_remaining,
            total_days=total_days,
        )

    ratio = days_remaining / total_days
    unused_credit = current_price * ratio
    new_charge = new_price * ratio
    amount = (new_charge - unused_credit).quantize(CENTS, rounding=ROUND_HALF_UP)

    return ProrationResult(
        amount=amount,
        is_upgrade=is_upgrade,
        unused_credit=unused_credit.quantize(CENTS, rounding=ROUND_HALF_UP),
        new_charge=new_charge.quantize(CENTS, rounding=ROUND_HALF_UP),
        remaining_ratio=ratio,
        days_remaining=days_remaining,
        total_days=total_days,
    )
