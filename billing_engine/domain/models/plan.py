"""Catalog plan; created by administrators, read-only to billing."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .subscription import BillingPeriod


@dataclass(slots=True, frozen=True)
class Plan:
    id: str
    name: str
    price_monthly: Decimal
    price_annual: Decimal
    currency: str
    is_active: bool = True
    created_at: Optional[datetime] = None

    def price_for(self, period: BillingPeriod) -> Decimal:
        if BillingPeriod.parse(period) is BillingPeriod.ANNUAL:
            return self.price_annual
        return self.price_monthly
