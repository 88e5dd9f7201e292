"""Pydantic schemas for subscription API endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class CreateSubscriptionRequest(BaseModel):
    """Request schema for creating a pending subscription."""

    user_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)
    billing_period: Literal["monthly", "annual"] = "monthly"
    external_subscription_id: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = True
    reason: Optional[str] = Field(default=None, max_length=500)


class UpdateSubscriptionRequest(BaseModel):
    plan_id: Optional[str] = None
    billing_period: Optional[Literal["monthly", "annual"]] = None


class SubscriptionResponse(BaseModel):
    """Response schema for subscription data."""

    id: str
    user_id: str
    plan_id: str
    billing_period: str
    status: str
    is_active: bool
    cancel_at_period_end: bool
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    current_period_start: datetime
    current_period_end: datetime
    external_subscription_id: Optional[str] = None
    renewal_reference: Optional[str] = None
    renewal_attempts: int = 0
    version: int


class ProrationResponse(BaseModel):
    amount: Decimal
    is_upgrade: bool
    unused_credit: Decimal
    new_charge: Decimal
    remaining_ratio: Decimal
    days_remaining: Decimal
    total_days: Decimal


class AdjustmentResponse(BaseModel):
    id: str
    subscription_id: str
    from_plan_id: str
    to_plan_id: str
    amount: Decimal
    currency: str
    reference: str
    status: str
    created_at: datetime


class TransactionResponse(BaseModel):
    id: str
    subscription_id: Optional[str] = None
    user_id: str
    amount: Decimal
    currency: str
    status: str
    gateway_event_id: str
    reference: Optional[str] = None
    kind: str
    created_at: datetime


class SubscriptionChangeResponse(BaseModel):
    success: bool = True
    subscription: SubscriptionResponse
    proration: Optional[ProrationResponse] = None
    adjustment: Optional[AdjustmentResponse] = None


class SubscriptionEnvelope(BaseModel):
    success: bool = True
    subscription: Optional[SubscriptionResponse] = None


class SubscriptionHistoryResponse(BaseModel):
    success: bool = True
    items: List[SubscriptionResponse]


class TransactionListResponse(BaseModel):
    success: bool = True
    items: List[TransactionResponse]


class AdjustmentListResponse(BaseModel):
    success: bool = True
    items: List[AdjustmentResponse]
