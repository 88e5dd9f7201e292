"""API router for subscription management."""

from typing import Union

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from ....core.dependencies import get_lifecycle_manager
from ....domain.exceptions import BillingError
from ....domain.models import BillingAdjustment, Subscription, Transaction
from ....services.proration import ProrationResult
from ....services.subscription_service import SubscriptionLifecycleManager
from ...api.dependencies import require_operator
from ...api.responses import error_response
from ...api.schemas.subscription_schemas import (
    AdjustmentListResponse,
    AdjustmentResponse,
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    ProrationResponse,
    SubscriptionChangeResponse,
    SubscriptionEnvelope,
    SubscriptionHistoryResponse,
    SubscriptionResponse,
    TransactionListResponse,
    TransactionResponse,
    UpdateSubscriptionRequest,
)

router = APIRouter(
    prefix="/api/subscriptions",
    tags=["subscriptions"],
    dependencies=[Depends(require_operator)],
)


def _subscription(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(**subscription.to_dict())


def _proration(result: ProrationResult) -> ProrationResponse:
    return ProrationResponse(**result.to_dict())


def _transaction(transaction: Transaction) -> TransactionResponse:
    return TransactionResponse(**transaction.to_dict())


def _adjustment(adjustment: BillingAdjustment, lifecycle: SubscriptionLifecycleManager) -> AdjustmentResponse:
    return AdjustmentResponse(**adjustment.to_dict(), status=lifecycle.get_adjustment_status(adjustment))


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SubscriptionEnvelope)
async def create_subscription(
    payload: CreateSubscriptionRequest,
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> Union[SubscriptionEnvelope, JSONResponse]:
    """Create a pending subscription awaiting its first payment."""
    try:
        subscription = lifecycle.create(
            payload.user_id,
            payload.plan_id,
            payload.billing_period,
            external_subscription_id=payload.external_subscription_id,
        )
    except BillingError as exc:
        return error_response(exc)
    return SubscriptionEnvelope(subscription=_subscription(subscription))


@router.get("/users/{user_id}/current", response_model=SubscriptionEnvelope)
async def get_current_subscription(
    user_id: str,
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> Union[SubscriptionEnvelope, JSONResponse]:
    """Get the user's active subscription, if any."""
    try:
        subscription = lifecycle.get_current_subscription(user_id)
    except BillingError as exc:
        return error_response(exc)
    return SubscriptionEnvelope(subscription=_subscription(subscription) if subscription else None)


@router.get("/{subscription_id}", response_model=SubscriptionEnvelope)
async def get_subscription(
    subscription_id: str,
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> Union[SubscriptionEnvelope, JSONResponse]:
    try:
        subscription = lifecycle.get_subscription(subscription_id)
    except BillingError as exc:
        return error_response(exc)
    return SubscriptionEnvelope(subscription=_subscription(subscription))


@router.post("/{subscription_id}/cancel", response_model=SubscriptionEnvelope)
async def cancel_subscription(
    subscription_id: str,
    payload: CancelSubscriptionRequest,
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> Union[SubscriptionEnvelope, JSONResponse]:
    """Cancel immediately or at the end of the current period."""
    try:
        subscription = lifecycle.cancel(subscription_id, immediate=payload.immediate, reason=payload.reason)
    except BillingError as exc:
        return error_response(exc)
    return SubscriptionEnvelope(subscription=_subscription(subscription))


@router.patch("/{subscription_id}", response_model=SubscriptionChangeResponse)
async def update_subscription(
    subscription_id: str,
    payload: UpdateSubscriptionRequest,
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> Union[SubscriptionChangeResponse, JSONResponse]:
    """Change plan and/or billing period, recording any proration."""
    try:
        change = lifecycle.change(
            subscription_id,
            plan_id=payload.plan_id,
            billing_period=payload.billing_period,
        )
    except BillingError as exc:
        return error_response(exc)
    return SubscriptionChangeResponse(
        subscription=_subscription(change.subscription),
        proration=_proration(change.proration) if change.proration else None,
        adjustment=_adjustment(change.adjustment, lifecycle) if change.adjustment else None,
    )


@router.get("/{subscription_id}/proration", response_model=ProrationResponse)
async def preview_proration(
    subscription_id: str,
    plan_id: str = Query(..., min_length=1),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> Union[ProrationResponse, JSONResponse]:
    """Preview the net charge of switching to ``plan_id`` now."""
    try:
        result = lifecycle.preview_plan_change(subscription_id, plan_id)
    except BillingError as exc:
        return error_response(exc)
    return _proration(result)


@router.get("/{subscription_id}/history", response_model=SubscriptionHistoryResponse)
async def get_history(
    subscription_id: str,
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> Union[SubscriptionHistoryResponse, JSONResponse]:
    try:
        history = lifecycle.get_history(subscription_id)
    except BillingError as exc:
        return error_response(exc)
    return SubscriptionHistoryResponse(items=[_subscription(item) for item in history])


@router.get("/{subscription_id}/transactions", response_model=TransactionListResponse)
async def get_transactions(
    subscription_id: str,
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> Union[TransactionListResponse, JSONResponse]:
    try:
        transactions = lifecycle.get_transactions(subscription_id)
    except BillingError as exc:
        return error_response(exc)
    return TransactionListResponse(items=[_transaction(item) for item in transactions])


@router.get("/{subscription_id}/adjustments", response_model=AdjustmentListResponse)
async def get_adjustments(
    subscription_id: str,
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> Union[AdjustmentListResponse, JSONResponse]:
    try:
        adjustments = lifecycle.get_adjustments(subscription_id)
    except BillingError as exc:
        return error_response(exc)
    return AdjustmentListResponse(items=[_adjustment(item, lifecycle) for item in adjustments])
