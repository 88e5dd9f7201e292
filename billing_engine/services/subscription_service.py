"""Service for subscription lifecycle management."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from ..domain.exceptions import (
    ConcurrentModificationError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from ..domain.models import (
    BillingAdjustment,
    BillingPeriod,
    Plan,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
    add_billing_period,
    utcnow,
)
from ..domain.ports.persistence import PersistenceGateway
from .charge_gateway import ChargeIntent
from .proration import ProrationResult, prorate

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]

_CLOSED_STATUSES = (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class _Unchanged(Exception):
    """Raised inside a mutation when the fresh record no longer needs it."""


@dataclass(slots=True, frozen=True)
class PlanChange:
    subscription: Subscription
    proration: Optional[ProrationResult] = None
    adjustment: Optional[BillingAdjustment] = None


def new_reference(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class SubscriptionLifecycleManager:
    """Service for managing user subscriptions.

    Every write reads the current record, evaluates its guard against it and
    stores the result with a compare-and-swap. A conflicting concurrent write
    makes the whole read/guard/write step run again, up to
    ``max_conflict_retries`` times.
    """

    def __init__(
        self,
        store: PersistenceGateway,
        *,
        clock: Clock = utcnow,
        max_conflict_retries: int = 5,
    ):
        self.store = store
        self._clock = clock
        self._max_conflict_retries = max_conflict_retries

    # Queries ----------------------------------------------------------------
    def get_subscription(self, subscription_id: str) -> Subscription:
        subscription = self.store.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    def get_current_subscription(self, user_id: str) -> Optional[Subscription]:
        """
        Get the user's active subscription.

        Args:
            user_id: User ID

        Returns:
            Active Subscription or None
        """
        if self.store.find_user(user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return self.store.get_active_subscription_for_user(user_id)

    def get_history(self, subscription_id: str) -> List[Subscription]:
        self.get_subscription(subscription_id)
        return self.store.get_subscription_history(subscription_id)

    def get_transactions(self, subscription_id: str) -> List[Transaction]:
        self.get_subscription(subscription_id)
        return self.store.list_transactions_for_subscription(subscription_id)

    def get_adjustments(self, subscription_id: str) -> List[BillingAdjustment]:
        self.get_subscription(subscription_id)
        return self.store.list_adjustments(subscription_id)

    def get_adjustment_status(self, adjustment: BillingAdjustment) -> str:
        """pending until the gateway reports a charge for the adjustment's reference."""
        transactions = self.store.list_transactions_by_reference(adjustment.reference)
        if not transactions:
            return "pending"
        if any(transaction.is_successful for transaction in transactions):
            return TransactionStatus.SUCCESSFUL.value
        return transactions[-1].status.value

    # User-facing transitions ------------------------------------------------
    def create(
        self,
        user_id: str,
        plan_id: str,
        billing_period: BillingPeriod,
        *,
        external_subscription_id: Optional[str] = None,
    ) -> Subscription:
        """
        Create a pending subscription awaiting its first payment.

        Args:
            user_id: User ID
            plan_id: Plan ID
            billing_period: monthly or annual
            external_subscription_id: Gateway-side correlation key, if known

        Returns:
            Created Subscription entity

        Raises:
            UserNotFoundError: If the user does not exist
            PlanNotFoundError: If the plan does not exist
            ValidationError: If the plan is inactive, the user already has
                an active subscription or the external id is already linked
        """
        period = BillingPeriod.parse(billing_period)
        if self.store.find_user(user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found")
        plan = self._require_plan(plan_id)

        with self.store.atomic():
            if self.store.get_active_subscription_for_user(user_id) is not None:
                raise ValidationError("User already has an active subscription")
            if external_subscription_id and self.store.get_subscription_by_external_id(external_subscription_id):
                raise ValidationError(f"External subscription {external_subscription_id} is already linked")
            now = self._clock()
            subscription = self.store.create_subscription(
                Subscription(
                    id=uuid.uuid4().hex,
                    user_id=user_id,
                    plan_id=plan.id,
                    billing_period=period,
                    status=SubscriptionStatus.PENDING,
                    current_period_start=now,
                    current_period_end=add_billing_period(now, period),
                    external_subscription_id=external_subscription_id,
                )
            )
        logger.info(
            "Created pending subscription %s for user %s on plan %s (%s)",
            subscription.id,
            user_id,
            plan.id,
            period.value,
        )
        return subscription

    def cancel(
        self,
        subscription_id: str,
        immediate: bool = True,
        reason: Optional[str] = None,
    ) -> Subscription:
        """
        Cancel a subscription now or at the end of the current period.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
            ValidationError: If it is already cancelled or expired, or a
                deferred cancellation is requested for a non-active one
        """

        def mutation(current: Subscription) -> Subscription:
            if current.status in _CLOSED_STATUSES:
                raise ValidationError(f"Subscription is already {current.status.value}")
            if immediate:
                return replace(
                    current,
                    status=SubscriptionStatus.CANCELLED,
                    cancel_at_period_end=False,
                    cancelled_at=self._clock(),
                    cancellation_reason=reason,
                )
            if current.status is not SubscriptionStatus.ACTIVE:
                raise ValidationError("Only an active subscription can be cancelled at period end")
            return replace(current, cancel_at_period_end=True, cancellation_reason=reason)

        updated = self._mutate(subscription_id, mutation)
        logger.info(
            "Subscription %s cancelled (%s)",
            subscription_id,
            "immediate" if immediate else "at period end",
        )
        return updated

    def update(
        self,
        subscription_id: str,
        plan_id: Optional[str] = None,
        billing_period: Optional[BillingPeriod] = None,
    ) -> Subscription:
        return self.change(subscription_id, plan_id=plan_id, billing_period=billing_period).subscription

    def change(
        self,
        subscription_id: str,
        *,
        plan_id: Optional[str] = None,
        billing_period: Optional[BillingPeriod] = None,
    ) -> PlanChange:
        """
        Change plan and/or billing period.

        A plan change on an active subscription is prorated over the current
        period using prices for the current billing period; a non-zero result
        is recorded as a BillingAdjustment. A billing period change moves
        ``current_period_end`` to ``current_period_start`` plus the new period.

        Returns:
            PlanChange with the stored subscription and any adjustment
        """
        if plan_id is None and billing_period is None:
            raise ValidationError("Nothing to update: provide plan_id or billing_period")
        new_period = BillingPeriod.parse(billing_period) if billing_period is not None else None
        new_plan = self._require_plan(plan_id) if plan_id is not None else None

        def step() -> PlanChange:
            with self.store.atomic():
                current = self.get_subscription(subscription_id)
                if current.status in _CLOSED_STATUSES:
                    raise ValidationError(f"Cannot update a {current.status.value} subscription")

                proration: Optional[ProrationResult] = None
                if new_plan is not None and new_plan.id != current.plan_id and current.is_active:
                    proration = self._prorate(current, new_plan)

                target_plan_id = new_plan.id if new_plan is not None else current.plan_id
                target_period = new_period or current.billing_period
                period_end = current.current_period_end
                if target_period is not current.billing_period:
                    period_end = add_billing_period(current.current_period_start, target_period)

                updated = self.store.compare_and_swap_subscription(
                    subscription_id,
                    current.version,
                    lambda fresh: replace(
                        fresh,
                        plan_id=target_plan_id,
                        billing_period=target_period,
                        current_period_end=period_end,
                    ),
                )

                adjustment = None
                if proration is not None and not proration.is_zero:
                    adjustment = self.store.record_adjustment(
                        BillingAdjustment(
                            id=uuid.uuid4().hex,
                            subscription_id=subscription_id,
                            from_plan_id=current.plan_id,
                            to_plan_id=target_plan_id,
                            amount=proration.amount,
                            currency=new_plan.currency,
                            reference=new_reference("adj"),
                            created_at=self._clock(),
                        )
                    )
            return PlanChange(subscription=updated, proration=proration, adjustment=adjustment)

        result = self._retry_on_conflict(step)
        if result.adjustment is not None:
            logger.info(
                "Subscription %s plan change recorded adjustment %s of %s %s",
                subscription_id,
                result.adjustment.reference,
                result.adjustment.amount,
                result.adjustment.currency,
            )
        return result

    def preview_plan_change(self, subscription_id: str, plan_id: str) -> ProrationResult:
        current = self.get_subscription(subscription_id)
        if not current.is_active:
            raise ValidationError("Only an active subscription can be prorated")
        return self._prorate(current, self._require_plan(plan_id))

    # Scheduler-facing transitions -------------------------------------------
    def finalize_deferred_cancellation(self, subscription_id: str, now: datetime) -> Optional[Subscription]:
        def mutation(current: Subscription) -> Subscription:
            if not (current.cancel_at_period_end and current.is_due(now)):
                raise _Unchanged()
            return replace(
                current,
                status=SubscriptionStatus.CANCELLED,
                cancel_at_period_end=False,
                cancelled_at=now,
            )

        return self._mutate_if_needed(subscription_id, mutation)

    def claim_renewal(self, subscription_id: str, now: datetime) -> Optional[Subscription]:
        """Mark a due subscription as having an outstanding renewal charge.

        Returns None when another writer already claimed it or it is no
        longer due.
        """

        def mutation(current: Subscription) -> Subscription:
            if not current.is_due(now) or current.cancel_at_period_end or current.renewal_reference:
                raise _Unchanged()
            return replace(
                current,
                renewal_reference=new_reference("renew"),
                renewal_requested_at=now,
                renewal_attempts=1,
            )

        return self._mutate_if_needed(subscription_id, mutation)

    def rerequest_renewal(
        self,
        subscription_id: str,
        reference: str,
        now: datetime,
        max_attempts: int,
    ) -> Optional[Subscription]:
        def mutation(current: Subscription) -> Subscription:
            if (
                not current.is_due(now)
                or current.renewal_reference != reference
                or current.renewal_attempts >= max_attempts
            ):
                raise _Unchanged()
            return replace(
                current,
                renewal_requested_at=now,
                renewal_attempts=current.renewal_attempts + 1,
            )

        return self._mutate_if_needed(subscription_id, mutation)

    def release_renewal_claim(self, subscription_id: str, reference: str) -> Optional[Subscription]:
        def mutation(current: Subscription) -> Subscription:
            if current.renewal_reference != reference:
                raise _Unchanged()
            return replace(
                current,
                renewal_reference=None,
                renewal_requested_at=None,
                renewal_attempts=0,
            )

        return self._mutate_if_needed(subscription_id, mutation)

    def expire(self, subscription_id: str, now: datetime, reason: str) -> Optional[Subscription]:
        def mutation(current: Subscription) -> Subscription:
            if not current.is_due(now):
                raise _Unchanged()
            return replace(
                current,
                status=SubscriptionStatus.EXPIRED,
                cancel_at_period_end=False,
                cancellation_reason=reason,
            )

        expired = self._mutate_if_needed(subscription_id, mutation)
        if expired is not None:
            logger.info("Subscription %s expired: %s", subscription_id, reason)
        return expired

    def build_renewal_intent(self, subscription: Subscription) -> ChargeIntent:
        if not subscription.renewal_reference:
            raise ValidationError(f"Subscription {subscription.id} has no outstanding renewal")
        plan = self._require_plan(subscription.plan_id, require_active=False)
        user = self.store.find_user(subscription.user_id)
        return ChargeIntent(
            reference=subscription.renewal_reference,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            plan_id=plan.id,
            billing_period=subscription.billing_period.value,
            amount=plan.price_for(subscription.billing_period),
            currency=plan.currency,
            customer_email=user.email if user else None,
            transaction_type="renewal",
        )

    # Helpers ----------------------------------------------------------------
    def _require_plan(self, plan_id: str, *, require_active: bool = True) -> Plan:
        plan = self.store.find_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found")
        if require_active and not plan.is_active:
            raise ValidationError(f"Plan {plan_id} is not available")
        return plan

    def _prorate(self, current: Subscription, new_plan: Plan) -> ProrationResult:
        current_plan = self._require_plan(current.plan_id, require_active=False)
        return prorate(
            current_plan.price_for(current.billing_period),
            new_plan.price_for(current.billing_period),
            self._clock(),
            current.current_period_start,
            current.current_period_end,
            current.billing_period,
        )

    def _mutate(self, subscription_id: str, mutation: Callable[[Subscription], Subscription]) -> Subscription:
        def step() -> Subscription:
            current = self.get_subscription(subscription_id)
            return self.store.compare_and_swap_subscription(subscription_id, current.version, mutation)

        return self._retry_on_conflict(step)

    def _mutate_if_needed(
        self, subscription_id: str, mutation: Callable[[Subscription], Subscription]
    ) -> Optional[Subscription]:
        try:
            return self._mutate(subscription_id, mutation)
        except _Unchanged:
            return None

    def _retry_on_conflict(self, step: Callable[[], T]) -> T:
        attempt = 1
        while True:
            try:
                return step()
            except ConcurrentModificationError as exc:
                if attempt >= self._max_conflict_retries:
                    raise
                logger.info(
                    "Conflict on subscription %s (attempt %d/%d), re-reading",
                    exc.subscription_id,
                    attempt,
                    self._max_conflict_retries,
                )
                attempt += 1
