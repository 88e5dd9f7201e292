"""Reconciles gateway webhook deliveries with local subscription state.

Deliveries are at-least-once and may arrive out of order. The ledger insert
keyed by the gateway event id is the idempotency gate: it and every
subscription write caused by the event share one store unit of work.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from ..domain.exceptions import (
    ConcurrentModificationError,
    MalformedPayloadError,
    SignatureInvalidError,
    ValidationError,
)
from ..domain.models import (
    BillingPeriod,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionKind,
    TransactionStatus,
    add_billing_period,
    utcnow,
)
from ..domain.ports.persistence import PersistenceGateway

logger = logging.getLogger(__name__)

CHARGE_COMPLETED = "charge.completed"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"
SUCCESSFUL_STATUS = "successful"


@dataclass(slots=True, frozen=True)
class ChargeDetails:
    event_id: str
    reference: Optional[str]
    status: str
    amount: Decimal
    currency: str
    customer_email: Optional[str] = None
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    subscription_id: Optional[str] = None
    billing_period: Optional[str] = None
    transaction_type: Optional[str] = None


@dataclass(slots=True, frozen=True)
class ChargeSucceeded:
    charge: ChargeDetails


@dataclass(slots=True, frozen=True)
class ChargeFailed:
    charge: ChargeDetails


@dataclass(slots=True, frozen=True)
class SubscriptionCancelled:
    event_id: str
    external_subscription_id: str


@dataclass(slots=True, frozen=True)
class UnknownEvent:
    event_id: str
    event_type: str


GatewayEvent = Union[ChargeSucceeded, ChargeFailed, SubscriptionCancelled, UnknownEvent]


class ReconciliationOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    ACKNOWLEDGED = "acknowledged"


@dataclass(slots=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    subscription_id: Optional[str] = None
    transaction_id: Optional[str] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "subscription_id": self.subscription_id,
            "transaction_id": self.transaction_id,
            "message": self.message,
        }


def compute_signature(secret: str, raw_payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()


class WebhookReconciler:
    """Authenticates, deduplicates and applies gateway events."""

    def __init__(
        self,
        store: PersistenceGateway,
        secret: Optional[str],
        *,
        clock: Callable[[], datetime] = utcnow,
        max_conflict_retries: int = 3,
    ) -> None:
        self.store = store
        self._secret = secret
        self._clock = clock
        self._max_conflict_retries = max_conflict_retries

    def handle_event(
        self, raw_payload: Union[bytes, str], signature_header: Optional[str]
    ) -> ReconciliationResult:
        """
        Process one webhook delivery.

        Args:
            raw_payload: Request body exactly as received
            signature_header: Value of the signature header, if present

        Returns:
            ReconciliationResult describing what happened

        Raises:
            SignatureInvalidError: If the signature is missing or wrong
            MalformedPayloadError: If the body is not a JSON object
        """
        body = raw_payload.encode("utf-8") if isinstance(raw_payload, str) else raw_payload
        self.verify_signature(body, signature_header)
        event = self.parse_event(body)
        if event is None:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                message="Missing event type or event id",
            )

        attempt = 1
        while True:
            try:
                return self._dispatch(event)
            except ConcurrentModificationError:
                if attempt >= self._max_conflict_retries:
                    raise
                logger.info("Conflict while reconciling %s, retrying", _event_id(event))
                attempt += 1

    def verify_signature(self, body: bytes, signature_header: Optional[str]) -> None:
        if not self._secret:
            logger.warning("Rejecting webhook: no signing secret configured")
            raise SignatureInvalidError("Webhook signing secret is not configured")
        if not signature_header:
            logger.warning("Rejecting webhook: signature header missing")
            raise SignatureInvalidError("Missing webhook signature")
        expected = compute_signature(self._secret, body)
        if not hmac.compare_digest(expected, signature_header.strip().lower()):
            logger.warning("Rejecting webhook: signature mismatch")
            raise SignatureInvalidError("Invalid webhook signature")

    def parse_event(self, body: bytes) -> Optional[GatewayEvent]:
        """Parse a verified body; None when required fields are missing."""
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedPayloadError(f"Invalid JSON payload: {exc}") from exc
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Webhook payload must be a JSON object")

        event_type = payload.get("event")
        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        raw_id = data.get("id")
        if not event_type or raw_id in (None, ""):
            logger.warning("Ignoring webhook without event type or data.id (event=%r)", event_type)
            return None
        event_id = str(raw_id)

        if event_type == CHARGE_COMPLETED:
            charge = self._parse_charge(event_id, data)
            if charge.status == SUCCESSFUL_STATUS:
                return ChargeSucceeded(charge)
            return ChargeFailed(charge)
        if event_type == SUBSCRIPTION_CANCELLED:
            return SubscriptionCancelled(event_id=event_id, external_subscription_id=event_id)
        return UnknownEvent(event_id=event_id, event_type=str(event_type))

    # Dispatch ---------------------------------------------------------------
    def _dispatch(self, event: GatewayEvent) -> ReconciliationResult:
        if isinstance(event, ChargeSucceeded):
            return self._handle_charge_succeeded(event.charge)
        if isinstance(event, ChargeFailed):
            return self._handle_charge_failed(event.charge)
        if isinstance(event, SubscriptionCancelled):
            return self._handle_subscription_cancelled(event)
        logger.info("Acknowledged unhandled webhook event %s (%s)", event.event_type, event.event_id)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.ACKNOWLEDGED,
            event_type=event.event_type,
            event_id=event.event_id,
            message="Event acknowledged but not processed",
        )

    def _handle_charge_succeeded(self, charge: ChargeDetails) -> ReconciliationResult:
        with self.store.atomic():
            recorded = self._recorded_transaction(charge.event_id)
            if recorded is not None:
                return self._duplicate(CHARGE_COMPLETED, charge.event_id, recorded)

            if charge.transaction_type == TransactionKind.ADJUSTMENT.value:
                return self._record_adjustment_charge(charge)

            target = self._resolve_target(charge)
            pending_new: Optional[Subscription] = None
            if target is None:
                pending_new = self._new_subscription_from_meta(charge)
                if pending_new is None:
                    return ReconciliationResult(
                        outcome=ReconciliationOutcome.IGNORED,
                        event_type=CHARGE_COMPLETED,
                        event_id=charge.event_id,
                        message="No subscription or purchase metadata for charge",
                    )
                target = pending_new

            kind = TransactionKind.RENEWAL if target.is_active else TransactionKind.SUBSCRIPTION
            transaction = self._build_transaction(charge, target, TransactionStatus.SUCCESSFUL, kind)
            created, existing = self.store.create_transaction_if_absent(charge.event_id, transaction)
            if not created:
                return self._duplicate(CHARGE_COMPLETED, charge.event_id, existing)

            if pending_new is not None:
                target = self.store.create_subscription(pending_new)

            if target.status is SubscriptionStatus.CANCELLED:
                logger.warning(
                    "Charge %s confirmed for cancelled subscription %s; recorded without reactivation",
                    charge.event_id,
                    target.id,
                )
                return self._processed(CHARGE_COMPLETED, charge.event_id, target.id, transaction.id)

            now = self._clock()
            updated = self.store.compare_and_swap_subscription(
                target.id,
                target.version,
                lambda current: current.with_confirmed_payment(now),
            )
        logger.info(
            "Charge %s confirmed: subscription %s active until %s",
            charge.event_id,
            updated.id,
            updated.current_period_end.isoformat(),
        )
        return self._processed(CHARGE_COMPLETED, charge.event_id, updated.id, transaction.id)

    def _handle_charge_failed(self, charge: ChargeDetails) -> ReconciliationResult:
        with self.store.atomic():
            recorded = self._recorded_transaction(charge.event_id)
            if recorded is not None:
                return self._duplicate(CHARGE_COMPLETED, charge.event_id, recorded)

            target = self._resolve_target(charge)
            user_id = target.user_id if target is not None else charge.user_id
            if not user_id:
                logger.warning("Ignoring failed charge %s without a resolvable user", charge.event_id)
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.IGNORED,
                    event_type=CHARGE_COMPLETED,
                    event_id=charge.event_id,
                    message="No user for failed charge",
                )
            kind = TransactionKind.SUBSCRIPTION
            if charge.transaction_type == TransactionKind.ADJUSTMENT.value:
                kind = TransactionKind.ADJUSTMENT
            elif target is not None and target.is_active:
                kind = TransactionKind.RENEWAL

            transaction = Transaction(
                id=uuid.uuid4().hex,
                user_id=user_id,
                amount=charge.amount,
                currency=charge.currency,
                status=TransactionStatus.FAILED,
                gateway_event_id=charge.event_id,
                created_at=self._clock(),
                subscription_id=target.id if target is not None else charge.subscription_id,
                reference=charge.reference,
                kind=kind,
            )
            created, existing = self.store.create_transaction_if_absent(charge.event_id, transaction)
        if not created:
            return self._duplicate(CHARGE_COMPLETED, charge.event_id, existing)
        logger.info(
            "Charge %s failed with status %r for reference %s",
            charge.event_id,
            charge.status,
            charge.reference,
        )
        return self._processed(
            CHARGE_COMPLETED, charge.event_id, transaction.subscription_id, transaction.id
        )

    def _handle_subscription_cancelled(self, event: SubscriptionCancelled) -> ReconciliationResult:
        with self.store.atomic():
            subscription = self.store.get_subscription_by_external_id(event.external_subscription_id)
            if subscription is None:
                logger.warning(
                    "Ignoring cancellation for unknown external subscription %s",
                    event.external_subscription_id,
                )
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.IGNORED,
                    event_type=SUBSCRIPTION_CANCELLED,
                    event_id=event.event_id,
                    message="Subscription not found",
                )
            if subscription.status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED):
                return self._duplicate(SUBSCRIPTION_CANCELLED, event.event_id, subscription_id=subscription.id)

            now = self._clock()
            updated = self.store.compare_and_swap_subscription(
                subscription.id,
                subscription.version,
                lambda current: _cancelled(current, now),
            )
        logger.info("Subscription %s cancelled by gateway", updated.id)
        return self._processed(SUBSCRIPTION_CANCELLED, event.event_id, updated.id, None)

    def _record_adjustment_charge(self, charge: ChargeDetails) -> ReconciliationResult:
        target = self.store.get_subscription(charge.subscription_id) if charge.subscription_id else None
        user_id = target.user_id if target is not None else charge.user_id
        if not user_id:
            logger.warning("Ignoring adjustment charge %s without a resolvable user", charge.event_id)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                event_type=CHARGE_COMPLETED,
                event_id=charge.event_id,
                message="No user for adjustment charge",
            )
        transaction = Transaction(
            id=uuid.uuid4().hex,
            user_id=user_id,
            amount=charge.amount,
            currency=charge.currency,
            status=TransactionStatus.SUCCESSFUL,
            gateway_event_id=charge.event_id,
            created_at=self._clock(),
            subscription_id=target.id if target is not None else charge.subscription_id,
            reference=charge.reference,
            kind=TransactionKind.ADJUSTMENT,
        )
        created, existing = self.store.create_transaction_if_absent(charge.event_id, transaction)
        if not created:
            return self._duplicate(CHARGE_COMPLETED, charge.event_id, existing)
        logger.info("Adjustment charge %s recorded for reference %s", charge.event_id, charge.reference)
        return self._processed(CHARGE_COMPLETED, charge.event_id, transaction.subscription_id, transaction.id)

    # Helpers ----------------------------------------------------------------
    def _parse_charge(self, event_id: str, data: Dict[str, Any]) -> ChargeDetails:
        meta = data.get("meta")
        if not isinstance(meta, dict):
            meta = {}
        customer = data.get("customer")
        if not isinstance(customer, dict):
            customer = {}

        raw_amount = data.get("amount")
        if raw_amount is None:
            logger.warning("Charge %s has no amount; recording 0", event_id)
            amount = Decimal("0")
        else:
            try:
                amount = Decimal(str(raw_amount))
            except InvalidOperation as exc:
                raise MalformedPayloadError(f"Invalid amount {raw_amount!r} in charge {event_id}") from exc

        status = str(data.get("status") or "").lower()
        if not status:
            logger.warning("Charge %s has no status; treating as failed", event_id)

        return ChargeDetails(
            event_id=event_id,
            reference=_optional_str(data.get("tx_ref")),
            status=status,
            amount=amount,
            currency=str(data.get("currency") or "").upper(),
            customer_email=_optional_str(customer.get("email")),
            user_id=_optional_str(meta.get("userId")),
            plan_id=_optional_str(meta.get("planId")),
            subscription_id=_optional_str(meta.get("subscriptionId")),
            billing_period=_optional_str(meta.get("billingPeriod")),
            transaction_type=_optional_str(meta.get("transactionType")),
        )

    def _resolve_target(self, charge: ChargeDetails) -> Optional[Subscription]:
        if charge.subscription_id:
            subscription = self.store.get_subscription(charge.subscription_id)
            if subscription is not None:
                return subscription
            logger.warning(
                "Charge %s names unknown subscription %s; falling back to user lookup",
                charge.event_id,
                charge.subscription_id,
            )
        if charge.user_id:
            return self.store.get_active_subscription_for_user(charge.user_id)
        return None

    def _new_subscription_from_meta(self, charge: ChargeDetails) -> Optional[Subscription]:
        if not (charge.user_id and charge.plan_id):
            logger.warning("Charge %s lacks userId/planId metadata for a new subscription", charge.event_id)
            return None
        if self.store.find_user(charge.user_id) is None or self.store.find_plan(charge.plan_id) is None:
            logger.warning(
                "Charge %s references unknown user %s or plan %s",
                charge.event_id,
                charge.user_id,
                charge.plan_id,
            )
            return None
        try:
            period = BillingPeriod.parse(charge.billing_period or BillingPeriod.MONTHLY.value)
        except ValidationError:
            logger.warning(
                "Charge %s has unsupported billing period %r; using monthly",
                charge.event_id,
                charge.billing_period,
            )
            period = BillingPeriod.MONTHLY
        now = self._clock()
        return Subscription(
            id=uuid.uuid4().hex,
            user_id=charge.user_id,
            plan_id=charge.plan_id,
            billing_period=period,
            status=SubscriptionStatus.PENDING,
            current_period_start=now,
            current_period_end=add_billing_period(now, period),
        )

    def _build_transaction(
        self,
        charge: ChargeDetails,
        target: Subscription,
        status: TransactionStatus,
        kind: TransactionKind,
    ) -> Transaction:
        return Transaction(
            id=uuid.uuid4().hex,
            user_id=target.user_id,
            amount=charge.amount,
            currency=charge.currency,
            status=status,
            gateway_event_id=charge.event_id,
            created_at=self._clock(),
            subscription_id=target.id,
            reference=charge.reference,
            kind=kind,
        )

    def _recorded_transaction(self, event_id: str) -> Optional[Transaction]:
        return self.store.get_transaction_by_event_id(event_id)

    def _duplicate(
        self,
        event_type: str,
        event_id: str,
        existing: Optional[Transaction] = None,
        *,
        subscription_id: Optional[str] = None,
    ) -> ReconciliationResult:
        logger.info("Duplicate webhook %s (%s) ignored", event_id, event_type)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.DUPLICATE,
            event_type=event_type,
            event_id=event_id,
            subscription_id=existing.subscription_id if existing else subscription_id,
            transaction_id=existing.id if existing else None,
            message="Event already processed",
        )

    def _processed(
        self,
        event_type: str,
        event_id: str,
        subscription_id: Optional[str],
        transaction_id: Optional[str],
    ) -> ReconciliationResult:
        return ReconciliationResult(
            outcome=ReconciliationOutcome.PROCESSED,
            event_type=event_type,
            event_id=event_id,
            subscription_id=subscription_id,
            transaction_id=transaction_id,
            message="Event processed",
        )


def _cancelled(subscription: Subscription, now: datetime) -> Subscription:
    return replace(
        subscription,
        status=SubscriptionStatus.CANCELLED,
        cancel_at_period_end=False,
        cancelled_at=now,
        cancellation_reason=subscription.cancellation_reason or "Cancelled by payment gateway",
    )


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _event_id(event: GatewayEvent) -> str:
    if isinstance(event, (ChargeSucceeded, ChargeFailed)):
        return event.charge.event_id
    return event.event_id
