import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from billing_engine.domain.exceptions import GatewayUnavailableError
from billing_engine.domain.models import (
    BillingPeriod,
    Subscription,
    SubscriptionStatus,
    add_billing_period,
)
from billing_engine.services.charge_gateway import ChargeIntent

WEBHOOK_SECRET = "test-webhook-secret"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingGateway:
    def __init__(self, fail_for: Optional[set] = None, failures: int = 0) -> None:
        self.requested: List[ChargeIntent] = []
        self.calls = 0
        self._fail_for = fail_for or set()
        self._failures = failures

    async def request_charge(self, intent: ChargeIntent) -> None:
        self.calls += 1
        if intent.subscription_id in self._fail_for:
            raise GatewayUnavailableError("gateway down")
        if self._failures:
            self._failures -= 1
            raise GatewayUnavailableError("gateway flapping")
        self.requested.append(intent)


async def no_sleep(_: float) -> None:
    return None


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def encode(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


def charge_event(
    event_id: str,
    *,
    status: str = "successful",
    user_id: Optional[str] = "user-1",
    plan_id: Optional[str] = "basic",
    subscription_id: Optional[str] = None,
    billing_period: Optional[str] = "monthly",
    amount: str = "10.00",
    tx_ref: Optional[str] = None,
    transaction_type: Optional[str] = None,
    payment_plan: Optional[str] = None,
) -> bytes:
    meta: Dict[str, Any] = {}
    if user_id:
        meta["userId"] = user_id
    if plan_id:
        meta["planId"] = plan_id
    if subscription_id:
        meta["subscriptionId"] = subscription_id
    if billing_period:
        meta["billingPeriod"] = billing_period
    if transaction_type:
        meta["transactionType"] = transaction_type
    data: Dict[str, Any] = {
        "id": event_id,
        "tx_ref": tx_ref or f"tx-{event_id}",
        "status": status,
        "amount": amount,
        "currency": "NGN",
        "customer": {"email": "ada@example.com"},
        "meta": meta,
    }
    if payment_plan:
        data["payment_plan"] = payment_plan
    return encode({"event": "charge.completed", "data": data})


def seed_subscription(
    store,
    *,
    start: datetime,
    user_id: str = "user-1",
    plan_id: str = "basic",
    billing_period: BillingPeriod = BillingPeriod.MONTHLY,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    cancel_at_period_end: bool = False,
    external_subscription_id: Optional[str] = None,
) -> Subscription:
    return store.create_subscription(
        Subscription(
            id=uuid.uuid4().hex,
            user_id=user_id,
            plan_id=plan_id,
            billing_period=billing_period,
            status=status,
            current_period_start=start,
            current_period_end=add_billing_period(start, billing_period),
            cancel_at_period_end=cancel_at_period_end,
            external_subscription_id=external_subscription_id,
        )
    )
