"""Outbound charge requests to the payment gateway.

A charge request is fire-and-forget: the gateway confirms or rejects the
payment later through a signed webhook carrying the same ``tx_ref``.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Deque, Dict, Optional, Protocol

import httpx

from ..domain.exceptions import ChargeRejectedError, GatewayUnavailableError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ChargeIntent:
    reference: str
    subscription_id: str
    user_id: str
    plan_id: str
    billing_period: str
    amount: Decimal
    currency: str
    customer_email: Optional[str] = None
    transaction_type: str = "renewal"
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        meta = {
            "userId": self.user_id,
            "planId": self.plan_id,
            "subscriptionId": self.subscription_id,
            "billingPeriod": self.billing_period,
            "transactionType": self.transaction_type,
        }
        meta.update(self.meta)
        payload: Dict[str, Any] = {
            "tx_ref": self.reference,
            "amount": str(self.amount),
            "currency": self.currency,
            "meta": meta,
        }
        if self.customer_email:
            payload["customer"] = {"email": self.customer_email}
        return payload


class ChargeGateway(Protocol):
    async def request_charge(self, intent: ChargeIntent) -> None:
        ...


class HttpChargeGateway:
    """Posts charge intents to the gateway's payments endpoint."""

    def __init__(
        self,
        base_url: str,
        secret_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._secret_key = secret_key
        self._timeout = timeout
        self._transport = transport

    async def request_charge(self, intent: ChargeIntent) -> None:
        url = f"{self._base_url}/v3/payments"
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=intent.to_payload(), headers=headers)
        except httpx.TransportError as exc:
            raise GatewayUnavailableError(f"Charge gateway unreachable: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise GatewayUnavailableError(
                f"Charge gateway returned {response.status_code} for {intent.reference}"
            )
        if response.status_code >= 400:
            raise ChargeRejectedError(
                f"Charge gateway rejected {intent.reference} with status {response.status_code}",
                details={"body": response.text[:500]},
            )
        logger.info(
            "Charge intent %s sent for subscription %s (%s %s)",
            intent.reference,
            intent.subscription_id,
            intent.amount,
            intent.currency,
        )


class LoggingChargeGateway:
    """Keeps the most recent intents locally when no gateway is configured."""

    def __init__(self, history_size: int = 100) -> None:
        self.requested: Deque[ChargeIntent] = deque(maxlen=history_size)

    async def request_charge(self, intent: ChargeIntent) -> None:
        self.requested.append(intent)
        logger.warning(
            "No charge gateway configured; intent %s for subscription %s recorded only",
            intent.reference,
            intent.subscription_id,
        )
