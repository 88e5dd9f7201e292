"""Tests for outbound charge requests."""

import json
from dataclasses import replace
from decimal import Decimal

import httpx
import pytest

from billing_engine.domain.exceptions import ChargeRejectedError, GatewayUnavailableError
from billing_engine.services.charge_gateway import ChargeIntent, HttpChargeGateway, LoggingChargeGateway

pytestmark = pytest.mark.asyncio


def _intent():
    return ChargeIntent(
        reference="renew_abc",
        subscription_id="sub-1",
        user_id="user-1",
        plan_id="basic",
        billing_period="monthly",
        amount=Decimal("10.00"),
        currency="NGN",
        customer_email="ada@example.com",
    )


def _gateway(handler):
    return HttpChargeGateway("https://gateway.test/", "sk_test", transport=httpx.MockTransport(handler))


async def test_posts_payload_with_bearer_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"status": "success"})

    await _gateway(handler).request_charge(_intent())

    request = seen[0]
    assert str(request.url) == "https://gateway.test/v3/payments"
    assert request.headers["Authorization"] == "Bearer sk_test"
    body = json.loads(request.content)
    assert body["tx_ref"] == "renew_abc"
    assert body["amount"] == "10.00"
    assert body["meta"]["subscriptionId"] == "sub-1"
    assert body["meta"]["transactionType"] == "renewal"
    assert body["customer"] == {"email": "ada@example.com"}


@pytest.mark.parametrize("status_code", [500, 503, 429])
async def test_server_errors_are_transient(status_code):
    gateway = _gateway(lambda request: httpx.Response(status_code))

    with pytest.raises(GatewayUnavailableError) as excinfo:
        await gateway.request_charge(_intent())

    assert excinfo.value.retryable is True


async def test_client_errors_are_rejections():
    gateway = _gateway(lambda request: httpx.Response(400, json={"message": "invalid amount"}))

    with pytest.raises(ChargeRejectedError) as excinfo:
        await gateway.request_charge(_intent())

    assert excinfo.value.retryable is False


async def test_transport_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayUnavailableError):
        await _gateway(handler).request_charge(_intent())


async def test_logging_gateway_keeps_recent_intents_only():
    gateway = LoggingChargeGateway(history_size=2)

    for reference in ("renew_1", "renew_2", "renew_3"):
        await gateway.request_charge(replace(_intent(), reference=reference))

    assert [intent.reference for intent in gateway.requested] == ["renew_2", "renew_3"]
