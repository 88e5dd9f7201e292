"""HTTP surface tests using FastAPI's TestClient."""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from billing_engine.core.app_factory import create_application
from billing_engine.core.config import Settings
from billing_engine.core.dependencies import get_webhook_reconciler
from billing_engine.domain.exceptions import StoreUnavailableError
from billing_engine.domain.models import Plan
from tests.helpers import WEBHOOK_SECRET, RecordingGateway, charge_event, no_sleep, seed_subscription, sign

TOKEN = "operator-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


class UnavailableReconciler:
    def handle_event(self, raw_payload, signature):
        raise StoreUnavailableError("store busy")


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def app(tmp_path, monkeypatch, clock, gateway):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "api.db"))
    monkeypatch.setenv("WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("ADMIN_API_TOKEN", TOKEN)
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.delenv("GATEWAY_BASE_URL", raising=False)
    return create_application(Settings(), charge_gateway=gateway, clock=clock, retry_sleep=no_sleep)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        persistence = app.state.container.persistence
        persistence.create_user("ada@example.com", user_id="user-1")
        persistence.create_plan(
            Plan(
                id="basic",
                name="Basic",
                price_monthly=Decimal("10.00"),
                price_annual=Decimal("100.00"),
                currency="NGN",
            )
        )
        persistence.create_plan(
            Plan(
                id="pro",
                name="Pro",
                price_monthly=Decimal("30.00"),
                price_annual=Decimal("300.00"),
                currency="NGN",
            )
        )
        yield test_client


@pytest.fixture
def persistence(app, client):
    return app.state.container.persistence


def test_health_reports_scheduler(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["scheduler"]["running"] is False


class TestWebhook:
    def test_liveness(self, client):
        response = client.get("/api/webhooks/gateway")

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_processes_then_acknowledges_duplicate(self, client, persistence):
        body = charge_event("evt-1")
        headers = {"verif-hash": sign(body)}

        first = client.post("/api/webhooks/gateway", content=body, headers=headers)
        second = client.post("/api/webhooks/gateway", content=body, headers=headers)

        assert first.status_code == 200
        assert first.json()["outcome"] == "processed"
        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"
        assert persistence.get_active_subscription_for_user("user-1").plan_id == "basic"

    def test_bad_signature_is_rejected(self, client, persistence):
        body = charge_event("evt-1")

        response = client.post("/api/webhooks/gateway", content=body, headers={"verif-hash": "0" * 64})

        assert response.status_code == 401
        assert response.json()["success"] is False
        assert persistence.get_transaction_by_event_id("evt-1") is None

    def test_missing_signature_is_rejected(self, client):
        response = client.post("/api/webhooks/gateway", content=charge_event("evt-1"))

        assert response.status_code == 401

    def test_malformed_body_requests_redelivery(self, client):
        body = b"not json"

        response = client.post("/api/webhooks/gateway", content=body, headers={"verif-hash": sign(body)})

        assert response.status_code == 500
        assert response.json()["success"] is False

    def test_transient_failure_answers_503(self, app, client):
        app.dependency_overrides[get_webhook_reconciler] = UnavailableReconciler
        try:
            body = charge_event("evt-1")
            response = client.post("/api/webhooks/gateway", content=body, headers={"verif-hash": sign(body)})
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 503
        assert response.json() == {"success": False, "error": "store busy"}


class TestSubscriptions:
    def test_requires_operator_token(self, client):
        assert client.get("/api/subscriptions/anything").status_code == 401
        assert (
            client.get("/api/subscriptions/anything", headers={"Authorization": "Bearer wrong"}).status_code
            == 403
        )

    def test_create_and_fetch(self, client):
        created = client.post(
            "/api/subscriptions",
            json={"user_id": "user-1", "plan_id": "basic", "billing_period": "annual"},
            headers=AUTH,
        )

        assert created.status_code == 201
        subscription = created.json()["subscription"]
        assert subscription["status"] == "pending"
        assert subscription["billing_period"] == "annual"

        fetched = client.get(f"/api/subscriptions/{subscription['id']}", headers=AUTH)
        assert fetched.status_code == 200
        assert fetched.json()["subscription"]["id"] == subscription["id"]

    def test_create_for_unknown_plan(self, client):
        response = client.post(
            "/api/subscriptions",
            json={"user_id": "user-1", "plan_id": "platinum"},
            headers=AUTH,
        )

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_create_with_linked_external_id(self, client, persistence):
        persistence.create_user("grace@example.com", user_id="user-2")
        payload = {"user_id": "user-1", "plan_id": "basic", "external_subscription_id": "ext-1"}
        client.post("/api/subscriptions", json=payload, headers=AUTH)

        response = client.post("/api/subscriptions", json={**payload, "user_id": "user-2"}, headers=AUTH)

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_unknown_subscription(self, client):
        response = client.get("/api/subscriptions/missing", headers=AUTH)

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_current_subscription(self, client, persistence, clock):
        active = seed_subscription(persistence, start=clock())

        response = client.get("/api/subscriptions/users/user-1/current", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["subscription"]["id"] == active.id

    def test_cancel_at_period_end(self, client, persistence, clock):
        active = seed_subscription(persistence, start=clock())

        response = client.post(
            f"/api/subscriptions/{active.id}/cancel",
            json={"immediate": False, "reason": "moving on"},
            headers=AUTH,
        )

        assert response.status_code == 200
        subscription = response.json()["subscription"]
        assert subscription["status"] == "active"
        assert subscription["cancel_at_period_end"] is True

    def test_plan_change_returns_adjustment(self, client, persistence, clock):
        active = seed_subscription(persistence, start=clock())

        preview = client.get(f"/api/subscriptions/{active.id}/proration", params={"plan_id": "pro"}, headers=AUTH)
        changed = client.patch(f"/api/subscriptions/{active.id}", json={"plan_id": "pro"}, headers=AUTH)

        assert preview.status_code == 200
        assert Decimal(preview.json()["amount"]) == Decimal("20.00")
        assert changed.status_code == 200
        body = changed.json()
        assert body["subscription"]["plan_id"] == "pro"
        assert Decimal(body["adjustment"]["amount"]) == Decimal("20.00")
        assert body["adjustment"]["status"] == "pending"

        adjustments = client.get(f"/api/subscriptions/{active.id}/adjustments", headers=AUTH).json()["items"]
        history = client.get(f"/api/subscriptions/{active.id}/history", headers=AUTH).json()["items"]
        assert [item["reference"] for item in adjustments] == [body["adjustment"]["reference"]]
        assert [item["version"] for item in history] == [1, 2]

    def test_update_without_changes_is_rejected(self, client, persistence, clock):
        active = seed_subscription(persistence, start=clock())

        response = client.patch(f"/api/subscriptions/{active.id}", json={}, headers=AUTH)

        assert response.status_code == 400

    def test_transactions_listing(self, client, persistence, clock):
        active = seed_subscription(persistence, start=clock())
        body = charge_event("evt-renew", subscription_id=active.id)
        client.post("/api/webhooks/gateway", content=body, headers={"verif-hash": sign(body)})

        response = client.get(f"/api/subscriptions/{active.id}/transactions", headers=AUTH)

        assert response.status_code == 200
        assert [item["gateway_event_id"] for item in response.json()["items"]] == ["evt-renew"]


class TestScheduler:
    def test_status_requires_token(self, client):
        assert client.get("/api/scheduler").status_code == 401

    def test_run_now_requests_due_renewals(self, client, persistence, clock, gateway):
        seed_subscription(persistence, start=clock() - timedelta(days=40))

        response = client.post("/api/scheduler/run", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["skipped"] is False
        assert body["sweep"]["renewals_requested"] == 1
        assert len(gateway.requested) == 1

    def test_interval_update(self, client, persistence):
        response = client.put("/api/scheduler/interval", json={"interval_seconds": 600}, headers=AUTH)
        invalid = client.put("/api/scheduler/interval", json={"interval_seconds": 0}, headers=AUTH)

        assert response.status_code == 200
        assert response.json()["scheduler"]["interval_seconds"] == 600.0
        assert persistence.get_setting("scheduler.interval_seconds") == "600.0"
        assert invalid.status_code == 422

    def test_stats_reset(self, client):
        client.post("/api/scheduler/run", headers=AUTH)

        response = client.post("/api/scheduler/stats/reset", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["scheduler"]["total_sweeps"] == 0
        assert response.json()["scheduler"]["next_run_at"] is None

    def test_enable_and_disable(self, client, persistence):
        enabled = client.post("/api/scheduler/enable", headers=AUTH)
        disabled = client.post("/api/scheduler/disable", headers=AUTH)

        assert enabled.json()["scheduler"]["enabled"] is True
        assert disabled.json()["scheduler"]["enabled"] is False
        assert disabled.json()["scheduler"]["running"] is False
        assert persistence.get_setting("scheduler.enabled") == "false"
