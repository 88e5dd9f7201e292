"""Shared fixtures for the billing engine tests."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billing_engine.domain.models import Plan
from billing_engine.infrastructure.persistence.sqlite import SQLitePersistence
from billing_engine.services.subscription_service import SubscriptionLifecycleManager
from billing_engine.services.webhook_reconciler import WebhookReconciler
from tests.helpers import WEBHOOK_SECRET, FakeClock


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path):
    persistence = SQLitePersistence(tmp_path / "billing.db", lock_timeout=2.0)
    yield persistence
    persistence.close()


@pytest.fixture
def user(store):
    return store.create_user("ada@example.com", user_id="user-1")


@pytest.fixture
def plans(store):
    basic = store.create_plan(
        Plan(
            id="basic",
            name="Basic",
            price_monthly=Decimal("10.00"),
            price_annual=Decimal("100.00"),
            currency="NGN",
        )
    )
    pro = store.create_plan(
        Plan(
            id="pro",
            name="Pro",
            price_monthly=Decimal("30.00"),
            price_annual=Decimal("300.00"),
            currency="NGN",
        )
    )
    retired = store.create_plan(
        Plan(
            id="legacy",
            name="Legacy",
            price_monthly=Decimal("5.00"),
            price_annual=Decimal("50.00"),
            currency="NGN",
            is_active=False,
        )
    )
    return {"basic": basic, "pro": pro, "legacy": retired}


@pytest.fixture
def lifecycle(store, clock):
    return SubscriptionLifecycleManager(store, clock=clock)


@pytest.fixture
def reconciler(store, clock):
    return WebhookReconciler(store, WEBHOOK_SECRET, clock=clock)
