"""Tests for the due payment scheduler."""

import asyncio
import logging
import threading
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from billing_engine.domain.exceptions import ValidationError
from billing_engine.domain.models import (
    Plan,
    SubscriptionStatus,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from billing_engine.infrastructure.persistence.sqlite import SQLitePersistence
from billing_engine.services.due_payment_scheduler import (
    DuePaymentScheduler,
    SchedulerConfig,
)
from billing_engine.services.retry import RetryExecutor, RetryPolicy
from billing_engine.services.subscription_service import SubscriptionLifecycleManager
from tests.helpers import RecordingGateway, charge_event, no_sleep, seed_subscription, sign

pytestmark = pytest.mark.asyncio


def build_scheduler(store, lifecycle, gateway, clock, **config):
    return DuePaymentScheduler(
        store,
        lifecycle,
        gateway,
        RetryExecutor(RetryPolicy(max_retries=2, retry_delay=0.01), sleep=no_sleep),
        SchedulerConfig(**config),
        clock=clock,
    )


class ThreadRecordingStore(SQLitePersistence):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.threads = set()

    def list_due_subscriptions(self, now, limit):
        self.threads.add(threading.get_ident())
        return super().list_due_subscriptions(now, limit)

    def list_transactions_by_reference(self, reference):
        self.threads.add(threading.get_ident())
        return super().list_transactions_by_reference(reference)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def scheduler(store, lifecycle, gateway, clock):
    return build_scheduler(store, lifecycle, gateway, clock)


class TestSweep:
    async def test_requests_renewal_for_due_subscription(self, scheduler, store, gateway, user, plans, clock):
        due = seed_subscription(store, start=clock() - timedelta(days=40))
        seed_subscription(store, start=clock(), user_id="user-2")

        result = await scheduler.run_now()

        assert result.scanned == 1
        assert result.renewals_requested == 1
        claimed = store.get_subscription(due.id)
        assert claimed.renewal_reference is not None
        assert claimed.renewal_attempts == 1
        assert claimed.status is SubscriptionStatus.ACTIVE
        assert len(gateway.requested) == 1
        intent = gateway.requested[0]
        assert intent.reference == claimed.renewal_reference
        assert intent.amount == Decimal("10.00")

    async def test_outstanding_claim_is_not_requested_twice(self, scheduler, store, gateway, user, plans, clock):
        seed_subscription(store, start=clock() - timedelta(days=40))

        await scheduler.run_now()
        clock.advance(hours=1)
        second = await scheduler.run_now()

        assert second.awaiting_payment == 1
        assert second.renewals_requested == 0
        assert len(gateway.requested) == 1

    async def test_finalizes_deferred_cancellation(self, scheduler, store, gateway, user, plans, clock):
        subscription = seed_subscription(store, start=clock() - timedelta(days=40), cancel_at_period_end=True)

        result = await scheduler.run_now()

        assert result.cancelled == 1
        cancelled = store.get_subscription(subscription.id)
        assert cancelled.status is SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == clock()
        assert gateway.requested == []

    async def test_transient_gateway_failure_is_retried(self, store, lifecycle, user, plans, clock):
        gateway = RecordingGateway(failures=2)
        scheduler = build_scheduler(store, lifecycle, gateway, clock)
        seed_subscription(store, start=clock() - timedelta(days=40))

        result = await scheduler.run_now()

        assert result.renewals_requested == 1
        assert gateway.calls == 3

    async def test_failed_emission_releases_claim_and_sweep_continues(self, store, lifecycle, user, plans, clock):
        broken = seed_subscription(store, start=clock() - timedelta(days=40))
        healthy = seed_subscription(store, start=clock() - timedelta(days=35), user_id="user-2")
        gateway = RecordingGateway(fail_for={broken.id})
        scheduler = build_scheduler(store, lifecycle, gateway, clock)

        result = await scheduler.run_now()

        assert result.failed == 1
        assert result.failed_subscription_ids == [broken.id]
        assert result.renewals_requested == 1
        assert store.get_subscription(broken.id).renewal_reference is None
        assert store.get_subscription(healthy.id).renewal_reference is not None
        assert [intent.subscription_id for intent in gateway.requested] == [healthy.id]

    async def test_failed_charge_expires_after_grace(self, scheduler, reconciler, store, user, plans, clock):
        subscription = seed_subscription(store, start=clock() - timedelta(days=40))
        await scheduler.run_now()
        reference = store.get_subscription(subscription.id).renewal_reference
        body = charge_event("evt-fail", status="failed", subscription_id=subscription.id, tx_ref=reference)
        reconciler.handle_event(body, sign(body))

        clock.advance(hours=24)
        within_grace = await scheduler.run_now()
        assert within_grace.awaiting_payment == 1
        assert store.get_subscription(subscription.id).status is SubscriptionStatus.ACTIVE

        clock.advance(hours=49)
        after_grace = await scheduler.run_now()

        assert after_grace.expired == 1
        expired = store.get_subscription(subscription.id)
        assert expired.status is SubscriptionStatus.EXPIRED
        assert expired.is_active is False

    async def test_silence_after_grace_rerequests_then_expires(self, store, lifecycle, gateway, user, plans, clock):
        scheduler = build_scheduler(
            store, lifecycle, gateway, clock, grace_period=timedelta(hours=1), max_renewal_attempts=2
        )
        subscription = seed_subscription(store, start=clock() - timedelta(days=40))

        await scheduler.run_now()
        clock.advance(hours=2)
        second = await scheduler.run_now()

        assert second.renewals_rerequested == 1
        rerequested = store.get_subscription(subscription.id)
        assert rerequested.renewal_attempts == 2
        assert gateway.requested[0].reference == gateway.requested[1].reference

        clock.advance(hours=2)
        third = await scheduler.run_now()

        assert third.expired == 1
        assert store.get_subscription(subscription.id).status is SubscriptionStatus.EXPIRED

    async def test_successful_renewal_webhook_ends_the_cycle(self, scheduler, reconciler, store, user, plans, clock):
        subscription = seed_subscription(store, start=clock() - timedelta(days=40))
        await scheduler.run_now()
        reference = store.get_subscription(subscription.id).renewal_reference
        body = charge_event("evt-ok", subscription_id=subscription.id, tx_ref=reference)
        reconciler.handle_event(body, sign(body))

        result = await scheduler.run_now()

        assert result.scanned == 0
        renewed = store.get_subscription(subscription.id)
        assert renewed.renewal_reference is None
        assert renewed.current_period_end > clock()

    async def test_store_work_runs_off_the_event_loop(self, tmp_path, gateway, clock):
        store = ThreadRecordingStore(tmp_path / "threads.db")
        try:
            store.create_user("ada@example.com", user_id="user-1")
            store.create_plan(
                Plan(
                    id="basic",
                    name="Basic",
                    price_monthly=Decimal("10.00"),
                    price_annual=Decimal("100.00"),
                    currency="NGN",
                )
            )
            seed_subscription(store, start=clock() - timedelta(days=40))
            scheduler = build_scheduler(store, SubscriptionLifecycleManager(store, clock=clock), gateway, clock)

            await scheduler.run_now()
            await scheduler.run_now()
        finally:
            store.close()

        assert store.threads
        assert threading.get_ident() not in store.threads

    async def test_recorded_success_with_outstanding_claim_is_reported(
        self, scheduler, store, user, plans, clock, caplog
    ):
        subscription = seed_subscription(store, start=clock() - timedelta(days=40))
        await scheduler.run_now()
        reference = store.get_subscription(subscription.id).renewal_reference
        store.create_transaction_if_absent(
            "evt-stray",
            Transaction(
                id=uuid.uuid4().hex,
                user_id="user-1",
                amount=Decimal("10.00"),
                currency="NGN",
                status=TransactionStatus.SUCCESSFUL,
                gateway_event_id="evt-stray",
                created_at=clock(),
                subscription_id=subscription.id,
                reference=reference,
                kind=TransactionKind.ADJUSTMENT,
            ),
        )

        with caplog.at_level(logging.WARNING, logger="billing_engine.services.due_payment_scheduler"):
            result = await scheduler.run_now()

        assert result.skipped == 1
        assert any(reference in record.getMessage() for record in caplog.records)

    async def test_overlapping_sweep_is_skipped(self, store, lifecycle, user, plans, clock):
        release = asyncio.Event()
        entered = asyncio.Event()

        class SlowGateway(RecordingGateway):
            async def request_charge(self, intent):
                entered.set()
                await release.wait()
                await super().request_charge(intent)

        scheduler = build_scheduler(store, lifecycle, SlowGateway(), clock)
        seed_subscription(store, start=clock() - timedelta(days=40))

        first = asyncio.create_task(scheduler.run_now())
        await entered.wait()
        skipped = await scheduler.run_now()
        release.set()
        completed = await first

        assert skipped is None
        assert completed.renewals_requested == 1
        assert scheduler.stats.skipped_sweeps == 1
        assert scheduler.stats.total_sweeps == 1


class TestLifecycle:
    async def test_start_and_stop(self, scheduler, store, user, plans, clock):
        seed_subscription(store, start=clock() - timedelta(days=40))

        await scheduler.start()
        assert scheduler.is_running
        for _ in range(50):
            if scheduler.stats.total_sweeps:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert scheduler.is_running is False
        assert scheduler.stats.total_sweeps >= 1

    async def test_enable_and_interval_are_persisted(self, store, lifecycle, gateway, clock):
        scheduler = build_scheduler(store, lifecycle, gateway, clock, interval_seconds=3600)

        await scheduler.enable()
        scheduler.reconfigure(120)
        await scheduler.stop()

        restored = build_scheduler(store, lifecycle, gateway, clock)
        assert restored.config.enabled is True
        assert restored.config.interval_seconds == 120.0

        await restored.disable()
        assert build_scheduler(store, lifecycle, gateway, clock).config.enabled is False

    async def test_status_reports_next_run(self, store, lifecycle, gateway, clock):
        scheduler = build_scheduler(store, lifecycle, gateway, clock, interval_seconds=3600)
        assert scheduler.get_status()["next_run_at"] is None

        await scheduler.start()
        for _ in range(50):
            if scheduler.stats.total_sweeps:
                break
            await asyncio.sleep(0.01)
        running = scheduler.get_status()
        await scheduler.stop()

        assert running["next_run_at"] == (clock() + timedelta(hours=1)).isoformat()
        assert scheduler.get_status()["next_run_at"] is None

    async def test_reset_stats(self, scheduler):
        await scheduler.run_now()

        scheduler.reset_stats()

        status = scheduler.get_status()
        assert status["total_sweeps"] == 0
        assert status["last_sweep"] is None

    async def test_rejects_non_positive_interval(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.reconfigure(0)

    async def test_status_reports_last_sweep(self, scheduler, store, user, plans, clock):
        seed_subscription(store, start=clock() - timedelta(days=40))
        await scheduler.run_now()

        status = scheduler.get_status()

        assert status["running"] is False
        assert status["total_sweeps"] == 1
        assert status["last_sweep"]["renewals_requested"] == 1
