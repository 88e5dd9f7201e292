from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..domain.exceptions import ValidationError
from ..domain.models import Subscription, utcnow
from ..domain.ports.persistence import PersistenceGateway
from .charge_gateway import ChargeGateway
from .retry import RetryExecutor, RetryPolicy
from .subscription_service import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)

ENABLED_SETTING = "scheduler.enabled"
INTERVAL_SETTING = "scheduler.interval_seconds"

CANCELLED = "cancelled"
RENEWAL_REQUESTED = "renewal_requested"
RENEWAL_REREQUESTED = "renewal_rerequested"
EXPIRED = "expired"
AWAITING_PAYMENT = "awaiting_payment"
SKIPPED = "skipped"


@dataclass(slots=True)
class SchedulerConfig:
    enabled: bool = False
    interval_seconds: float = 86400.0
    batch_size: int = 100
    concurrency: int = 4
    grace_period: timedelta = timedelta(hours=72)
    max_renewal_attempts: int = 3


@dataclass(slots=True)
class SweepResult:
    started_at: datetime
    finished_at: Optional[datetime] = None
    scanned: int = 0
    cancelled: int = 0
    renewals_requested: int = 0
    renewals_rerequested: int = 0
    expired: int = 0
    awaiting_payment: int = 0
    skipped: int = 0
    failed: int = 0
    failed_subscription_ids: List[str] = field(default_factory=list)

    def record(self, action: str) -> None:
        if action == CANCELLED:
            self.cancelled += 1
        elif action == RENEWAL_REQUESTED:
            self.renewals_requested += 1
        elif action == RENEWAL_REREQUESTED:
            self.renewals_rerequested += 1
        elif action == EXPIRED:
            self.expired += 1
        elif action == AWAITING_PAYMENT:
            self.awaiting_payment += 1
        else:
            self.skipped += 1

    def record_failure(self, subscription_id: str) -> None:
        self.failed += 1
        self.failed_subscription_ids.append(subscription_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "scanned": self.scanned,
            "cancelled": self.cancelled,
            "renewals_requested": self.renewals_requested,
            "renewals_rerequested": self.renewals_rerequested,
            "expired": self.expired,
            "awaiting_payment": self.awaiting_payment,
            "skipped": self.skipped,
            "failed": self.failed,
            "failed_subscription_ids": list(self.failed_subscription_ids),
        }


@dataclass(slots=True)
class SchedulerStats:
    total_sweeps: int = 0
    skipped_sweeps: int = 0
    last_sweep: Optional[SweepResult] = None
    last_error: Optional[str] = None


class DuePaymentScheduler:
    """Background worker that sweeps subscriptions whose period has ended.

    A sweep finalises deferred cancellations, requests renewal charges for
    unclaimed due subscriptions and follows up on outstanding renewals.
    Failures are isolated per subscription and never abort the sweep.
    """

    def __init__(
        self,
        store: PersistenceGateway,
        lifecycle: SubscriptionLifecycleManager,
        gateway: ChargeGateway,
        retry_executor: RetryExecutor,
        config: Optional[SchedulerConfig] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._gateway = gateway
        self._retry = retry_executor
        self._retry_policy = retry_policy
        self._clock = clock
        self.config = config or SchedulerConfig()
        self.stats = SchedulerStats()
        self._task: Optional[asyncio.Task[None]] = None
        self._shutdown = asyncio.Event()
        self._wakeup = asyncio.Event()
        self._sweep_lock = asyncio.Lock()
        self._cycle_started_at: Optional[datetime] = None
        self._load_persisted_settings()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        logger.info(
            "Starting due payment scheduler (interval=%ss, batch=%s, concurrency=%s).",
            self.config.interval_seconds,
            self.config.batch_size,
            self.config.concurrency,
        )
        self._shutdown.clear()
        self._wakeup.clear()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run_loop(), name="due-payment-scheduler")

    async def stop(self) -> None:
        if self._task is None:
            return
        logger.info("Stopping due payment scheduler.")
        self._shutdown.set()
        self._wakeup.set()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self._cycle_started_at = None

    async def enable(self) -> None:
        self.config.enabled = True
        self._store.set_setting(ENABLED_SETTING, "true")
        await self.start()

    async def disable(self) -> None:
        self.config.enabled = False
        self._store.set_setting(ENABLED_SETTING, "false")
        await self.stop()

    def reconfigure(self, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValidationError("Scheduler interval must be positive")
        self.config.interval_seconds = float(interval_seconds)
        self._store.set_setting(INTERVAL_SETTING, str(self.config.interval_seconds))
        self._wakeup.set()
        logger.info("Due payment scheduler interval set to %ss.", self.config.interval_seconds)

    def get_status(self) -> Dict[str, Any]:
        last = self.stats.last_sweep
        next_run = self.next_run_at()
        return {
            "enabled": self.config.enabled,
            "running": self.is_running,
            "sweep_in_progress": self._sweep_lock.locked(),
            "interval_seconds": self.config.interval_seconds,
            "batch_size": self.config.batch_size,
            "concurrency": self.config.concurrency,
            "grace_period_seconds": self.config.grace_period.total_seconds(),
            "max_renewal_attempts": self.config.max_renewal_attempts,
            "total_sweeps": self.stats.total_sweeps,
            "skipped_sweeps": self.stats.skipped_sweeps,
            "next_run_at": next_run.isoformat() if next_run else None,
            "last_error": self.stats.last_error,
            "last_sweep": last.to_dict() if last else None,
        }

    def next_run_at(self) -> Optional[datetime]:
        if not self.is_running or self._cycle_started_at is None:
            return None
        return self._cycle_started_at + timedelta(seconds=self.config.interval_seconds)

    def reset_stats(self) -> None:
        self.stats = SchedulerStats()
        logger.info("Due payment scheduler statistics reset.")

    async def run_now(self) -> Optional[SweepResult]:
        """Run one sweep; returns None when another sweep is in progress."""
        if self._sweep_lock.locked():
            logger.info("Sweep already in progress; skipping.")
            self.stats.skipped_sweeps += 1
            return None
        async with self._sweep_lock:
            return await self._sweep()

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._shutdown.is_set():
            started = loop.time()
            self._cycle_started_at = self._clock()
            try:
                await self.run_now()
            except Exception as exc:
                self.stats.last_error = str(exc)
                logger.exception("Due payment sweep failed.")
            while not self._shutdown.is_set():
                remaining = started + self.config.interval_seconds - loop.time()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                self._wakeup.clear()

    async def _sweep(self) -> SweepResult:
        now = self._clock()
        result = SweepResult(started_at=now)
        due = await asyncio.to_thread(self._store.list_due_subscriptions, now, self.config.batch_size)
        result.scanned = len(due)
        semaphore = asyncio.Semaphore(max(1, self.config.concurrency))

        async def guarded(subscription: Subscription) -> None:
            async with semaphore:
                try:
                    action = await self._process(subscription, now)
                except Exception:
                    logger.exception("Failed to process due subscription %s.", subscription.id)
                    result.record_failure(subscription.id)
                    return
                result.record(action)

        await asyncio.gather(*(guarded(subscription) for subscription in due))
        result.finished_at = self._clock()
        self.stats.total_sweeps += 1
        self.stats.last_sweep = result
        self.stats.last_error = None
        logger.info(
            "Sweep finished: scanned=%s cancelled=%s requested=%s rerequested=%s expired=%s failed=%s",
            result.scanned,
            result.cancelled,
            result.renewals_requested,
            result.renewals_rerequested,
            result.expired,
            result.failed,
        )
        return result

    async def _process(self, subscription: Subscription, now: datetime) -> str:
        if subscription.cancel_at_period_end:
            finalized = await asyncio.to_thread(
                self._lifecycle.finalize_deferred_cancellation, subscription.id, now
            )
            return CANCELLED if finalized else SKIPPED

        if subscription.renewal_reference is None:
            claimed = await asyncio.to_thread(self._lifecycle.claim_renewal, subscription.id, now)
            if claimed is None:
                return SKIPPED
            try:
                await self._emit(claimed)
            except Exception:
                await asyncio.to_thread(
                    self._lifecycle.release_renewal_claim, claimed.id, claimed.renewal_reference
                )
                raise
            return RENEWAL_REQUESTED

        return await self._follow_up(subscription, now)

    async def _follow_up(self, subscription: Subscription, now: datetime) -> str:
        reference = subscription.renewal_reference
        outcomes = await asyncio.to_thread(self._store.list_transactions_by_reference, reference)
        if any(transaction.is_successful for transaction in outcomes):
            # the webhook path owns the update
            logger.warning(
                "Subscription %s still holds renewal %s although a successful charge is recorded.",
                subscription.id,
                reference,
            )
            return SKIPPED

        failures = [transaction for transaction in outcomes if not transaction.is_successful]
        grace = self.config.grace_period
        if failures:
            last_failure = max(transaction.created_at for transaction in failures)
            if now - last_failure < grace:
                return AWAITING_PAYMENT
            expired = await asyncio.to_thread(
                self._lifecycle.expire, subscription.id, now, "Renewal payment failed"
            )
            return EXPIRED if expired else SKIPPED

        requested_at = subscription.renewal_requested_at or subscription.current_period_end
        if now - requested_at < grace:
            return AWAITING_PAYMENT
        if subscription.renewal_attempts >= self.config.max_renewal_attempts:
            expired = await asyncio.to_thread(
                self._lifecycle.expire,
                subscription.id,
                now,
                f"No renewal payment after {subscription.renewal_attempts} attempts",
            )
            return EXPIRED if expired else SKIPPED

        rerequested = await asyncio.to_thread(
            self._lifecycle.rerequest_renewal,
            subscription.id,
            reference,
            now,
            self.config.max_renewal_attempts,
        )
        if rerequested is None:
            return SKIPPED
        await self._emit(rerequested)
        return RENEWAL_REREQUESTED

    async def _emit(self, subscription: Subscription) -> None:
        intent = await asyncio.to_thread(self._lifecycle.build_renewal_intent, subscription)
        await self._retry.execute(lambda: self._gateway.request_charge(intent), self._retry_policy)

    def _load_persisted_settings(self) -> None:
        enabled = self._store.get_setting(ENABLED_SETTING)
        if enabled is not None:
            self.config.enabled = enabled == "true"
        interval = self._store.get_setting(INTERVAL_SETTING)
        if interval is not None:
            try:
                self.config.interval_seconds = float(interval)
            except ValueError:
                logger.warning("Ignoring invalid persisted scheduler interval %r.", interval)
