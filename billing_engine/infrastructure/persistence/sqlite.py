import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple

from ...domain.exceptions import (
    ConcurrentModificationError,
    StoreUnavailableError,
    SubscriptionNotFoundError,
    ValidationError,
)
from ...domain.models import (
    BillingAdjustment,
    BillingPeriod,
    Plan,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionKind,
    TransactionStatus,
    User,
)
from ...domain.ports.persistence import PersistenceGateway, SubscriptionMutation

logger = logging.getLogger(__name__)


class SQLitePersistence(PersistenceGateway):
    """SQLite-backed implementation of the persistence gateway.

    A single connection is shared between threads and guarded by a
    re-entrant lock. The lock is acquired with ``lock_timeout`` so callers
    fail with ``StoreUnavailableError`` instead of waiting forever.
    """

    def __init__(self, path: Path, *, lock_timeout: float = 5.0) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False, timeout=lock_timeout)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._lock_timeout = lock_timeout
        self._depth = 0
        self._initialize()

    def _initialize(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS plans (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    price_monthly TEXT NOT NULL,
                    price_annual TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    plan_id TEXT NOT NULL,
                    billing_period TEXT NOT NULL,
                    status TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 0,
                    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
                    cancelled_at TEXT,
                    cancellation_reason TEXT,
                    current_period_start TEXT NOT NULL,
                    current_period_end TEXT NOT NULL,
                    external_subscription_id TEXT,
                    renewal_reference TEXT,
                    renewal_requested_at TEXT,
                    renewal_attempts INTEGER NOT NULL DEFAULT 0,
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_subscriptions_user_status
                    ON subscriptions(user_id, status);
                CREATE INDEX IF NOT EXISTS idx_subscriptions_due
                    ON subscriptions(status, current_period_end);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_external_id
                    ON subscriptions(external_subscription_id)
                    WHERE external_subscription_id IS NOT NULL;

                CREATE TABLE IF NOT EXISTS subscription_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subscription_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    snapshot TEXT NOT NULL,
                    recorded_at TEXT NOT NULL,
                    UNIQUE(subscription_id, version)
                );

                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    gateway_event_id TEXT NOT NULL UNIQUE,
                    subscription_id TEXT,
                    user_id TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL,
                    reference TEXT,
                    kind TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_transactions_reference
                    ON transactions(reference);
                CREATE INDEX IF NOT EXISTS idx_transactions_subscription
                    ON transactions(subscription_id, created_at);

                CREATE TABLE IF NOT EXISTS billing_adjustments (
                    id TEXT PRIMARY KEY,
                    subscription_id TEXT NOT NULL,
                    from_plan_id TEXT NOT NULL,
                    to_plan_id TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    reference TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                );
                """
            )

    def close(self) -> None:
        self._conn.close()

    # Locking / unit of work -------------------------------------------------
    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise StoreUnavailableError(
                f"Timed out after {self._lock_timeout}s waiting for the billing store."
            )

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._acquire()
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        self._acquire()
        self._depth += 1
        try:
            yield
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self._conn.rollback()
            raise
        else:
            self._depth -= 1
            if self._depth == 0:
                self._conn.commit()
        finally:
            self._lock.release()

    # SettingsRepository API -------------------------------------------------
    def get_setting(self, key: str) -> Optional[str]:
        with self._locked():
            cur = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = cur.fetchone()
        return row["value"] if row else None

    def set_setting(self, key: str, value: str) -> None:
        with self.atomic():
            self._conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    # DirectoryRepository API ------------------------------------------------
    def find_user(self, user_id: str) -> Optional[User]:
        with self._locked():
            cur = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cur.fetchone()
        return self._row_to_user(row) if row else None

    def create_user(self, email: str, user_id: Optional[str] = None) -> User:
        new_id = user_id or uuid.uuid4().hex
        with self.atomic():
            self._conn.execute(
                "INSERT INTO users (id, email, created_at) VALUES (?, ?, ?)",
                (new_id, email.lower(), self._now()),
            )
            cur = self._conn.execute("SELECT * FROM users WHERE id = ?", (new_id,))
            row = cur.fetchone()
        if not row:
            raise RuntimeError("Failed to persist user.")
        return self._row_to_user(row)

    def find_plan(self, plan_id: str) -> Optional[Plan]:
        with self._locked():
            cur = self._conn.execute("SELECT * FROM plans WHERE id = ?", (plan_id,))
            row = cur.fetchone()
        return self._row_to_plan(row) if row else None

    def create_plan(self, plan: Plan) -> Plan:
        with self.atomic():
            self._conn.execute(
                """
                INSERT INTO plans (
                    id, name, price_monthly, price_annual, currency, is_active, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    plan.id,
                    plan.name,
                    str(plan.price_monthly),
                    str(plan.price_annual),
                    plan.currency.upper(),
                    int(plan.is_active),
                    self._format(plan.created_at) or self._now(),
                ),
            )
            cur = self._conn.execute("SELECT * FROM plans WHERE id = ?", (plan.id,))
            row = cur.fetchone()
        return self._row_to_plan(row)

    # SubscriptionStore API --------------------------------------------------
    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._locked():
            return self._fetch_subscription(subscription_id)

    def get_active_subscription_for_user(self, user_id: str) -> Optional[Subscription]:
        with self._locked():
            cur = self._conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE user_id = ? AND status = ?
                ORDER BY current_period_end DESC
                LIMIT 1
                """,
                (user_id, SubscriptionStatus.ACTIVE.value),
            )
            row = cur.fetchone()
        return self._row_to_subscription(row) if row else None

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        with self._locked():
            cur = self._conn.execute(
                "SELECT * FROM subscriptions WHERE external_subscription_id = ?",
                (external_subscription_id,),
            )
            row = cur.fetchone()
        return self._row_to_subscription(row) if row else None

    def create_subscription(self, subscription: Subscription) -> Subscription:
        now = self._now_datetime()
        stored = replace(subscription, version=1, created_at=now, updated_at=now)
        with self.atomic():
            try:
                self._conn.execute(
                    """
                    INSERT INTO subscriptions (
                        id, user_id, plan_id, billing_period, status, is_active,
                        cancel_at_period_end, cancelled_at, cancellation_reason,
                        current_period_start, current_period_end, external_subscription_id,
                        renewal_reference, renewal_requested_at, renewal_attempts,
                        version, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        stored.id,
                        stored.user_id,
                        stored.plan_id,
                        stored.billing_period.value,
                        stored.status.value,
                        int(stored.is_active),
                        int(stored.cancel_at_period_end),
                        self._format(stored.cancelled_at),
                        stored.cancellation_reason,
                        self._format(stored.current_period_start),
                        self._format(stored.current_period_end),
                        stored.external_subscription_id,
                        stored.renewal_reference,
                        self._format(stored.renewal_requested_at),
                        stored.renewal_attempts,
                        stored.version,
                        self._format(stored.created_at),
                        self._format(stored.updated_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError(
                    f"Subscription {stored.id} conflicts with an existing record: {exc}"
                ) from exc
            self._append_history(stored)
        return stored

    def compare_and_swap_subscription(
        self,
        subscription_id: str,
        expected_version: int,
        mutation: SubscriptionMutation,
    ) -> Subscription:
        with self.atomic():
            current = self._fetch_subscription(subscription_id)
            if current is None:
                raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
            if current.version != expected_version:
                raise ConcurrentModificationError(subscription_id, expected_version, current.version)

            mutated = mutation(current)
            if mutated.id != current.id or mutated.user_id != current.user_id:
                raise ValidationError("A subscription mutation may not change id or user_id")
            updated = replace(
                mutated,
                version=current.version + 1,
                created_at=current.created_at,
                updated_at=self._now_datetime(),
            )
            cur = self._conn.execute(
                """
                UPDATE subscriptions
                SET plan_id = ?, billing_period = ?, status = ?, is_active = ?,
                    cancel_at_period_end = ?, cancelled_at = ?, cancellation_reason = ?,
                    current_period_start = ?, current_period_end = ?,
                    external_subscription_id = ?, renewal_reference = ?,
                    renewal_requested_at = ?, renewal_attempts = ?,
                    version = ?, updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (
                    updated.plan_id,
                    updated.billing_period.value,
                    updated.status.value,
                    int(updated.is_active),
                    int(updated.cancel_at_period_end),
                    self._format(updated.cancelled_at),
                    updated.cancellation_reason,
                    self._format(updated.current_period_start),
                    self._format(updated.current_period_end),
                    updated.external_subscription_id,
                    updated.renewal_reference,
                    self._format(updated.renewal_requested_at),
                    updated.renewal_attempts,
                    updated.version,
                    self._format(updated.updated_at),
                    subscription_id,
                    expected_version,
                ),
            )
            if cur.rowcount != 1:
                raise ConcurrentModificationError(subscription_id, expected_version, current.version)
            self._append_history(updated)
        return updated

    def list_due_subscriptions(self, now: datetime, limit: int) -> List[Subscription]:
        with self._locked():
            cur = self._conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE status = ? AND current_period_end <= ?
                ORDER BY current_period_end ASC
                LIMIT ?
                """,
                (SubscriptionStatus.ACTIVE.value, self._format(now), limit),
            )
            rows = cur.fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def get_subscription_history(self, subscription_id: str) -> List[Subscription]:
        with self._locked():
            cur = self._conn.execute(
                """
                SELECT snapshot FROM subscription_history
                WHERE subscription_id = ?
                ORDER BY version ASC
                """,
                (subscription_id,),
            )
            rows = cur.fetchall()
        return [self._snapshot_to_subscription(json.loads(row["snapshot"])) for row in rows]

    # TransactionLedger API --------------------------------------------------
    def create_transaction_if_absent(
        self, gateway_event_id: str, transaction: Transaction
    ) -> Tuple[bool, Transaction]:
        record = replace(transaction, gateway_event_id=gateway_event_id)
        with self.atomic():
            cur = self._conn.execute(
                """
                INSERT OR IGNORE INTO transactions (
                    id, gateway_event_id, subscription_id, user_id, amount,
                    currency, status, reference, kind, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.gateway_event_id,
                    record.subscription_id,
                    record.user_id,
                    str(record.amount),
                    record.currency,
                    record.status.value,
                    record.reference,
                    record.kind.value,
                    self._format(record.created_at),
                ),
            )
            if cur.rowcount == 1:
                return True, record
            existing = self._fetch_transaction_by_event_id(gateway_event_id)
        if existing is None:
            raise RuntimeError(f"Transaction for event {gateway_event_id} vanished after conflict.")
        return False, existing

    def get_transaction_by_event_id(self, gateway_event_id: str) -> Optional[Transaction]:
        with self._locked():
            return self._fetch_transaction_by_event_id(gateway_event_id)

    def list_transactions_by_reference(self, reference: str) -> List[Transaction]:
        with self._locked():
            cur = self._conn.execute(
                "SELECT * FROM transactions WHERE reference = ? ORDER BY created_at ASC",
                (reference,),
            )
            rows = cur.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    def list_transactions_for_subscription(self, subscription_id: str) -> List[Transaction]:
        with self._locked():
            cur = self._conn.execute(
                "SELECT * FROM transactions WHERE subscription_id = ? ORDER BY created_at ASC",
                (subscription_id,),
            )
            rows = cur.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    # AdjustmentRepository API -----------------------------------------------
    def record_adjustment(self, adjustment: BillingAdjustment) -> BillingAdjustment:
        with self.atomic():
            self._conn.execute(
                """
                INSERT INTO billing_adjustments (
                    id, subscription_id, from_plan_id, to_plan_id, amount,
                    currency, reference, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    adjustment.id,
                    adjustment.subscription_id,
                    adjustment.from_plan_id,
                    adjustment.to_plan_id,
                    str(adjustment.amount),
                    adjustment.currency,
                    adjustment.reference,
                    self._format(adjustment.created_at),
                ),
            )
        return adjustment

    def list_adjustments(self, subscription_id: str) -> List[BillingAdjustment]:
        with self._locked():
            cur = self._conn.execute(
                """
                SELECT * FROM billing_adjustments
                WHERE subscription_id = ?
                ORDER BY created_at ASC
                """,
                (subscription_id,),
            )
            rows = cur.fetchall()
        return [self._row_to_adjustment(row) for row in rows]

    # Helpers ----------------------------------------------------------------
    def _fetch_subscription(self, subscription_id: str) -> Optional[Subscription]:
        cur = self._conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
        row = cur.fetchone()
        return self._row_to_subscription(row) if row else None

    def _fetch_transaction_by_event_id(self, gateway_event_id: str) -> Optional[Transaction]:
        cur = self._conn.execute(
            "SELECT * FROM transactions WHERE gateway_event_id = ?", (gateway_event_id,)
        )
        row = cur.fetchone()
        return self._row_to_transaction(row) if row else None

    def _append_history(self, subscription: Subscription) -> None:
        self._conn.execute(
            """
            INSERT INTO subscription_history (subscription_id, version, snapshot, recorded_at)
            VALUES (?, ?, ?, ?)
            """,
            (
                subscription.id,
                subscription.version,
                json.dumps(self._subscription_snapshot(subscription)),
                self._now(),
            ),
        )

    def _now_datetime(self) -> datetime:
        return datetime.now(timezone.utc)

    def _now(self) -> str:
        return self._format(self._now_datetime())

    @staticmethod
    def _format(value: Optional[datetime]) -> Optional[str]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")

    @staticmethod
    def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        result = datetime.fromisoformat(value)
        if result.tzinfo is None:
            return result.replace(tzinfo=timezone.utc)
        return result.astimezone(timezone.utc)

    def _subscription_snapshot(self, subscription: Subscription) -> dict:
        return {
            "id": subscription.id,
            "user_id": subscription.user_id,
            "plan_id": subscription.plan_id,
            "billing_period": subscription.billing_period.value,
            "status": subscription.status.value,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "cancelled_at": self._format(subscription.cancelled_at),
            "cancellation_reason": subscription.cancellation_reason,
            "current_period_start": self._format(subscription.current_period_start),
            "current_period_end": self._format(subscription.current_period_end),
            "external_subscription_id": subscription.external_subscription_id,
            "renewal_reference": subscription.renewal_reference,
            "renewal_requested_at": self._format(subscription.renewal_requested_at),
            "renewal_attempts": subscription.renewal_attempts,
            "version": subscription.version,
            "created_at": self._format(subscription.created_at),
            "updated_at": self._format(subscription.updated_at),
        }

    def _snapshot_to_subscription(self, data: dict) -> Subscription:
        return self._build_subscription(data)

    def _row_to_subscription(self, row: sqlite3.Row) -> Subscription:
        return self._build_subscription(dict(row))

    def _build_subscription(self, data: Any) -> Subscription:
        return Subscription(
            id=data["id"],
            user_id=data["user_id"],
            plan_id=data["plan_id"],
            billing_period=BillingPeriod(data["billing_period"]),
            status=SubscriptionStatus(data["status"]),
            current_period_start=self._parse_datetime(data["current_period_start"]),
            current_period_end=self._parse_datetime(data["current_period_end"]),
            cancel_at_period_end=bool(data["cancel_at_period_end"]),
            cancelled_at=self._parse_datetime(data["cancelled_at"]),
            cancellation_reason=data["cancellation_reason"],
            external_subscription_id=data["external_subscription_id"],
            renewal_reference=data["renewal_reference"],
            renewal_requested_at=self._parse_datetime(data["renewal_requested_at"]),
            renewal_attempts=int(data["renewal_attempts"] or 0),
            version=int(data["version"]),
            created_at=self._parse_datetime(data["created_at"]),
            updated_at=self._parse_datetime(data["updated_at"]),
        )

    def _row_to_transaction(self, row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            user_id=row["user_id"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            status=TransactionStatus(row["status"]),
            gateway_event_id=row["gateway_event_id"],
            created_at=self._parse_datetime(row["created_at"]),
            subscription_id=row["subscription_id"],
            reference=row["reference"],
            kind=TransactionKind(row["kind"]),
        )

    def _row_to_adjustment(self, row: sqlite3.Row) -> BillingAdjustment:
        return BillingAdjustment(
            id=row["id"],
            subscription_id=row["subscription_id"],
            from_plan_id=row["from_plan_id"],
            to_plan_id=row["to_plan_id"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            reference=row["reference"],
            created_at=self._parse_datetime(row["created_at"]),
        )

    def _row_to_plan(self, row: sqlite3.Row) -> Plan:
        return Plan(
            id=row["id"],
            name=row["name"],
            price_monthly=Decimal(row["price_monthly"]),
            price_annual=Decimal(row["price_annual"]),
            currency=row["currency"],
            is_active=bool(row["is_active"]),
            created_at=self._parse_datetime(row["created_at"]),
        )

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            created_at=self._parse_datetime(row["created_at"]),
        )
