from __future__ import annotations

from datetime import datetime
from typing import Callable, ContextManager, List, Optional, Protocol, Tuple

from ..models import BillingAdjustment, Plan, Subscription, Transaction, User

SubscriptionMutation = Callable[[Subscription], Subscription]


class SettingsRepository(Protocol):
    """Abstract storage for application key-value settings."""

    def get_setting(self, key: str) -> Optional[str]:
        ...

    def set_setting(self, key: str, value: str) -> None:
        ...


class DirectoryRepository(Protocol):
    """Lookup of users and catalog plans owned by other parts of the app."""

    def find_user(self, user_id: str) -> Optional[User]:
        ...

    def find_plan(self, plan_id: str) -> Optional[Plan]:
        ...

    def create_user(self, email: str, user_id: Optional[str] = None) -> User:
        ...

    def create_plan(self, plan: Plan) -> Plan:
        ...


class UnitOfWork(Protocol):
    def atomic(self) -> ContextManager[None]:
        """Group store calls so they commit or roll back together."""
        ...


class SubscriptionStore(Protocol):
    """Atomic access to subscription records.

    Every write is a compare-and-swap against ``Subscription.version``; a
    mismatch raises ``ConcurrentModificationError`` and nothing is written.
    """

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_active_subscription_for_user(self, user_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        ...

    def create_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def compare_and_swap_subscription(
        self,
        subscription_id: str,
        expected_version: int,
        mutation: SubscriptionMutation,
    ) -> Subscription:
        ...

    def list_due_subscriptions(self, now: datetime, limit: int) -> List[Subscription]:
        ...

    def get_subscription_history(self, subscription_id: str) -> List[Subscription]:
        ...


class TransactionLedger(Protocol):
    """Append-only ledger keyed by gateway event id."""

    def create_transaction_if_absent(
        self, gateway_event_id: str, transaction: Transaction
    ) -> Tuple[bool, Transaction]:
        """Insert ``transaction`` unless ``gateway_event_id`` is already stored.

        Returns ``(True, transaction)`` for the single caller that inserted and
        ``(False, existing)`` for every other caller.
        """
        ...

    def get_transaction_by_event_id(self, gateway_event_id: str) -> Optional[Transaction]:
        ...

    def list_transactions_by_reference(self, reference: str) -> List[Transaction]:
        ...

    def list_transactions_for_subscription(self, subscription_id: str) -> List[Transaction]:
        ...


class AdjustmentRepository(Protocol):
    def record_adjustment(self, adjustment: BillingAdjustment) -> BillingAdjustment:
        ...

    def list_adjustments(self, subscription_id: str) -> List[BillingAdjustment]:
        ...


class PersistenceGateway(
    SettingsRepository,
    DirectoryRepository,
    UnitOfWork,
    SubscriptionStore,
    TransactionLedger,
    AdjustmentRepository,
    Protocol,
):
    """Composite gateway combining every persistence concern used by the app."""

    pass
