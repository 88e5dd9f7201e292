from dataclasses import dataclass

from .config import Settings
from ..domain.ports.persistence import PersistenceGateway
from ..services.charge_gateway import ChargeGateway
from ..services.due_payment_scheduler import DuePaymentScheduler
from ..services.retry import RetryExecutor
from ..services.subscription_service import SubscriptionLifecycleManager
from ..services.webhook_reconciler import WebhookReconciler


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the FastAPI application lifecycle."""

    settings: Settings
    persistence: PersistenceGateway
    lifecycle_manager: SubscriptionLifecycleManager
    webhook_reconciler: WebhookReconciler
    charge_gateway: ChargeGateway
    retry_executor: RetryExecutor
    scheduler: DuePaymentScheduler
