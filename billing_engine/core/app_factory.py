from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .container import ApplicationContainer
from .logging import configure_logging
from ..domain.models import utcnow
from ..infrastructure.persistence.sqlite import SQLitePersistence
from ..presentation.api.routers import scheduler as scheduler_router
from ..presentation.api.routers import subscriptions as subscriptions_router
from ..presentation.api.routers import webhooks as webhooks_router
from ..services.charge_gateway import ChargeGateway, HttpChargeGateway, LoggingChargeGateway
from ..services.due_payment_scheduler import DuePaymentScheduler, SchedulerConfig
from ..services.retry import RetryExecutor, RetryPolicy, SleepFunc
from ..services.subscription_service import SubscriptionLifecycleManager
from ..services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


def create_application(
    settings: Optional[Settings] = None,
    *,
    charge_gateway: Optional[ChargeGateway] = None,
    clock: Callable[[], datetime] = utcnow,
    retry_sleep: Optional[SleepFunc] = None,
) -> FastAPI:
    settings = settings or Settings()

    app = FastAPI(
        title="Billing Reconciliation Engine",
        lifespan=_create_lifespan(settings, charge_gateway, clock, retry_sleep),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhooks_router.router)
    app.include_router(subscriptions_router.router)
    app.include_router(scheduler_router.router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        container: ApplicationContainer = app.state.container  # type: ignore[attr-defined]
        return {"ok": True, "scheduler": container.scheduler.get_status()}

    return app


def _build_charge_gateway(settings: Settings) -> ChargeGateway:
    if settings.gateway_base_url and settings.gateway_secret_key:
        return HttpChargeGateway(settings.gateway_base_url, settings.gateway_secret_key)
    logger.warning("GATEWAY_BASE_URL/GATEWAY_SECRET_KEY not set; renewal charges are only logged.")
    return LoggingChargeGateway()


def _create_lifespan(
    settings: Settings,
    charge_gateway: Optional[ChargeGateway],
    clock: Callable[[], datetime],
    retry_sleep: Optional[SleepFunc],
):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        if not settings.webhook_secret:
            logger.warning("WEBHOOK_SECRET is not set; every webhook delivery will be rejected.")

        persistence = SQLitePersistence(settings.database_path, lock_timeout=settings.store_lock_timeout)
        lifecycle_manager = SubscriptionLifecycleManager(persistence, clock=clock)
        webhook_reconciler = WebhookReconciler(persistence, settings.webhook_secret, clock=clock)
        gateway = charge_gateway or _build_charge_gateway(settings)
        retry_executor = RetryExecutor(
            RetryPolicy(
                max_retries=settings.retry_max_retries,
                retry_delay=settings.retry_delay_seconds,
                max_delay=settings.retry_max_delay_seconds,
            ),
            sleep=retry_sleep,
        )
        scheduler = DuePaymentScheduler(
            persistence,
            lifecycle_manager,
            gateway,
            retry_executor,
            SchedulerConfig(
                enabled=settings.scheduler_enabled,
                interval_seconds=settings.scheduler_interval_seconds,
                batch_size=settings.scheduler_batch_size,
                concurrency=settings.scheduler_concurrency,
                grace_period=timedelta(hours=settings.renewal_grace_hours),
                max_renewal_attempts=settings.max_renewal_attempts,
            ),
            clock=clock,
        )

        container = ApplicationContainer(
            settings=settings,
            persistence=persistence,
            lifecycle_manager=lifecycle_manager,
            webhook_reconciler=webhook_reconciler,
            charge_gateway=gateway,
            retry_executor=retry_executor,
            scheduler=scheduler,
        )

        app.state.container = container  # type: ignore[attr-defined]

        if scheduler.config.enabled:
            await scheduler.start()

        try:
            yield
        finally:
            await scheduler.stop()
            persistence.close()

    return lifespan
