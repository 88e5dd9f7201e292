"""Payment gateway webhook endpoint."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ....core.config import Settings
from ....core.dependencies import get_settings, get_webhook_reconciler
from ....domain.exceptions import BillingError
from ....services.webhook_reconciler import WebhookReconciler
from ...api.responses import error_response, internal_error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/gateway")
async def receive_gateway_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    """Authenticate and reconcile one gateway notification.

    Transient failures answer 503 and unexpected ones 500 so the gateway
    redelivers; everything that was handled answers 200.
    """
    body = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)
    try:
        result = await run_in_threadpool(reconciler.handle_event, body, signature)
    except BillingError as exc:
        if exc.retryable:
            logger.warning("Webhook deferred by transient failure: %s", exc.message)
        elif exc.status_code >= 500:
            logger.error("Webhook rejected: %s", exc.message)
        return error_response(exc)
    except Exception:
        logger.exception("Unexpected error while reconciling webhook.")
        return internal_error_response()
    return JSONResponse(
        status_code=200,
        content={"success": True, "received": True, **result.to_dict()},
    )


@router.get("/gateway")
async def webhook_status() -> Dict[str, Any]:
    return {
        "success": True,
        "message": "Gateway webhook endpoint is active",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
