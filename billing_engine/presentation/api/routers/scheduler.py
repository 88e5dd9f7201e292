"""Operator controls for the due payment scheduler."""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ....core.dependencies import get_scheduler
from ....domain.exceptions import BillingError
from ....services.due_payment_scheduler import DuePaymentScheduler
from ...api.dependencies import require_operator
from ...api.responses import error_response
from ...api.schemas.scheduler_schemas import SchedulerIntervalRequest

router = APIRouter(
    prefix="/api/scheduler",
    tags=["scheduler"],
    dependencies=[Depends(require_operator)],
)


@router.get("")
async def get_status(scheduler: DuePaymentScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    return {"success": True, "scheduler": scheduler.get_status()}


@router.post("/start")
async def start_scheduler(scheduler: DuePaymentScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    await scheduler.start()
    return {"success": True, "scheduler": scheduler.get_status()}


@router.post("/stop")
async def stop_scheduler(scheduler: DuePaymentScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    await scheduler.stop()
    return {"success": True, "scheduler": scheduler.get_status()}


@router.post("/run")
async def run_sweep(scheduler: DuePaymentScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    """Run one sweep now; reports skipped when one is already running."""
    result = await scheduler.run_now()
    if result is None:
        return {"success": True, "skipped": True, "sweep": None}
    return {"success": True, "skipped": False, "sweep": result.to_dict()}


@router.post("/enable")
async def enable_scheduler(scheduler: DuePaymentScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    await scheduler.enable()
    return {"success": True, "scheduler": scheduler.get_status()}


@router.post("/disable")
async def disable_scheduler(scheduler: DuePaymentScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    await scheduler.disable()
    return {"success": True, "scheduler": scheduler.get_status()}


@router.put("/interval")
async def set_interval(
    payload: SchedulerIntervalRequest,
    scheduler: DuePaymentScheduler = Depends(get_scheduler),
):
    try:
        scheduler.reconfigure(payload.interval_seconds)
    except BillingError as exc:
        return error_response(exc)
    return {"success": True, "scheduler": scheduler.get_status()}


@router.post("/stats/reset")
async def reset_stats(scheduler: DuePaymentScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    scheduler.reset_stats()
    return {"success": True, "scheduler": scheduler.get_status()}
