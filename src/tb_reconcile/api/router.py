"""Admin REST API — reconciliation control and cache-wide invalidation."""

from dataclasses import asdict
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from src.tb_balance.api.router import BalanceService
from src.tb_common.response import ApiResponse, success_response
from src.tb_gateway.auth.dependencies import require_admin_key
from src.tb_reconcile.application.scheduler import ReconciliationScheduler

router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)]
)


def get_scheduler(request: Request) -> ReconciliationScheduler:
    return request.app.state.reconciliation_scheduler


Scheduler = Annotated[ReconciliationScheduler, Depends(get_scheduler)]


@router.post("/reconciliation")
async def trigger_reconciliation(
    scheduler: Scheduler,
    request: Request,
    clear_caches: bool = Query(True, description="Drop every cached balance first"),
) -> ApiResponse:
    result = await scheduler.trigger(clear_caches=clear_caches)
    message = "Balance refresh job started" if result.started else "Balance refresh job already running"
    return success_response(
        {"started": result.started, "message": message, "caches_cleared": result.caches_cleared},
        request,
    )


@router.get("/reconciliation")
async def reconciliation_status(scheduler: Scheduler, request: Request) -> ApiResponse:
    report = scheduler.last_report
    persist_worker = request.app.state.persist_worker
    return success_response({
        "state": scheduler.state.value,
        "running": scheduler.is_running,
        "last_report": (
            {**asdict(report), "duration_seconds": report.duration_seconds}
            if report
            else None
        ),
        "persistence": asdict(persist_worker.stats()),
    }, request)


@router.delete("/cache")
async def clear_all_caches(service: BalanceService, request: Request) -> ApiResponse:
    deleted = await service.clear_all_caches()
    return success_response({"deleted": deleted}, request)
