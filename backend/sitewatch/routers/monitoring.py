"""Monitoring API - scheduler control, on-demand checks and result history."""
from typing import List

from fastapi import APIRouter, HTTPException, Query, Request

from ..schemas.monitoring import (
    AlertEventResponse,
    CheckResultResponse,
    ExpiringCertificate,
    ResultsList,
    SchedulerStatusResponse,
)
from ..services.target_registry import StorageUnavailableError

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])


def _scheduler(request: Request):
    return request.app.state.scheduler


def _status_response(scheduler) -> SchedulerStatusResponse:
    status = scheduler.status()
    return SchedulerStatusResponse(
        running=status.running,
        active_target_count=status.active_target_count,
        process_uptime=status.process_uptime,
    )


@router.get("/status", response_model=SchedulerStatusResponse)
async def get_status(request: Request):
    return _status_response(_scheduler(request))


@router.post("/start", response_model=SchedulerStatusResponse)
async def start_scheduler(request: Request):
    scheduler = _scheduler(request)
    try:
        await scheduler.start()
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return _status_response(scheduler)


@router.post("/stop", response_model=SchedulerStatusResponse)
async def stop_scheduler(request: Request):
    scheduler = _scheduler(request)
    await scheduler.stop()
    return _status_response(scheduler)


@router.post("/check/{target_id}", response_model=CheckResultResponse)
async def run_check(target_id: int, request: Request):
    """Run uptime, TLS and performance checks for one target right now."""
    result = await _scheduler(request).run_single_check(target_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Target not found")
    return CheckResultResponse.from_result(result)


@router.get("/results/{target_id}", response_model=ResultsList)
async def get_results(
    target_id: int,
    request: Request,
    limit: int = Query(50, ge=1, le=500),
):
    """Recent results for a target, most recent first."""
    results = await _scheduler(request).store.recent_results(target_id, limit=limit)
    items = [CheckResultResponse.from_result(r) for r in results]
    return ResultsList(items=items, count=len(items))


@router.get("/alerts/{target_id}", response_model=List[AlertEventResponse])
async def get_alerts(
    target_id: int,
    request: Request,
    limit: int = Query(50, ge=1, le=500),
):
    events = await _scheduler(request).alerter.recent_events(target_id, limit=limit)
    return [AlertEventResponse.model_validate(e) for e in events]


@router.get("/ssl/expiring", response_model=List[ExpiringCertificate])
async def get_expiring_certificates(
    request: Request,
    days: int = Query(30, ge=0, le=365),
):
    checks = await _scheduler(request).store.expiring_certificates(days=days)
    return [ExpiringCertificate.model_validate(c) for c in checks]
