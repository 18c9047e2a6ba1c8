"""
Renewal scheduler endpoints.

Control the background renewal sweep: start, stop, trigger a run,
change its configuration, and read the sweep logs.
"""

from fastapi import APIRouter, HTTPException, Query, Request
import logging

from core.cert_scheduler import get_cert_scheduler
from core.rate_limiter import limiter, mutation_limit
from core.renewal_log_store import get_renewal_log_store
from models.renewal import (
    LogPurgeResponse,
    RenewalLog,
    RenewalLogListResponse,
    SchedulerStatus,
    SweepConfigUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ssl/scheduler", tags=["Renewal Scheduler"])


@router.get(
    "",
    response_model=SchedulerStatus,
    summary="Scheduler Status",
    description="Whether the scheduler is active, whether a sweep is running, the next run and the sweep configuration.",
)
async def get_status() -> SchedulerStatus:
    return get_cert_scheduler().status()


@router.post(
    "/start",
    response_model=SchedulerStatus,
    summary="Start Scheduler",
    description="Start the renewal scheduler. Starting an active scheduler has no effect.",
)
@limiter.limit(mutation_limit)
async def start_scheduler(request: Request) -> SchedulerStatus:
    scheduler = get_cert_scheduler()
    await scheduler.start()
    return scheduler.status()


@router.post(
    "/stop",
    response_model=SchedulerStatus,
    summary="Stop Scheduler",
    description="Stop the renewal scheduler. A sweep already running finishes.",
)
@limiter.limit(mutation_limit)
async def stop_scheduler(request: Request) -> SchedulerStatus:
    scheduler = get_cert_scheduler()
    await scheduler.stop()
    return scheduler.status()


@router.post(
    "/run",
    response_model=RenewalLog,
    summary="Run Sweep Now",
    description="""
    Run a renewal sweep immediately and return its log.

    If a sweep is already running, this waits for it to finish first;
    sweeps never overlap.
    """,
)
@limiter.limit(mutation_limit)
async def run_sweep(request: Request) -> RenewalLog:
    return await get_cert_scheduler().run_now()


@router.put(
    "/config",
    response_model=SchedulerStatus,
    summary="Update Sweep Configuration",
    description="""
    Change the sweep window, per-run limit, per-certificate timeout or
    crontab schedule. Omitted fields keep their value. An active
    scheduler is restarted with the new schedule.
    """,
    responses={400: {"description": "Invalid crontab expression"}},
)
@limiter.limit(mutation_limit)
async def update_config(request: Request, body: SweepConfigUpdate) -> SchedulerStatus:
    try:
        return await get_cert_scheduler().update_config(body)
    except ValueError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_schedule", "message": str(e), "domain": None, "suggestion": "Use a five-field crontab expression"},
        )


@router.get(
    "/logs",
    response_model=RenewalLogListResponse,
    summary="Renewal Logs",
    description="Most recent sweep logs first.",
)
async def list_logs(
    limit: int = Query(10, ge=1, le=100, description="Maximum logs to return"),
    offset: int = Query(0, ge=0, description="Logs to skip"),
) -> RenewalLogListResponse:
    logs, total = await get_renewal_log_store().list_logs(limit=limit, offset=offset)
    return RenewalLogListResponse(logs=logs, total=total)


@router.delete(
    "/logs",
    response_model=LogPurgeResponse,
    summary="Purge Renewal Logs",
    description="Delete sweep logs older than `days_to_keep` days.",
)
@limiter.limit(mutation_limit)
async def purge_logs(
    request: Request,
    days_to_keep: int = Query(30, ge=1, le=365, description="Keep logs from this many recent days"),
) -> LogPurgeResponse:
    deleted = await get_renewal_log_store().cleanup_old_logs(days_to_keep)
    return LogPurgeResponse(deleted=deleted, days_to_keep=days_to_keep)
