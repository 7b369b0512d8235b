"""
Sync Routes
Manual trigger and status endpoints for the collection engine
"""
import logging

from fastapi import APIRouter, Depends, Request

from relay.core.dependencies import get_scheduler
from relay.core.exceptions import CycleInProgressError
from relay.core.security import verify_trigger_secret
from relay.middleware.rate_limit import limiter
from relay.models.schemas.sync import NextRunResponse, SyncRunResponse, SyncStatusResponse
from relay.services.sync.orchestration.scheduler import SyncScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(scheduler: SyncScheduler = Depends(get_scheduler)):
    """Running flag, last run time, cumulative run counters, next tick."""
    return scheduler.get_status()


@router.post("/run", response_model=SyncRunResponse)
@limiter.limit("10/minute")
async def run_sync(
    request: Request,
    authorized: bool = Depends(verify_trigger_secret),
    scheduler: SyncScheduler = Depends(get_scheduler)
):
    """
    Run one collection cycle now and wait for it.

    Goes through the same overlap guard as scheduled ticks.

    Raises:
        CycleInProgressError (409) if a cycle is already running
    """
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"🚀 Manual collection requested from {client_host}")

    summary = await scheduler.trigger()
    if summary is None:
        raise CycleInProgressError("A collection cycle is already running")

    return SyncRunResponse.from_summary(summary)


@router.get("/next-run", response_model=NextRunResponse)
async def next_run(scheduler: SyncScheduler = Depends(get_scheduler)):
    """Next scheduled tick (None when the scheduler is not running)."""
    return NextRunResponse(
        next_run=scheduler.next_run.isoformat() if scheduler.next_run else None,
        interval_minutes=scheduler.interval_minutes,
        scheduler_running=scheduler.is_started,
    )
