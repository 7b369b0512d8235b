"""
Sync Schemas
Models for the status and manual trigger endpoints
"""
from typing import Dict, List, Optional

from pydantic import BaseModel

from relay.services.sync.models import CycleSummary


class RunStatsResponse(BaseModel):
    total_runs: int
    successful_runs: int
    failed_runs: int
    skipped_runs: int
    last_error: Optional[str] = None


class SyncStatusResponse(BaseModel):
    """Orchestrator state for the dashboard / CLI."""
    is_running: bool
    last_run_time: Optional[str] = None
    last_completed_time: Optional[str] = None
    next_run: Optional[str] = None
    uptime_seconds: float
    stats: RunStatsResponse


class UserRunResult(BaseModel):
    user_id: str
    email: str
    items_stored: Dict[str, int] = {}
    errors: Dict[str, str] = {}


class SyncRunResponse(BaseModel):
    """
    Response for the manual trigger endpoint.
    Per-user, per-source outcome; never a single global pass/fail.
    """
    status: str  # "success", "partial", "failed"
    started_at: str
    finished_at: Optional[str] = None
    users_total: int
    users_succeeded: int
    users_failed: int
    items_stored: int
    users: List[UserRunResult] = []

    @classmethod
    def from_summary(cls, summary: CycleSummary) -> "SyncRunResponse":
        if summary.users_failed == 0:
            status = "success"
        elif summary.users_succeeded > 0:
            status = "partial"
        else:
            status = "failed"

        return cls(
            status=status,
            started_at=summary.started_at.isoformat(),
            finished_at=summary.finished_at.isoformat() if summary.finished_at else None,
            users_total=summary.users_total,
            users_succeeded=summary.users_succeeded,
            users_failed=summary.users_failed,
            items_stored=summary.items_stored,
            users=[
                UserRunResult(
                    user_id=result.user_id,
                    email=result.email,
                    items_stored={source.value: r.items_stored for source, r in result.results.items()},
                    errors=result.errors,
                )
                for result in summary.user_results
            ],
        )


class NextRunResponse(BaseModel):
    next_run: Optional[str] = None
    interval_minutes: int
    scheduler_running: bool
