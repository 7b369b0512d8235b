"""
Pydantic Schemas
All request/response models for API endpoints
"""

# Health check schemas
from .health import HealthResponse

# Sync schemas
from .sync import NextRunResponse, RunStatsResponse, SyncRunResponse, SyncStatusResponse, UserRunResult

__all__ = [
    # Health
    "HealthResponse",
    # Sync
    "NextRunResponse",
    "RunStatsResponse",
    "SyncRunResponse",
    "SyncStatusResponse",
    "UserRunResult",
]
