"""
Health Check Routes
System status and service info
"""
import logging

from fastapi import APIRouter

from relay.core.config import settings
from relay.models.schemas.health import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        environment=settings.environment,
        scheduler_enabled=settings.enable_scheduler,
    )


@router.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Relay Chat & Mail Sync Engine",
        "version": VERSION,
        "description": "Incremental Google Chat and Gmail collection for multiple users",
        "endpoints": {
            "health": "/health",
            "sync": {
                "status": "/sync/status",
                "run": "/sync/run",
                "next_run": "/sync/next-run"
            }
        }
    }
