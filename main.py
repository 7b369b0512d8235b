"""
Relay - Incremental Chat & Mail Sync Engine
===========================================
Version: 1.0.0

FastAPI application entry point.

Architecture:
- relay/core/: Configuration, retry, errors, dependencies, security
- relay/middleware/: Error handling, rate limiting
- relay/models/: Pydantic schemas
- relay/services/sync/: Collection engine (providers, cursors, collectors, orchestrator)
- relay/api/v1/routes/: API endpoints

The lifespan starts the sync engine (and its scheduler unless ENABLE_SCHEDULER=false)
and on shutdown lets an in-flight cycle finish before closing clients.
"""
import sys
import logging
import traceback
from contextlib import asynccontextmanager
from fastapi import FastAPI

# Startup error handling
try:
    from relay.core.config import settings
    from relay.core.dependencies import initialize_clients, shutdown_clients
    from relay.core.exceptions import SyncEngineError

    from relay.middleware.error_handler import ErrorHandlerMiddleware, sync_engine_error_handler

    from relay.api.v1.routes.health import router as health_router, VERSION
    from relay.api.v1.routes.sync import router as sync_router

except Exception as e:
    print(f"🚨 FATAL STARTUP ERROR: {e}", file=sys.stderr)
    print(f"Traceback:\n{traceback.format_exc()}", file=sys.stderr)
    sys.exit(1)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# ============================================================================
# SENTRY ERROR TRACKING
# ============================================================================

if settings.sentry_dsn:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=0.1,
            integrations=[
                FastApiIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)
            ]
        )
        logger.info("✅ Sentry error tracking initialized")
    except Exception as e:
        logger.warning(f"⚠️  Failed to initialize Sentry: {e}")
else:
    logger.info("ℹ️  Sentry not configured (SENTRY_DSN not set)")

# ============================================================================
# LIFECYCLE MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown."""
    logger.info("=" * 80)
    logger.info("Starting Relay Sync Engine")
    logger.info("=" * 80)
    logger.info(f"Version: {VERSION}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Port: {settings.port}")

    await initialize_clients(start_scheduler=settings.enable_scheduler)

    logger.info("=" * 80)
    logger.info("✅ Relay started successfully")
    logger.info("=" * 80)

    yield

    logger.info("Shutting down Relay...")
    await shutdown_clients()


# ============================================================================
# APP INITIALIZATION
# ============================================================================

app = FastAPI(
    title="Relay API",
    description="Incremental Google Chat and Gmail sync engine",
    version=VERSION,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# ============================================================================
# RATE LIMITING
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from relay.middleware.rate_limit import limiter

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
logger.info("✅ Rate limiting enabled")

# ============================================================================
# ERROR HANDLING
# ============================================================================

app.add_exception_handler(SyncEngineError, sync_engine_error_handler)
app.add_middleware(ErrorHandlerMiddleware)

# ============================================================================
# ROUTES
# ============================================================================

app.include_router(health_router)
app.include_router(sync_router)

logger.info("✅ All routes registered")

# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )
