"""
Global Error Handler Middleware
Catches unhandled exceptions and returns structured error responses
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from relay.core.exceptions import (
    CycleInProgressError,
    ProviderAPIError,
    StorageError,
    SyncEngineError,
    TokenRefreshError,
)

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS_CODES = (
    (CycleInProgressError, 409),
    (TokenRefreshError, 401),
    (ProviderAPIError, 502),
    (StorageError, 503),
)


def status_code_for(exc: SyncEngineError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def sync_engine_error_handler(request: Request, exc: SyncEngineError) -> JSONResponse:
    """Exception handler for SyncEngineError subclasses (registered in main.py)."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} during {request.method} {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{type(exc).__name__} during {request.method} {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "error_type": type(exc).__name__,
            "path": request.url.path
        }
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Global error handler middleware.
    Catches all unhandled exceptions and returns JSON error responses.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.error(
                "Unhandled exception during request",
                exc_info=True,
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "client_host": request.client.host if request.client else None
                }
            )
            return JSONResponse(
                status_code=500,
                content={
                    "detail": "Internal server error",
                    "error_type": type(exc).__name__,
                    "path": request.url.path
                }
            )
