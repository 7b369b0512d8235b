"""
Sync Engine Exceptions
Error taxonomy shared by providers, stores, collectors and the orchestrator

TAXONOMY:
- Transient: provider rate limiting / service unavailable (retried by RetryExecutor)
- Permanent, item-scoped: MalformedItemError (skipped at the item loop)
- Permanent, scope-scoped: everything else (recorded as an error SyncAttemptRecord)
"""
from typing import Any, Dict, Iterable, Optional

import httpx

# Status codes the provider uses for rate limiting / temporary unavailability
DEFAULT_TRANSIENT_STATUS_CODES = frozenset({429, 503})


class SyncEngineError(Exception):
    """Base exception for all sync engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ProviderAPIError(SyncEngineError):
    """Non-2xx response from a remote provider API."""

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after

    @classmethod
    def from_http_error(cls, provider: str, error: httpx.HTTPStatusError) -> "ProviderAPIError":
        """Build from an httpx status error, keeping the Retry-After hint if present."""
        response = error.response
        retry_after = None
        header = response.headers.get("Retry-After")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None

        body = response.text[:500] if response.text else ""
        return cls(
            message=f"{provider} API returned {response.status_code}: {body}",
            provider=provider,
            status_code=response.status_code,
            retry_after=retry_after,
            details={"url": str(error.request.url)},
        )


class TokenRefreshError(SyncEngineError):
    """Permanent failure to obtain a valid access token (revoked grant, missing refresh token)."""

    def __init__(self, message: str, user_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.user_id = user_id


class StorageError(SyncEngineError):
    """Durable store (Supabase / Postgres / cursor file) failure."""


class MalformedItemError(SyncEngineError):
    """A single provider item could not be transformed into the storage schema."""


class CycleInProgressError(SyncEngineError):
    """A manual run was refused because a collection cycle is already running."""


def is_transient_error(
    exc: BaseException,
    status_codes: Iterable[int] = DEFAULT_TRANSIENT_STATUS_CODES,
) -> bool:
    """
    Classify an exception as transient (worth retrying).

    Only provider rate-limit / service-unavailable signals qualify; every other
    failure (bad credential, malformed request, programming error) is permanent.
    """
    codes = set(status_codes)
    if isinstance(exc, ProviderAPIError):
        return exc.status_code in codes
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in codes
    return False
