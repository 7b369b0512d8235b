"""
Security and Authentication
Shared-secret bearer auth for the manual trigger endpoint

SECURITY FEATURES:
- Timing-safe comparison of the bearer token
- Open only when TRIGGER_SECRET is unset (warned about at startup)
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from relay.core.config import settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def verify_trigger_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> bool:
    """
    Verify `Authorization: Bearer <TRIGGER_SECRET>`.

    Returns:
        True if the caller may trigger a cycle

    Raises:
        HTTPException 401 if the secret is configured and missing or wrong
    """
    if not settings.trigger_secret:
        return True

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required"
        )

    if not hmac.compare_digest(credentials.credentials, settings.trigger_secret):
        logger.warning("Invalid trigger secret attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid trigger secret"
        )

    return True
