"""
Rate Limiting Middleware
Per-IP limits using slowapi

RATE LIMITS:
- Global: 100 requests/minute per IP (default)
- Manual sync trigger: 10/minute per IP (set on the route)
"""
import logging

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)


def rate_limit_key_func(request: Request) -> str:
    ip = get_remote_address(request)
    logger.debug(f"Rate limit key: ip={ip}")
    return f"ip:{ip}"


limiter = Limiter(
    key_func=rate_limit_key_func,
    default_limits=["100/minute"],
    storage_uri="memory://",  # single instance
)
