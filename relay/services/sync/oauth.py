"""
Google OAuth token refresh
Keeps a user's access token valid before any provider call
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import httpx

from relay.core.exceptions import ProviderAPIError, TokenRefreshError
from relay.core.retry import RetryExecutor
from relay.services.sync.models import Credential, utcnow

logger = logging.getLogger(__name__)

OAUTH_PROVIDER = "google-oauth"


class TokenRefresher:
    """
    Ensures a credential is usable before it is handed to a provider client.

    The refresh-token exchange is a remote call and goes through the RetryExecutor.
    Callers persist the returned credential (via the user store) before making
    further calls, so later cycles reuse the refreshed token.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        retry: RetryExecutor,
        client_id: Optional[str],
        client_secret: Optional[str],
        token_uri: str = "https://oauth2.googleapis.com/token",
        margin_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.http_client = http_client
        self.retry = retry
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri
        self.margin = timedelta(seconds=margin_seconds)
        self._clock = clock

    async def ensure_valid(self, credential: Credential, user_id: Optional[str] = None) -> Credential:
        """
        Return `credential` unchanged if it is valid for longer than the safety
        margin, otherwise refresh it and return the updated credential.

        Raises:
            TokenRefreshError: permanent refresh failure (revoked grant, no refresh token,
                provider error after retries)
        """
        now = self._clock()
        if not credential.needs_refresh(now, self.margin):
            return credential

        if not credential.refresh_token:
            raise TokenRefreshError("Access token expired and no refresh token is stored", user_id=user_id)

        if not self.client_id or not self.client_secret:
            raise TokenRefreshError("Google OAuth client is not configured", user_id=user_id)

        logger.info(f"🔄 Refreshing access token for user {user_id or 'unknown'}")

        try:
            data = await self.retry.execute(lambda: self._request_refresh(credential.refresh_token, user_id))
        except ProviderAPIError as e:
            raise TokenRefreshError(
                f"Token refresh failed: {e.message}",
                user_id=user_id,
                details={"status_code": e.status_code},
            ) from e
        except httpx.TransportError as e:
            raise TokenRefreshError(f"Token refresh failed: {e}", user_id=user_id) from e

        access_token = data.get("access_token")
        if not access_token:
            raise TokenRefreshError("Token response did not include an access_token", user_id=user_id)

        try:
            expires_in = int(data.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600

        refreshed = credential.merge_refresh(
            access_token=access_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
            token_type=data.get("token_type"),
        )
        logger.info(f"✅ Access token refreshed for user {user_id or 'unknown'} (expires {refreshed.expires_at.isoformat()})")
        return refreshed

    async def _request_refresh(self, refresh_token: str, user_id: Optional[str]) -> Dict[str, Any]:
        response = await self.http_client.post(
            self.token_uri,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if response.status_code in (400, 401):
                # invalid_grant / unauthorized_client: the grant is gone, retrying will not help
                error = _error_code(response)
                logger.error(f"❌ Refresh token rejected for user {user_id or 'unknown'}: {error}")
                raise TokenRefreshError(
                    f"Refresh token rejected ({error})",
                    user_id=user_id,
                    details={"status_code": response.status_code, "error": error},
                ) from e
            raise ProviderAPIError.from_http_error(OAUTH_PROVIDER, e) from e

        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise TokenRefreshError(f"Invalid JSON from token endpoint: {e}", user_id=user_id) from e


def _error_code(response: httpx.Response) -> str:
    try:
        return response.json().get("error", "unknown_error")
    except (json.JSONDecodeError, AttributeError):
        return "unknown_error"
