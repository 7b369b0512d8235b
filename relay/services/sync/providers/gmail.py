"""
Gmail API client and message normalization
Lists message IDs, fetches full messages, converts them to the gmail_messages schema
"""
import logging
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

from relay.core.exceptions import MalformedItemError, ProviderAPIError
from relay.services.sync.models import MailMessage, ensure_utc

logger = logging.getLogger(__name__)

GMAIL_PROVIDER = "gmail"

_ANGLE_ADDRESS = re.compile(r"<([^<>@\s]+@[^<>\s]+)>")


class GmailClient:
    """Thin async client for the Gmail REST API (users/me)."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        access_token: str,
        base_url: str = "https://gmail.googleapis.com/gmail/v1",
        user_id: str = "me",
    ):
        self.http_client = http_client
        self.base_url = f"{base_url.rstrip('/')}/users/{user_id}"
        self.headers = {"Authorization": f"Bearer {access_token}"}

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.http_client.get(
            f"{self.base_url}/{path}",
            params={k: v for k, v in params.items() if v not in (None, "")},
            headers=self.headers,
        )
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderAPIError.from_http_error(GMAIL_PROVIDER, e) from e
        return response.json()

    async def list_message_ids(
        self,
        query: str,
        max_results: int,
        page_token: Optional[str] = None,
    ) -> Tuple[List[str], Optional[str]]:
        """One page of message IDs matching a Gmail search query (newest first)."""
        data = await self._get("messages", {"q": query, "maxResults": max_results, "pageToken": page_token})
        ids = [ref["id"] for ref in data.get("messages", []) if ref.get("id")]
        return ids, data.get("nextPageToken")

    async def get_message_detail(self, message_id: str) -> Dict[str, Any]:
        """Full message resource (format=full)."""
        return await self._get(f"messages/{message_id}", {"format": "full"})


# ============================================================================
# QUERIES
# ============================================================================

def after_query(instant: datetime) -> str:
    """Gmail `after:` takes epoch seconds."""
    return f"after:{int(ensure_utc(instant).timestamp())}"


def newer_than_query(days: int) -> str:
    return f"newer_than:{days}d"


# ============================================================================
# NORMALIZATION
# ============================================================================

def parse_sender(from_header: str) -> Tuple[str, str]:
    """
    Split a From header into (name, email).

    "Jane Doe <jane@example.com>" -> ("Jane Doe", "jane@example.com")
    "jane@example.com"            -> ("jane", "jane@example.com")
    "Mailer Daemon"               -> ("Mailer Daemon", "")
    """
    if not from_header:
        return "", ""

    match = _ANGLE_ADDRESS.search(from_header)
    if match:
        email = match.group(1)
        name = _ANGLE_ADDRESS.sub("", from_header).replace('"', "").replace("'", "").strip()
        return name, email

    if "@" in from_header:
        email = from_header.strip()
        return email.split("@")[0], email

    return from_header.strip(), ""


def internal_time(raw_message: Dict[str, Any]) -> Optional[datetime]:
    """Gmail's receipt instant (internalDate), the value `after:` filters on."""
    try:
        return datetime.fromtimestamp(int(raw_message.get("internalDate")) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def _message_time(date_header: str, internal_date: Any) -> datetime:
    """Date header first; internalDate (epoch ms) when the header is missing or unparseable."""
    if date_header:
        try:
            return ensure_utc(parsedate_to_datetime(date_header))
        except (TypeError, ValueError, IndexError):
            logger.debug(f"Unparseable Date header {date_header!r}, falling back to internalDate")

    try:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
    except (TypeError, ValueError) as e:
        raise MalformedItemError(f"Message has no usable timestamp (Date={date_header!r}, internalDate={internal_date!r})") from e


def normalize_gmail_message(raw_message: Dict[str, Any], user_id: str) -> MailMessage:
    """
    Normalize a full Gmail message into the gmail_messages schema.

    Raises:
        MalformedItemError: missing id or no usable timestamp
    """
    message_id = raw_message.get("id")
    if not message_id:
        raise MalformedItemError("Gmail message has no id")

    headers = (raw_message.get("payload") or {}).get("headers") or []

    def get_header(name: str) -> str:
        for header in headers:
            if header.get("name", "").lower() == name.lower():
                return header.get("value") or ""
        return ""

    from_header = get_header("From")
    sender_name, sender_email = parse_sender(from_header)

    return MailMessage(
        user_id=user_id,
        message_id=message_id,
        thread_id=raw_message.get("threadId"),
        subject=get_header("Subject") or "No Subject",
        sender=from_header,
        sender_name=sender_name,
        sender_email=sender_email,
        recipient=get_header("To"),
        message_time=_message_time(get_header("Date"), raw_message.get("internalDate")),
        content=raw_message.get("snippet") or "",
        labels=list(raw_message.get("labelIds") or []),
        raw_data=raw_message,
    )
