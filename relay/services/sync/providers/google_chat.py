"""
Google Chat API client and message normalization
Lists spaces and messages over REST; converts messages to the chat_messages schema
"""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from relay.core.exceptions import MalformedItemError, ProviderAPIError
from relay.services.sync.models import ChatMessage, Space, parse_timestamp

logger = logging.getLogger(__name__)

CHAT_PROVIDER = "google-chat"


def format_rfc3339(value: datetime) -> str:
    """UTC RFC 3339 with microseconds, as accepted by Chat API filters."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


class GoogleChatClient:
    """
    Thin async client for the Chat REST API.

    One page per call; pagination and retry are driven by the collector.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        access_token: str,
        base_url: str = "https://chat.googleapis.com/v1",
    ):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {access_token}"}

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.http_client.get(
            f"{self.base_url}/{path}",
            params={k: v for k, v in params.items() if v is not None},
            headers=self.headers,
        )
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderAPIError.from_http_error(CHAT_PROVIDER, e) from e

        if not response.content:
            return {}
        return response.json()

    async def list_spaces(self, page_token: Optional[str] = None, page_size: int = 100) -> Tuple[List[Space], Optional[str]]:
        """One page of spaces the user belongs to."""
        data = await self._get("spaces", {"pageSize": page_size, "pageToken": page_token})
        spaces = [
            Space(
                space_id=raw["name"],
                space_name=raw.get("displayName") or raw["name"],
                space_type=raw.get("spaceType") or raw.get("type"),
            )
            for raw in data.get("spaces", [])
            if raw.get("name")
        ]
        return spaces, data.get("nextPageToken")

    async def list_messages(
        self,
        space_id: str,
        after: Optional[datetime] = None,
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        One page of messages in ascending createTime order.

        Args:
            space_id: Space resource name ("spaces/...")
            after: Only messages created strictly after this instant
            page_token: Continuation token from the previous page
            page_size: Page size (API maximum 1000)

        Returns:
            (raw message dicts, next page token or None)
        """
        params: Dict[str, Any] = {
            "pageSize": page_size,
            "orderBy": "createTime asc",
            "pageToken": page_token,
        }
        if after is not None:
            params["filter"] = f'createTime > "{format_rfc3339(after)}"'

        data = await self._get(f"{space_id}/messages", params)
        return data.get("messages", []), data.get("nextPageToken")


# ============================================================================
# NORMALIZATION
# ============================================================================

def load_user_name_mapping(path: Optional[str]) -> Dict[str, str]:
    """
    Load the optional sender-name mapping file ({"users/123": "Jane Doe", ...}).

    A missing or unreadable file yields an empty mapping.
    """
    if not path:
        return {}

    mapping_file = Path(path)
    if not mapping_file.exists():
        logger.warning(f"⚠️  User name mapping file {path} not found, continuing with empty mapping")
        return {}

    try:
        with open(mapping_file, "r", encoding="utf-8") as f:
            mapping = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"⚠️  Failed to load user name mapping file {path}: {e}")
        return {}

    if not isinstance(mapping, dict):
        logger.warning(f"⚠️  User name mapping file {path} is not a JSON object, ignoring")
        return {}

    logger.info(f"Loaded user name mapping with {len(mapping)} entries")
    return {str(k): str(v) for k, v in mapping.items()}


def normalize_chat_message(
    raw_message: Dict[str, Any],
    user_id: str,
    space: Space,
    name_mapping: Optional[Dict[str, str]] = None,
) -> ChatMessage:
    """
    Normalize a Chat API message into the chat_messages schema.

    Raises:
        MalformedItemError: missing name or unparseable createTime
    """
    message_id = raw_message.get("name")
    if not message_id:
        raise MalformedItemError("Chat message has no name")

    try:
        message_time = parse_timestamp(raw_message.get("createTime"))
    except ValueError as e:
        raise MalformedItemError(f"Chat message {message_id} has invalid createTime: {e}") from e
    if message_time is None:
        raise MalformedItemError(f"Chat message {message_id} has no createTime")

    sender = raw_message.get("sender") or {}
    sender_id = sender.get("name")
    mapped_name = (name_mapping or {}).get(sender_id) if sender_id else None
    thread_id = (raw_message.get("thread") or {}).get("name")

    return ChatMessage(
        user_id=user_id,
        message_id=message_id,
        space_id=space.space_id,
        space_name=space.space_name,
        space_type=space.space_type,
        sender_id=sender_id,
        sender_name=mapped_name or sender.get("displayName") or "Unknown",
        sender_email=sender.get("email") or "",
        content=raw_message.get("text") or raw_message.get("formattedText") or "",
        message_time=message_time,
        thread_id=thread_id,
        is_threaded=bool(thread_id),
        raw_data=raw_message,
    )
