"""
Sync Domain Models
Users, credentials, cursors, collected items and sync attempt records
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 string (Z or offset), epoch milliseconds, or datetime.

    Returns None for empty input; raises ValueError for garbage.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
        return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


class Source(str, Enum):
    """Collection source. Values match the sync_logs.sync_type column."""
    CHAT = "chat"
    GMAIL = "gmail"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


# ============================================================================
# USERS & CREDENTIALS
# ============================================================================

class Credential(BaseModel):
    """
    OAuth credential bundle.

    Stored in the Google token shape (expiry_date in epoch milliseconds) so
    tokens written by the authorization flow can be read back unchanged.
    """
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: Optional[str] = "Bearer"
    scope: Optional[str] = None

    def needs_refresh(self, now: datetime, margin: timedelta) -> bool:
        """True unless now < expiry - margin. Unknown expiry counts as expired."""
        if self.expires_at is None:
            return True
        return ensure_utc(now) >= ensure_utc(self.expires_at) - margin

    def merge_refresh(
        self,
        access_token: str,
        expires_at: datetime,
        refresh_token: Optional[str] = None,
        scope: Optional[str] = None,
        token_type: Optional[str] = None,
    ) -> "Credential":
        """Apply a refresh response. An absent refresh token never overwrites the stored one."""
        return Credential(
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=expires_at,
            token_type=token_type or self.token_type,
            scope=scope or self.scope,
        )

    @classmethod
    def from_google_tokens(cls, tokens: Dict[str, Any]) -> "Credential":
        expiry = tokens.get("expiry_date")
        return cls(
            access_token=tokens.get("access_token") or "",
            refresh_token=tokens.get("refresh_token"),
            expires_at=parse_timestamp(expiry) if expiry else None,
            token_type=tokens.get("token_type") or "Bearer",
            scope=tokens.get("scope"),
        )

    def to_google_tokens(self) -> Dict[str, Any]:
        tokens: Dict[str, Any] = {
            "access_token": self.access_token,
            "expiry_date": int(self.expires_at.timestamp() * 1000) if self.expires_at else None,
            "token_type": self.token_type,
        }
        if self.refresh_token:
            tokens["refresh_token"] = self.refresh_token
        if self.scope:
            tokens["scope"] = self.scope
        return tokens


class User(BaseModel):
    """Identity + credential bundle + per-source last successful sync watermarks."""
    id: str
    email: str
    credential: Credential
    is_active: bool = True
    last_chat_sync: Optional[datetime] = None
    last_gmail_sync: Optional[datetime] = None


# ============================================================================
# CURSORS
# ============================================================================

class Space(BaseModel):
    """A chat conversation space."""
    space_id: str  # resource name, e.g. "spaces/AAAA"
    space_name: str = ""
    space_type: Optional[str] = None


class SpaceCursor(BaseModel):
    """Watermark record for one (user, source[, space]) key."""
    watermark: Optional[datetime] = None
    has_new_msg: bool = False
    space_name: Optional[str] = None
    space_type: Optional[str] = None
    updated_at: Optional[datetime] = None


# ============================================================================
# COLLECTED ITEMS
# ============================================================================

class ChatMessage(BaseModel):
    """A stored chat message. Unique per (user_id, message_id, space_id)."""
    user_id: str
    message_id: str
    space_id: str
    space_name: str = ""
    space_type: Optional[str] = None
    sender_id: Optional[str] = None
    sender_name: str = "Unknown"
    sender_email: str = ""
    content: str = ""
    message_time: datetime
    thread_id: Optional[str] = None
    is_threaded: bool = False
    raw_data: Dict[str, Any] = Field(default_factory=dict)

    def to_row(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "message_id": self.message_id,
            "space_id": self.space_id,
            "space_name": self.space_name,
            "space_type": self.space_type,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "sender_email": self.sender_email,
            "content": self.content,
            "timestamp": self.message_time.isoformat(),
            "thread_id": self.thread_id,
            "is_threaded": self.is_threaded,
            "raw_data": self.raw_data,
        }


class MailMessage(BaseModel):
    """A stored mail message. Unique per (user_id, message_id)."""
    user_id: str
    message_id: str
    thread_id: Optional[str] = None
    subject: str = "No Subject"
    sender: str = ""
    sender_name: str = ""
    sender_email: str = ""
    recipient: str = ""
    message_time: datetime
    content: str = ""
    labels: List[str] = Field(default_factory=list)
    raw_data: Dict[str, Any] = Field(default_factory=dict)

    def to_row(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "message_id": self.message_id,
            "thread_id": self.thread_id,
            "subject": self.subject,
            "sender_name": self.sender_name,
            "sender_email": self.sender_email,
            "recipient": self.recipient,
            "body": self.content,
            "date_received": self.message_time.isoformat(),
            "labels": self.labels,
            "raw_data": self.raw_data,
        }


# ============================================================================
# SYNC OUTCOMES
# ============================================================================

class SyncAttemptRecord(BaseModel):
    """Outcome of one (user, source) collection attempt. Append-only."""
    user_id: str
    source: Source
    status: SyncStatus
    item_count: int = 0
    message: str = ""
    error_details: Optional[Dict[str, Any]] = None
    # Instant written to the user's last-sync marker (success only)
    watermark: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class CollectionResult(BaseModel):
    """What a collector reports back for one user/source."""
    source: Source
    items_stored: int = 0
    items_seen: int = 0
    items_skipped: int = 0
    scopes_processed: int = 0
    scopes_failed: int = 0
    has_new_items: bool = False
    detail: str = ""


class UserSyncResult(BaseModel):
    """Per-user outcome of one cycle. Sources missing from `results` failed or were skipped."""
    user_id: str
    email: str
    token_refreshed: bool = False
    results: Dict[Source, CollectionResult] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class CycleSummary(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    users_total: int = 0
    users_succeeded: int = 0
    users_failed: int = 0
    items_stored: int = 0
    user_results: List[UserSyncResult] = Field(default_factory=list)


class RunStats(BaseModel):
    """In-memory run counters for observability."""
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    skipped_runs: int = 0
    last_error: Optional[str] = None
