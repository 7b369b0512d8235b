"""
Database helper classes for the sync engine
Handles users/credentials, collected items, sync logs and cursor persistence

TABLES (see database/schema.sql):
- users            identity + google_tokens + last_<source>_sync markers
- chat_messages    UNIQUE(user_id, message_id, space_id)
- gmail_messages   UNIQUE(user_id, message_id)
- sync_logs        append-only SyncAttemptRecords
- sync_cursors     Postgres cursor backend
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import psycopg
from supabase import Client

from relay.core.exceptions import StorageError
from relay.services.sync.models import (
    ChatMessage,
    Credential,
    MailMessage,
    Source,
    Space,
    SpaceCursor,
    SyncAttemptRecord,
    SyncStatus,
    User,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

CollectedItem = Union[ChatMessage, MailMessage]

# Per-source table layout: (table, conflict target, required row fields, timestamp column)
ITEM_TABLES: Dict[Source, Dict[str, Any]] = {
    Source.CHAT: {
        "table": "chat_messages",
        "on_conflict": "user_id,message_id,space_id",
        "required": ("user_id", "message_id", "space_id"),
        "time_column": "timestamp",
    },
    Source.GMAIL: {
        "table": "gmail_messages",
        "on_conflict": "user_id,message_id",
        "required": ("user_id", "message_id"),
        "time_column": "date_received",
    },
}

LAST_SYNC_COLUMNS = {
    Source.CHAT: "last_chat_sync",
    Source.GMAIL: "last_gmail_sync",
}

UPSERT_BATCH_SIZE = 500


# ============================================================================
# USERS / CREDENTIALS / SYNC LOGS
# ============================================================================

def user_from_row(row: Dict[str, Any]) -> User:
    """Build a User from a `users` row. Raises ValueError on unusable rows."""
    tokens = row.get("google_tokens") or {}
    if not isinstance(tokens, dict) or not tokens.get("access_token"):
        raise ValueError("google_tokens missing access_token")

    return User(
        id=str(row["id"]),
        email=row.get("email") or "",
        credential=Credential.from_google_tokens(tokens),
        is_active=row.get("is_active", True),
        last_chat_sync=parse_timestamp(row.get("last_chat_sync")),
        last_gmail_sync=parse_timestamp(row.get("last_gmail_sync")),
    )


class SupabaseUserStore:
    """Identity/credential store plus the sync_logs sink."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def list_active_users(self) -> List[User]:
        try:
            result = self.supabase.table("users")\
                .select("id, email, google_tokens, is_active, last_chat_sync, last_gmail_sync")\
                .eq("is_active", True)\
                .execute()
        except Exception as e:
            raise StorageError(f"Failed to list active users: {e}") from e

        users = []
        for row in result.data or []:
            try:
                users.append(user_from_row(row))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"⚠️  Skipping user row {row.get('id')}: {e}")
        return users

    async def persist_credential(self, user_id: str, credential: Credential) -> None:
        try:
            self.supabase.table("users")\
                .update({"google_tokens": credential.to_google_tokens()})\
                .eq("id", user_id)\
                .execute()
        except Exception as e:
            raise StorageError(f"Failed to persist credential for user {user_id}: {e}") from e
        logger.debug(f"Persisted refreshed credential for user {user_id}")

    async def record_sync_outcome(self, record: SyncAttemptRecord) -> None:
        """Append a sync_logs row; on success also move the user's last-sync marker."""
        row = {
            "user_id": record.user_id,
            "sync_type": record.source.value,
            "status": record.status.value,
            "message": record.message,
            "records_processed": record.item_count,
            "error_details": record.error_details,
            "completed_at": record.created_at.isoformat(),
        }

        try:
            self.supabase.table("sync_logs").insert(row).execute()

            if record.status == SyncStatus.SUCCESS:
                marker = (record.watermark or record.created_at).isoformat()
                self.supabase.table("users")\
                    .update({
                        LAST_SYNC_COLUMNS[record.source]: marker,
                        "last_sync": record.created_at.isoformat(),
                    })\
                    .eq("id", record.user_id)\
                    .execute()
        except Exception as e:
            raise StorageError(f"Failed to record sync outcome for user {record.user_id}: {e}") from e


# ============================================================================
# COLLECTED ITEMS
# ============================================================================

def _valid_rows(source: Source, items: Sequence[CollectedItem]) -> List[Dict[str, Any]]:
    """Drop rows missing identity fields and in-batch duplicates."""
    layout = ITEM_TABLES[source]
    rows: List[Dict[str, Any]] = []
    seen = set()

    for index, item in enumerate(items):
        row = item.to_row()
        missing = [field for field in layout["required"] if not row.get(field)]
        if missing:
            logger.warning(f"⚠️  Invalid {source.value} item at index {index}, missing {missing}")
            continue

        key = tuple(row[field] for field in layout["required"])
        if key in seen:
            continue
        seen.add(key)
        rows.append(row)

    return rows


class SupabaseItemStore:
    """
    Durable item store.

    Uniqueness per (user, source, provider item id) is enforced by the table;
    duplicates are silently ignored and not counted as inserted.
    """

    def __init__(self, supabase: Client, batch_size: int = UPSERT_BATCH_SIZE):
        self.supabase = supabase
        self.batch_size = batch_size

    async def upsert_items(self, source: Source, items: Sequence[CollectedItem]) -> int:
        if not items:
            return 0

        layout = ITEM_TABLES[source]
        rows = _valid_rows(source, items)
        if len(rows) < len(items):
            logger.info(f"Proceeding with {len(rows)}/{len(items)} valid {source.value} rows")

        inserted = 0
        for start in range(0, len(rows), self.batch_size):
            batch = rows[start:start + self.batch_size]
            try:
                result = self.supabase.table(layout["table"])\
                    .upsert(batch, on_conflict=layout["on_conflict"], ignore_duplicates=True)\
                    .execute()
            except Exception as e:
                raise StorageError(f"Failed to store {len(batch)} {source.value} items: {e}") from e
            inserted += len(result.data or [])

        logger.info(f"Stored {inserted} new {source.value} items ({len(rows) - inserted} duplicates ignored)")
        return inserted

    async def has_any_data(self, user_id: str, source: Source) -> bool:
        layout = ITEM_TABLES[source]
        try:
            result = self.supabase.table(layout["table"])\
                .select("message_id")\
                .eq("user_id", user_id)\
                .limit(1)\
                .execute()
        except Exception as e:
            raise StorageError(f"Failed to check existing {source.value} items: {e}") from e
        return bool(result.data)

    async def latest_item_time(self, user_id: str, source: Source, space_id: Optional[str] = None) -> Optional[datetime]:
        layout = ITEM_TABLES[source]
        column = layout["time_column"]
        query = self.supabase.table(layout["table"]).select(column).eq("user_id", user_id)
        if space_id and source == Source.CHAT:
            query = query.eq("space_id", space_id)

        try:
            result = query.order(column, desc=True).limit(1).execute()
        except Exception as e:
            raise StorageError(f"Failed to read latest {source.value} timestamp: {e}") from e

        if not result.data:
            return None
        return parse_timestamp(result.data[0].get(column))

    async def latest_chat_space_times(self, user_id: str, page_size: int = 1000) -> List[Tuple[Space, datetime]]:
        """Newest stored chat timestamp per space, newest space first."""
        latest: Dict[str, Tuple[Space, datetime]] = {}
        start = 0

        while True:
            try:
                result = self.supabase.table("chat_messages")\
                    .select("space_id, space_name, space_type, timestamp")\
                    .eq("user_id", user_id)\
                    .order("timestamp", desc=True)\
                    .range(start, start + page_size - 1)\
                    .execute()
            except Exception as e:
                raise StorageError(f"Failed to scan chat messages for user {user_id}: {e}") from e

            rows = result.data or []
            for row in rows:
                space_id = row.get("space_id")
                if not space_id or space_id in latest:
                    continue
                try:
                    message_time = parse_timestamp(row.get("timestamp"))
                except ValueError:
                    continue
                if message_time is None:
                    continue
                space = Space(
                    space_id=space_id,
                    space_name=row.get("space_name") or "",
                    space_type=row.get("space_type"),
                )
                latest[space_id] = (space, message_time)

            if len(rows) < page_size:
                break
            start += page_size

        return list(latest.values())


# ============================================================================
# POSTGRES CURSOR BACKEND
# ============================================================================

class PostgresCursorBackend:
    """
    Cursor backend on a dedicated table.

    GREATEST() in the upsert keeps the watermark monotonic atomically, even if
    two writers race on the same key.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url

    def _connect(self):
        """New connection per call (low call frequency: a few writes per space per cycle)."""
        return psycopg.connect(self.database_url, autocommit=False)

    @staticmethod
    def _cursor_from_row(row) -> SpaceCursor:
        watermark, has_new_msg, space_name, space_type, updated_at = row
        return SpaceCursor(
            watermark=watermark,
            has_new_msg=bool(has_new_msg),
            space_name=space_name,
            space_type=space_type,
            updated_at=updated_at,
        )

    async def get(self, key: str) -> Optional[SpaceCursor]:
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT watermark, has_new_msg, space_name, space_type, updated_at "
                    "FROM sync_cursors WHERE cursor_key = %s",
                    (key,)
                )
                row = cur.fetchone()
                return self._cursor_from_row(row) if row else None
        except psycopg.Error as e:
            raise StorageError(f"Failed to read cursor {key}: {e}") from e
        finally:
            conn.close()

    async def advance(
        self,
        key: str,
        watermark: datetime,
        has_new_msg: bool,
        space_name: Optional[str] = None,
        space_type: Optional[str] = None,
    ) -> SpaceCursor:
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sync_cursors (cursor_key, watermark, has_new_msg, space_name, space_type, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (cursor_key)
                    DO UPDATE SET
                        watermark = GREATEST(sync_cursors.watermark, EXCLUDED.watermark),
                        has_new_msg = EXCLUDED.has_new_msg,
                        space_name = COALESCE(EXCLUDED.space_name, sync_cursors.space_name),
                        space_type = COALESCE(EXCLUDED.space_type, sync_cursors.space_type),
                        updated_at = EXCLUDED.updated_at
                    RETURNING watermark, has_new_msg, space_name, space_type, updated_at
                    """,
                    (key, watermark, has_new_msg, space_name, space_type, utcnow())
                )
                row = cur.fetchone()
            conn.commit()
            return self._cursor_from_row(row)
        except psycopg.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to advance cursor {key}: {e}") from e
        finally:
            conn.close()

    async def mark_idle(
        self,
        key: str,
        space_name: Optional[str] = None,
        space_type: Optional[str] = None,
    ) -> None:
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sync_cursors (cursor_key, watermark, has_new_msg, space_name, space_type, updated_at)
                    VALUES (%s, NULL, FALSE, %s, %s, %s)
                    ON CONFLICT (cursor_key)
                    DO UPDATE SET
                        has_new_msg = FALSE,
                        space_name = COALESCE(EXCLUDED.space_name, sync_cursors.space_name),
                        space_type = COALESCE(EXCLUDED.space_type, sync_cursors.space_type),
                        updated_at = EXCLUDED.updated_at
                    """,
                    (key, space_name, space_type, utcnow())
                )
            conn.commit()
        except psycopg.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to update cursor {key}: {e}") from e
        finally:
            conn.close()
