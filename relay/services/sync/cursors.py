"""
Cursor (watermark) management
Durable per-(user, source[, space]) watermarks that make every cycle incremental

BACKENDS:
- JsonFileCursorBackend: side file, source of truth for "what's new" per chat space
- PostgresCursorBackend (database.py): dedicated table with atomic per-key upserts

Losing a backend key is not data loss: CursorStore falls back to the item store's
own latest-timestamp query for that scope.
"""
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from relay.core.exceptions import StorageError
from relay.services.sync.models import Source, Space, SpaceCursor, ensure_utc, utcnow

logger = logging.getLogger(__name__)


def cursor_key(user_id: str, source: Source, space_id: Optional[str] = None) -> str:
    """Flat key used by every backend: "<user>:<source>" or "<user>:<source>:<space>"."""
    key = f"{user_id}:{Source(source).value}"
    if space_id:
        key = f"{key}:{space_id}"
    return key


class CursorBackend(Protocol):
    async def get(self, key: str) -> Optional[SpaceCursor]: ...

    async def advance(
        self,
        key: str,
        watermark: datetime,
        has_new_msg: bool,
        space_name: Optional[str] = None,
        space_type: Optional[str] = None,
    ) -> SpaceCursor: ...

    async def mark_idle(
        self,
        key: str,
        space_name: Optional[str] = None,
        space_type: Optional[str] = None,
    ) -> None: ...


class ItemWatermarkSource(Protocol):
    async def has_any_data(self, user_id: str, source: Source) -> bool: ...

    async def latest_item_time(self, user_id: str, source: Source, space_id: Optional[str] = None) -> Optional[datetime]: ...


# ============================================================================
# JSON FILE BACKEND
# ============================================================================

class JsonFileCursorBackend:
    """
    Cursor backend stored as one JSON document.

    - Missing file: treated as "no data yet"
    - Unreadable / corrupt file: treated as empty (logged), next write replaces it
    - Writes go to a temp file that atomically replaces the original
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"⚠️  Cursor file {self.path} unreadable, treating as empty: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"⚠️  Cursor file {self.path} is not a JSON object, treating as empty")
            return {}
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError(f"Failed to write cursor file {self.path}: {e}") from e

    @staticmethod
    def _parse(entry: Any) -> Optional[SpaceCursor]:
        if not isinstance(entry, dict):
            return None
        try:
            return SpaceCursor.model_validate(entry)
        except ValueError as e:
            logger.warning(f"⚠️  Ignoring malformed cursor entry {entry!r}: {e}")
            return None

    async def get(self, key: str) -> Optional[SpaceCursor]:
        return self._parse(self._load().get(key))

    async def advance(
        self,
        key: str,
        watermark: datetime,
        has_new_msg: bool,
        space_name: Optional[str] = None,
        space_type: Optional[str] = None,
    ) -> SpaceCursor:
        data = self._load()
        current = self._parse(data.get(key)) or SpaceCursor()

        new_watermark = ensure_utc(watermark)
        if current.watermark is not None and ensure_utc(current.watermark) >= new_watermark:
            new_watermark = ensure_utc(current.watermark)

        updated = SpaceCursor(
            watermark=new_watermark,
            has_new_msg=has_new_msg,
            space_name=space_name or current.space_name,
            space_type=space_type or current.space_type,
            updated_at=utcnow(),
        )
        data[key] = updated.model_dump(mode="json")
        self._save(data)
        return updated

    async def mark_idle(
        self,
        key: str,
        space_name: Optional[str] = None,
        space_type: Optional[str] = None,
    ) -> None:
        data = self._load()
        current = self._parse(data.get(key)) or SpaceCursor()
        updated = current.model_copy(update={
            "has_new_msg": False,
            "space_name": space_name or current.space_name,
            "space_type": space_type or current.space_type,
            "updated_at": utcnow(),
        })
        data[key] = updated.model_dump(mode="json")
        self._save(data)


# ============================================================================
# CURSOR STORE
# ============================================================================

class CursorStore:
    """
    Watermark bookkeeping for the collectors.

    advance_watermark() is only called after the items that produced the new
    timestamp are durably stored; it is monotonic and safe to call redundantly.
    """

    def __init__(self, backend: CursorBackend, item_store: ItemWatermarkSource):
        self.backend = backend
        self.item_store = item_store

    async def has_any_data(self, user_id: str, source: Source) -> bool:
        """True if at least one item was ever stored for this user/source."""
        return await self.item_store.has_any_data(user_id, source)

    async def get_space_cursor(self, user_id: str, source: Source, space_id: Optional[str] = None) -> Optional[SpaceCursor]:
        return await self.backend.get(cursor_key(user_id, source, space_id))

    async def get_watermark(self, user_id: str, source: Source, space_id: Optional[str] = None) -> Optional[datetime]:
        """
        Watermark for the scope, or None for "initial collection, no lower bound".

        Falls back to the item store's latest stored timestamp when the cursor
        backend has no entry for this key.
        """
        cursor = await self.backend.get(cursor_key(user_id, source, space_id))
        if cursor is not None and cursor.watermark is not None:
            return ensure_utc(cursor.watermark)

        fallback = await self.item_store.latest_item_time(user_id, source, space_id)
        if fallback is not None:
            logger.info(
                f"Cursor missing for {cursor_key(user_id, source, space_id)}, "
                f"using storage watermark {fallback.isoformat()}"
            )
            return ensure_utc(fallback)
        return None

    async def advance_watermark(
        self,
        user_id: str,
        source: Source,
        space_id: Optional[str],
        new_timestamp: datetime,
        has_new_msg: bool = True,
        space: Optional[Space] = None,
    ) -> datetime:
        """Move the watermark forward to `new_timestamp` (never backward). Returns the stored watermark."""
        key = cursor_key(user_id, source, space_id)
        cursor = await self.backend.advance(
            key,
            ensure_utc(new_timestamp),
            has_new_msg,
            space_name=space.space_name if space else None,
            space_type=space.space_type if space else None,
        )
        logger.info(f"Advanced cursor {key} to {cursor.watermark.isoformat()}")
        return cursor.watermark

    async def mark_idle(self, user_id: str, source: Source, space_id: Optional[str] = None, space: Optional[Space] = None) -> None:
        """Record that the last cycle found nothing new (observability only)."""
        await self.backend.mark_idle(
            cursor_key(user_id, source, space_id),
            space_name=space.space_name if space else None,
            space_type=space.space_type if space else None,
        )
