"""
Sync attempt logging
Records the outcome of each (user, source) collection attempt
"""
import logging
import traceback
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from relay.core.exceptions import SyncEngineError
from relay.services.sync.models import Source, SyncAttemptRecord, SyncStatus

logger = logging.getLogger(__name__)


class SyncOutcomeSink(Protocol):
    async def record_sync_outcome(self, record: SyncAttemptRecord) -> None: ...


def error_details(error: BaseException) -> Dict[str, Any]:
    """Serializable description of an exception for sync_logs.error_details."""
    details: Dict[str, Any] = {
        "type": type(error).__name__,
        "message": str(error),
        "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }
    if isinstance(error, SyncEngineError) and error.details:
        details["details"] = error.details
    return details


class SyncLogger:
    """
    Writes SyncAttemptRecords through the user store.

    A success record moves the user's last-sync marker for that source;
    an error record never does.
    """

    def __init__(self, sink: SyncOutcomeSink):
        self.sink = sink

    async def record_success(
        self,
        user_id: str,
        source: Source,
        item_count: int,
        message: str,
        watermark: Optional[datetime] = None,
    ) -> SyncAttemptRecord:
        record = SyncAttemptRecord(
            user_id=user_id,
            source=source,
            status=SyncStatus.SUCCESS,
            item_count=item_count,
            message=message,
            watermark=watermark,
        )
        await self._write(record)
        return record

    async def record_error(
        self,
        user_id: str,
        source: Source,
        message: str,
        error: Optional[BaseException] = None,
    ) -> SyncAttemptRecord:
        record = SyncAttemptRecord(
            user_id=user_id,
            source=source,
            status=SyncStatus.ERROR,
            item_count=0,
            message=message,
            error_details=error_details(error) if error is not None else None,
        )
        await self._write(record)
        return record

    async def _write(self, record: SyncAttemptRecord) -> None:
        line = (
            f"SYNC_LOG user={record.user_id} source={record.source.value} "
            f"status={record.status.value} items={record.item_count} detail={record.message}"
        )
        if record.status == SyncStatus.SUCCESS:
            logger.info(line)
        else:
            logger.error(line)

        await self.sink.record_sync_outcome(record)
