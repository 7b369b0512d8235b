"""
Email sync orchestration engine
Initial vs incremental Gmail collection

STRATEGIES:
- initial:     nothing stored yet, newest messages up to the initial budget
- incremental: messages after the user's last successful mail sync
- fallback:    data exists but the last-sync marker is missing, short recent window
"""
import asyncio
import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel

from relay.core.config import Settings, settings as default_settings
from relay.core.exceptions import MalformedItemError, ProviderAPIError
from relay.core.retry import RetryExecutor
from relay.services.sync.cursors import CursorStore
from relay.services.sync.models import CollectionResult, MailMessage, Source, User, ensure_utc, utcnow
from relay.services.sync.providers.gmail import (
    GmailClient,
    after_query,
    internal_time,
    newer_than_query,
    normalize_gmail_message,
)
from relay.services.sync.sync_log import SyncLogger

logger = logging.getLogger(__name__)


class MailItemStore(Protocol):
    async def upsert_items(self, source: Source, items: Sequence[MailMessage]) -> int: ...


# ============================================================================
# STRATEGY SELECTION
# ============================================================================

class MailStrategy(BaseModel):
    kind: str
    query: str
    max_results: int

    model_config = {"frozen": True}


def select_mail_strategy(
    has_any_data: bool,
    last_sync: Optional[datetime],
    config: Settings = default_settings,
) -> MailStrategy:
    """
    Pick the Gmail listing query and budget for one user.

    Args:
        has_any_data: Whether any mail was ever stored for the user
        last_sync: The user's last successful mail sync instant
        config: Settings carrying the budgets and the fallback window

    Returns:
        MailStrategy(kind, query, max_results)
    """
    if not has_any_data:
        return MailStrategy(kind="initial", query="", max_results=config.mail_initial_max_results)

    if last_sync is not None:
        return MailStrategy(
            kind="incremental",
            query=after_query(last_sync),
            max_results=config.mail_incremental_max_results,
        )

    return MailStrategy(
        kind="fallback",
        query=newer_than_query(config.mail_fallback_window_days),
        max_results=config.mail_fallback_max_results,
    )


# ============================================================================
# COLLECTOR
# ============================================================================

class MailCollector:
    """SourceCollector for Gmail."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient],
        retry: RetryExecutor,
        cursors: CursorStore,
        item_store: MailItemStore,
        sync_logger: SyncLogger,
        config: Settings = default_settings,
        client_factory: Optional[Callable[[str], GmailClient]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.retry = retry
        self.cursors = cursors
        self.item_store = item_store
        self.sync_logger = sync_logger
        self.config = config
        self._sleep = sleep
        self._clock = clock

        if client_factory is None:
            client_factory = lambda token: GmailClient(  # noqa: E731
                http_client, token, base_url=config.gmail_api_base_url
            )
        self.client_factory = client_factory

    async def collect(self, user: User) -> CollectionResult:
        """
        Collect new Gmail messages for one user.

        Always writes a success SyncAttemptRecord when it returns, zero items included.
        Listing and storage errors propagate to the orchestrator.

        An incremental window larger than the budget is drained oldest first:
        the marker only moves up to the newest message this run processed,
        so the remainder is listed again on the next run.
        """
        client = self.client_factory(user.credential.access_token)

        # Next incremental query starts where this listing started
        listing_started = self._clock()

        has_data = await self.cursors.has_any_data(user.id, Source.GMAIL)
        strategy = select_mail_strategy(has_data, user.last_gmail_sync, self.config)
        logger.info(
            f"🚀 Starting {strategy.kind} Gmail collection for {user.email} "
            f"(query={strategy.query!r}, max={strategy.max_results})"
        )

        message_ids = await self._list_message_ids(client, strategy)
        truncated = len(message_ids) > strategy.max_results
        if truncated:
            # Listing is newest first; take the oldest slice
            logger.info(
                f"📬 {len(message_ids)} Gmail messages pending for {user.email}, "
                f"processing the oldest {strategy.max_results}"
            )
            message_ids = message_ids[-strategy.max_results:]
        logger.info(f"📬 Found {len(message_ids)} Gmail messages for {user.email}")

        messages: List[MailMessage] = []
        received: List[datetime] = []
        skipped = 0
        for message_id in message_ids:
            try:
                raw_message = await self.retry.execute(partial(client.get_message_detail, message_id))
                messages.append(normalize_gmail_message(raw_message, user.id))
            except (ProviderAPIError, httpx.HTTPError, MalformedItemError, ValueError) as e:
                skipped += 1
                logger.warning(f"⚠️  Skipping Gmail message {message_id}: {e}")
            else:
                when = internal_time(raw_message)
                if when is not None:
                    received.append(when)
            await self._sleep(self.config.mail_detail_pause_seconds)

        messages.sort(key=lambda m: m.message_time, reverse=True)
        stored = await self.item_store.upsert_items(Source.GMAIL, messages) if messages else 0

        watermark = listing_started
        if truncated:
            watermark = self._partial_watermark(user.last_gmail_sync, received)

        result = CollectionResult(
            source=Source.GMAIL,
            items_stored=stored,
            items_seen=len(message_ids),
            items_skipped=skipped,
            scopes_processed=1,
            has_new_items=stored > 0,
            detail=(
                f"Collected {stored} new messages ({strategy.kind}, {skipped} skipped"
                f"{', more pending' if truncated else ''})"
            ),
        )

        await self.sync_logger.record_success(
            user.id, Source.GMAIL, stored, result.detail, watermark=watermark
        )
        logger.info(f"✅ Gmail collection for {user.email}: {stored} new messages")
        return result

    @staticmethod
    def _partial_watermark(last_sync: Optional[datetime], received: List[datetime]) -> Optional[datetime]:
        """
        Marker for a run that left older-than-listing-start mail unprocessed.

        One second below the newest processed receipt time, since `after:`
        works in whole seconds; never behind the previous marker.
        """
        if not received:
            return last_sync
        candidate = max(received) - timedelta(seconds=1)
        if last_sync is not None and ensure_utc(last_sync) > candidate:
            return last_sync
        return candidate

    async def _list_message_ids(self, client: GmailClient, strategy: MailStrategy) -> List[str]:
        """
        Page through the listing.

        Initial and fallback listings stop at the strategy's budget.
        Incremental listings read the whole window so the caller can
        start from its oldest end.
        """
        bounded = strategy.kind != "incremental"
        message_ids: List[str] = []
        page_token = None

        while not bounded or len(message_ids) < strategy.max_results:
            page_size = self.config.mail_page_size
            if bounded:
                page_size = min(page_size, strategy.max_results - len(message_ids))
            ids, page_token = await self.retry.execute(
                partial(client.list_message_ids, strategy.query, page_size, page_token)
            )
            message_ids.extend(ids)
            if not ids or not page_token:
                break
            await self._sleep(self.config.mail_page_pause_seconds)

        return message_ids[:strategy.max_results] if bounded else message_ids
