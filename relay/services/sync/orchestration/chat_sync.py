"""
Chat sync orchestration engine
Per-space incremental collection of Google Chat messages

FLOW (per user):
1. List the user's spaces (paginated, retried)
2. For each space: read its watermark, fetch messages strictly after it in
   ascending order, normalize, store, then advance the watermark
3. Write one success SyncAttemptRecord with the cumulative count

A failing space is logged and skipped; the remaining spaces still run.
If no space succeeds the whole attempt fails.
"""
import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from relay.core.config import Settings, settings as default_settings
from relay.core.exceptions import MalformedItemError, SyncEngineError
from relay.core.retry import RetryExecutor
from relay.services.sync.cursors import CursorStore
from relay.services.sync.models import ChatMessage, CollectionResult, Source, Space, User
from relay.services.sync.providers.google_chat import GoogleChatClient, normalize_chat_message
from relay.services.sync.sync_log import SyncLogger

logger = logging.getLogger(__name__)


class ChatItemStore(Protocol):
    async def upsert_items(self, source: Source, items: Sequence[ChatMessage]) -> int: ...

    async def latest_chat_space_times(self, user_id: str) -> List[Tuple[Space, datetime]]: ...


class ChatCollector:
    """
    SourceCollector for Google Chat.

    Watermarks are kept per space in the CursorStore and only advanced after
    the space's messages were stored.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient],
        retry: RetryExecutor,
        cursors: CursorStore,
        item_store: ChatItemStore,
        sync_logger: SyncLogger,
        config: Settings = default_settings,
        name_mapping: Optional[Dict[str, str]] = None,
        client_factory: Optional[Callable[[str], GoogleChatClient]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.retry = retry
        self.cursors = cursors
        self.item_store = item_store
        self.sync_logger = sync_logger
        self.config = config
        self.name_mapping = name_mapping or {}
        self._sleep = sleep

        if client_factory is None:
            client_factory = lambda token: GoogleChatClient(  # noqa: E731
                http_client, token, base_url=config.chat_api_base_url
            )
        self.client_factory = client_factory

    async def collect(self, user: User) -> CollectionResult:
        """
        Collect new chat messages for one user across all spaces.

        Raises:
            Any error from listing spaces or writing the sync log. Per-space
            errors are caught here and counted in `scopes_failed`; when every
            space fails, SyncEngineError so the attempt is recorded as an error.
        """
        logger.info(f"🚀 Starting chat collection for user {user.email}")
        client = self.client_factory(user.credential.access_token)
        result = CollectionResult(source=Source.CHAT)

        spaces = await self._list_spaces(client)
        logger.info(f"Found {len(spaces)} chat spaces for user {user.email}")

        last_error: Optional[Exception] = None
        for space in spaces:
            try:
                stored, seen, skipped = await self._collect_space(client, user, space)
            except Exception as e:
                result.scopes_failed += 1
                last_error = e
                logger.error(f"❌ Chat collection failed for space {space.space_id} ({space.space_name}): {e}")
                continue

            result.scopes_processed += 1
            result.items_stored += stored
            result.items_seen += seen
            result.items_skipped += skipped

        if last_error is not None and result.scopes_processed == 0:
            raise SyncEngineError(
                f"All {result.scopes_failed} chat spaces failed, last error: {last_error}",
                details={"spaces_failed": result.scopes_failed, "last_error": type(last_error).__name__},
            ) from last_error

        result.has_new_items = result.items_stored > 0
        status_text = "New messages found." if result.has_new_items else "No new messages."
        result.detail = (
            f"Collected from {result.scopes_processed} spaces ({result.scopes_failed} failed). {status_text}"
        )

        await self.sync_logger.record_success(user.id, Source.CHAT, result.items_stored, result.detail)
        logger.info(f"✅ Chat collection for {user.email}: {result.items_stored} new messages")
        return result

    async def _list_spaces(self, client: GoogleChatClient) -> List[Space]:
        spaces: List[Space] = []
        page_token = None

        while True:
            page, page_token = await self.retry.execute(partial(client.list_spaces, page_token))
            spaces.extend(page)
            if not page_token:
                return spaces
            await self._sleep(self.config.chat_page_pause_seconds)

    async def _collect_space(self, client: GoogleChatClient, user: User, space: Space) -> Tuple[int, int, int]:
        """
        Fetch, store and checkpoint one space.

        Returns:
            (items stored, items seen, items skipped)
        """
        watermark = await self.cursors.get_watermark(user.id, Source.CHAT, space.space_id)
        messages: List[ChatMessage] = []
        seen = 0
        skipped = 0
        page_token = None

        while True:
            raw_messages, next_token = await self.retry.execute(partial(
                client.list_messages,
                space.space_id,
                after=watermark,
                page_token=page_token,
                page_size=self.config.chat_page_size,
            ))

            for raw_message in raw_messages:
                seen += 1
                try:
                    message = normalize_chat_message(raw_message, user.id, space, self.name_mapping)
                except (MalformedItemError, ValueError) as e:
                    skipped += 1
                    logger.warning(f"⚠️  Skipping chat message in {space.space_id}: {e}")
                    continue

                if watermark is not None and message.message_time <= watermark:
                    continue
                messages.append(message)

            # First encounter reads a single page
            if not next_token or watermark is None:
                break
            page_token = next_token
            await self._sleep(self.config.chat_page_pause_seconds)

        if not messages:
            await self.cursors.mark_idle(user.id, Source.CHAT, space.space_id, space=space)
            return 0, seen, skipped

        messages.sort(key=lambda m: m.message_time)
        stored = await self.item_store.upsert_items(Source.CHAT, messages)
        await self.cursors.advance_watermark(
            user.id,
            Source.CHAT,
            space.space_id,
            messages[-1].message_time,
            has_new_msg=True,
            space=space,
        )

        logger.info(f"   {space.space_name}: {stored} new messages stored ({len(messages)} fetched)")
        return stored, seen, skipped

    async def rebuild_cursors_from_storage(self, user_id: str) -> int:
        """
        Reseed the per-space chat cursors from the newest stored message in each space.

        Returns:
            Number of spaces written
        """
        space_times = await self.item_store.latest_chat_space_times(user_id)
        for space, latest in space_times:
            await self.cursors.advance_watermark(
                user_id, Source.CHAT, space.space_id, latest, has_new_msg=False, space=space
            )

        logger.info(f"✅ Rebuilt {len(space_times)} chat cursors for user {user_id} from storage")
        return len(space_times)
