"""
Dependency Injection
Builds the sync engine once per process and provides it to routes

DEPENDENCIES:
- Supabase client (users, items, sync logs)
- HTTP client (Google OAuth, Chat and Gmail APIs)
- SyncOrchestrator + SyncScheduler (one instance each)
"""
import logging
from typing import Optional

import httpx
from supabase import Client, create_client

from relay.core.config import Settings, settings
from relay.core.retry import RetryExecutor
from relay.services.sync.cursors import CursorBackend, CursorStore, JsonFileCursorBackend
from relay.services.sync.database import PostgresCursorBackend, SupabaseItemStore, SupabaseUserStore
from relay.services.sync.oauth import TokenRefresher
from relay.services.sync.orchestration.chat_sync import ChatCollector
from relay.services.sync.orchestration.email_sync import MailCollector
from relay.services.sync.orchestration.orchestrator import SyncOrchestrator
from relay.services.sync.orchestration.scheduler import SyncScheduler
from relay.services.sync.providers.google_chat import load_user_name_mapping
from relay.services.sync.sync_log import SyncLogger

logger = logging.getLogger(__name__)

# ============================================================================
# GLOBAL CLIENTS (initialized once, reused across cycles and requests)
# ============================================================================

_supabase_client: Optional[Client] = None
_http_client: Optional[httpx.AsyncClient] = None
_orchestrator: Optional[SyncOrchestrator] = None
_scheduler: Optional[SyncScheduler] = None


# ============================================================================
# ENGINE WIRING
# ============================================================================

def build_cursor_backend(config: Settings) -> CursorBackend:
    if config.cursor_backend == "postgres":
        logger.info("Cursor backend: Postgres (sync_cursors table)")
        return PostgresCursorBackend(config.database_url)
    logger.info(f"Cursor backend: JSON file ({config.cursor_file_path})")
    return JsonFileCursorBackend(config.cursor_file_path)


def build_engine(supabase: Client, http_client: httpx.AsyncClient, config: Settings = settings) -> SyncOrchestrator:
    """
    Wire stores, collectors and the orchestrator from configuration.

    Args:
        supabase: Supabase client (service role)
        http_client: Shared async HTTP client for all provider calls
        config: Settings instance

    Returns:
        A ready SyncOrchestrator (Idle)
    """
    retry = RetryExecutor(
        max_attempts=config.retry_max_attempts,
        base_delay=config.retry_base_delay_seconds,
        transient_status_codes=config.retry_status_codes,
        max_retry_after=config.retry_max_wait_seconds,
    )

    user_store = SupabaseUserStore(supabase)
    item_store = SupabaseItemStore(supabase)
    cursors = CursorStore(build_cursor_backend(config), item_store)
    sync_logger = SyncLogger(user_store)

    token_refresher = TokenRefresher(
        http_client,
        retry,
        client_id=config.google_client_id,
        client_secret=config.google_client_secret,
        token_uri=config.google_token_uri,
        margin_seconds=config.token_refresh_margin_seconds,
    )

    chat_collector = ChatCollector(
        http_client,
        retry,
        cursors,
        item_store,
        sync_logger,
        config=config,
        name_mapping=load_user_name_mapping(config.user_name_mapping_path),
    )
    mail_collector = MailCollector(http_client, retry, cursors, item_store, sync_logger, config=config)

    return SyncOrchestrator(user_store, token_refresher, chat_collector, mail_collector, sync_logger)


# ============================================================================
# INITIALIZATION (called on app / worker startup)
# ============================================================================

async def initialize_clients(start_scheduler: bool = True):
    """
    Initialize global clients and the sync engine.

    Called from main.py lifespan and worker.py.
    """
    global _supabase_client, _http_client, _orchestrator, _scheduler

    logger.info("Initializing global clients...")

    try:
        _supabase_client = create_client(
            settings.supabase_url,
            settings.supabase_service_key  # Backend uses service role
        )
        logger.info("✅ Supabase client initialized")
    except Exception as e:
        logger.error(f"❌ Failed to initialize Supabase: {e}")
        raise

    _http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    logger.info("✅ HTTP client initialized")

    _orchestrator = build_engine(_supabase_client, _http_client)
    _scheduler = SyncScheduler(
        _orchestrator,
        interval_minutes=settings.fetch_interval_minutes,
        initial_delay_seconds=settings.initial_run_delay_seconds,
    )

    if start_scheduler:
        _scheduler.start()
    else:
        logger.info("ℹ️  Scheduler disabled, manual triggers only")

    logger.info("✅ Sync engine initialized")


async def shutdown_clients():
    """
    Stop the scheduler (letting an in-flight cycle finish) and close clients.

    Called from main.py lifespan and worker.py.
    """
    global _supabase_client, _http_client, _orchestrator, _scheduler

    logger.info("Shutting down sync engine...")

    if _scheduler:
        await _scheduler.shutdown()

    if _http_client:
        try:
            await _http_client.aclose()
            logger.info("✅ HTTP client closed")
        except Exception as e:
            logger.error(f"Error closing HTTP client: {e}")

    # Supabase doesn't need explicit cleanup
    _supabase_client = None
    _http_client = None
    _orchestrator = None
    _scheduler = None

    logger.info("✅ Shutdown complete")


# ============================================================================
# DEPENDENCY FUNCTIONS (injected into routes)
# ============================================================================

def get_orchestrator() -> SyncOrchestrator:
    if _orchestrator is None:
        logger.error("Sync engine not initialized")
        raise RuntimeError("Sync engine not initialized. Call initialize_clients() first.")
    return _orchestrator


def get_scheduler() -> SyncScheduler:
    """
    Get the scheduler for dependency injection.

    Usage:
        @router.post("/sync/run")
        async def run(scheduler: SyncScheduler = Depends(get_scheduler)):
            return await scheduler.trigger()
    """
    if _scheduler is None:
        logger.error("Scheduler not initialized")
        raise RuntimeError("Scheduler not initialized. Call initialize_clients() first.")
    return _scheduler
