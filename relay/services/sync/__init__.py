"""
Data Sync System
Incremental collection engine for Google Chat and Gmail
"""
from relay.services.sync.cursors import CursorStore, JsonFileCursorBackend
from relay.services.sync.oauth import TokenRefresher
from relay.services.sync.sync_log import SyncLogger
from relay.services.sync.orchestration.chat_sync import ChatCollector
from relay.services.sync.orchestration.email_sync import MailCollector, select_mail_strategy
from relay.services.sync.orchestration.orchestrator import SyncOrchestrator
from relay.services.sync.orchestration.scheduler import SyncScheduler

__all__ = [
    "CursorStore",
    "JsonFileCursorBackend",
    "TokenRefresher",
    "SyncLogger",
    "ChatCollector",
    "MailCollector",
    "select_mail_strategy",
    "SyncOrchestrator",
    "SyncScheduler",
]
