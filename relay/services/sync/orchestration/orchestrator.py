"""
Sync Orchestrator
Top-level driver of collection cycles

STATE MACHINE:
    Idle -> Running -> Idle

- A cycle started while another is Running is skipped (one warning line)
- Users are processed strictly one after another; chat before mail
- collect_user_data() never raises: every failure becomes a SyncAttemptRecord
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from relay.services.sync.models import (
    CollectionResult,
    Credential,
    CycleSummary,
    RunStats,
    Source,
    User,
    UserSyncResult,
    utcnow,
)
from relay.services.sync.oauth import TokenRefresher
from relay.services.sync.sync_log import SyncLogger

logger = logging.getLogger(__name__)


class UserStore(Protocol):
    async def list_active_users(self) -> List[User]: ...

    async def persist_credential(self, user_id: str, credential: Credential) -> None: ...


class Collector(Protocol):
    async def collect(self, user: User) -> CollectionResult: ...


class SyncOrchestrator:
    """
    Owns the Running/Idle flag and the in-memory run statistics.

    Constructed once per process and handed to the scheduler and the API.
    """

    def __init__(
        self,
        user_store: UserStore,
        token_refresher: TokenRefresher,
        chat_collector: Collector,
        mail_collector: Collector,
        sync_logger: SyncLogger,
        clock=utcnow,
    ):
        self.user_store = user_store
        self.token_refresher = token_refresher
        self.sync_logger = sync_logger
        self.collectors: List[Tuple[Source, Collector]] = [
            (Source.CHAT, chat_collector),
            (Source.GMAIL, mail_collector),
        ]
        self._clock = clock

        self.is_running = False
        self.stats = RunStats()
        self.started_at: datetime = clock()
        self.last_run_time: Optional[datetime] = None
        self.last_completed_time: Optional[datetime] = None
        self.last_summary: Optional[CycleSummary] = None

    async def collect_all_data(self) -> Optional[CycleSummary]:
        """
        Run one collection cycle over all active users.

        Returns:
            CycleSummary, or None when skipped because a cycle is already running
        """
        if self.is_running:
            self.stats.skipped_runs += 1
            logger.warning("⚠️  Collection cycle already running, skipping this trigger")
            return None

        self.is_running = True
        self.stats.total_runs += 1
        self.last_run_time = self._clock()
        summary = CycleSummary(started_at=self.last_run_time)

        try:
            users = await self.user_store.list_active_users()
            summary.users_total = len(users)
            logger.info(f"🚀 Starting collection cycle for {len(users)} active users")

            for user in users:
                user_result = await self.collect_user_data(user)
                summary.user_results.append(user_result)
                summary.items_stored += sum(r.items_stored for r in user_result.results.values())
                if user_result.ok:
                    summary.users_succeeded += 1
                else:
                    summary.users_failed += 1

            self.stats.successful_runs += 1
            logger.info(
                f"✅ Collection cycle complete: {summary.users_succeeded}/{summary.users_total} users ok, "
                f"{summary.items_stored} new items"
            )
        except Exception as e:
            self.stats.failed_runs += 1
            self.stats.last_error = str(e)
            logger.error(f"❌ Collection cycle failed: {e}", exc_info=True)
        finally:
            summary.finished_at = self._clock()
            self.last_completed_time = summary.finished_at
            self.last_summary = summary
            self.is_running = False

        return summary

    async def collect_user_data(self, user: User) -> UserSyncResult:
        """
        Refresh the credential, then run chat and mail collection for one user.

        Never raises. A credential failure is recorded for both sources and
        the user's collection is skipped for this cycle.
        """
        result = UserSyncResult(user_id=user.id, email=user.email)

        try:
            credential = await self.token_refresher.ensure_valid(user.credential, user_id=user.id)
            if credential is not user.credential:
                await self.user_store.persist_credential(user.id, credential)
                user = user.model_copy(update={"credential": credential})
                result.token_refreshed = True
        except Exception as e:
            message = f"Token refresh failed: {e}"
            logger.error(f"❌ {message} (user {user.email}), skipping user")
            for source, _ in self.collectors:
                result.errors[source.value] = message
                await self._record_failure(user, source, message, e)
            return result

        for source, collector in self.collectors:
            try:
                result.results[source] = await collector.collect(user)
            except Exception as e:
                message = f"{source.value.capitalize()} collection failed: {e}"
                logger.error(f"❌ {message} (user {user.email})")
                result.errors[source.value] = message
                await self._record_failure(user, source, message, e)

        return result

    async def _record_failure(self, user: User, source: Source, message: str, error: BaseException) -> None:
        try:
            await self.sync_logger.record_error(user.id, source, message, error)
        except Exception as log_error:
            logger.error(f"❌ Failed to record {source.value} error for user {user.id}: {log_error}")

    def get_status(self, next_run: Optional[datetime] = None) -> Dict[str, Any]:
        """Snapshot for the status endpoint."""
        now = self._clock()
        return {
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_completed_time": self.last_completed_time.isoformat() if self.last_completed_time else None,
            "next_run": next_run.isoformat() if next_run else None,
            "uptime_seconds": (now - self.started_at).total_seconds(),
            "stats": self.stats.model_dump(),
        }
