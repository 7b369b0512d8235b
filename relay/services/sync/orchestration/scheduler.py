"""
Collection Scheduler
Fires orchestrator cycles on a wall-clock interval (cron */N, UTC)

- Initial run shortly after start
- Ticks on minute boundaries divisible by the interval
- Manual triggers go through the same overlap guard
- stop() prevents further ticks; an in-flight cycle finishes naturally
"""
import asyncio
import logging
import signal
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Set

from relay.services.sync.models import CycleSummary, ensure_utc, utcnow
from relay.services.sync.orchestration.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


def next_tick_after(now: datetime, interval_minutes: int) -> datetime:
    """
    Next instant matching cron `*/interval_minutes` strictly after `now`.

    Minutes restart at 0 every hour, like cron's minute field.
    """
    if not 1 <= interval_minutes <= 60:
        raise ValueError("interval_minutes must be between 1 and 60")

    now = ensure_utc(now)
    hour_start = now.replace(minute=0, second=0, microsecond=0)
    next_minute = (now.minute // interval_minutes + 1) * interval_minutes
    if next_minute >= 60:
        return hour_start + timedelta(hours=1)
    return hour_start + timedelta(minutes=next_minute)


def seconds_until_next_tick(now: datetime, interval_minutes: int) -> float:
    return (next_tick_after(now, interval_minutes) - ensure_utc(now)).total_seconds()


class SyncScheduler:
    """Periodic driver for a SyncOrchestrator."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval_minutes: int = 10,
        initial_delay_seconds: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not 1 <= interval_minutes <= 60:
            raise ValueError("interval_minutes must be between 1 and 60")

        self.orchestrator = orchestrator
        self.interval_minutes = interval_minutes
        self.initial_delay_seconds = initial_delay_seconds
        self._clock = clock

        self.next_run: Optional[datetime] = None
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._cycles: Set[asyncio.Task] = set()

    @property
    def is_started(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.is_started:
            logger.warning("⚠️  Scheduler already started")
            return

        self._stop_event.clear()
        self.next_run = self._clock() + timedelta(seconds=self.initial_delay_seconds)
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info(
            f"✅ Scheduler started: every {self.interval_minutes} minutes (UTC), "
            f"first run in {self.initial_delay_seconds:g}s"
        )

    async def _run_loop(self) -> None:
        if await self._wait(self.initial_delay_seconds):
            return
        self._spawn_cycle()

        while not self._stop_event.is_set():
            now = self._clock()
            self.next_run = next_tick_after(now, self.interval_minutes)
            if await self._wait((self.next_run - now).total_seconds()):
                return
            self._spawn_cycle()

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return False
        return True

    def _spawn_cycle(self) -> None:
        task = asyncio.create_task(self._run_cycle())
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    async def _run_cycle(self) -> None:
        try:
            await self.orchestrator.collect_all_data()
        except Exception as e:
            logger.error(f"❌ Scheduled cycle crashed: {e}", exc_info=True)

    async def trigger(self) -> Optional[CycleSummary]:
        """Run one cycle now. None when a cycle is already running."""
        logger.info("Manual collection trigger")
        return await self.orchestrator.collect_all_data()

    def stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Stopping scheduler, no further ticks will fire")
        self._stop_event.set()
        self.next_run = None

    async def wait_stopped(self) -> None:
        await self._stop_event.wait()

    async def shutdown(self) -> None:
        """Stop ticking and wait for any in-flight cycle to finish."""
        self.stop()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if self._cycles:
            logger.info(f"Waiting for {len(self._cycles)} in-flight cycle(s) to finish")
            await asyncio.gather(*list(self._cycles), return_exceptions=True)
        logger.info("✅ Scheduler shut down")

    def install_signal_handlers(self) -> None:
        """SIGTERM/SIGINT stop the scheduler."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError) as e:
                logger.warning(f"⚠️  Cannot install handler for {sig.name}: {e}")

    def get_status(self) -> Dict[str, Any]:
        return self.orchestrator.get_status(next_run=self.next_run)
