"""
Unit tests for the collection scheduler.
"""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from relay.services.sync.orchestration.scheduler import (
    SyncScheduler,
    next_tick_after,
    seconds_until_next_tick,
)


def _at(hour, minute, second=0, microsecond=0):
    return datetime(2024, 3, 1, hour, minute, second, microsecond, tzinfo=timezone.utc)


class TestCronTicks:
    @pytest.mark.parametrize("now,interval,expected", [
        (_at(12, 0), 10, _at(12, 10)),
        (_at(12, 3, 15), 10, _at(12, 10)),
        (_at(12, 9, 59, 999999), 10, _at(12, 10)),
        (_at(12, 55), 10, _at(13, 0)),
        (_at(12, 56), 7, _at(13, 0)),
        (_at(12, 49), 7, _at(12, 56)),
        (_at(23, 59, 30), 1, datetime(2024, 3, 2, 0, 0, tzinfo=timezone.utc)),
        (_at(12, 30), 60, _at(13, 0)),
    ])
    def test_next_tick(self, now, interval, expected):
        assert next_tick_after(now, interval) == expected

    def test_seconds_until_next_tick(self):
        assert seconds_until_next_tick(_at(12, 8, 30), 10) == 90.0

    @pytest.mark.parametrize("interval", [0, 61])
    def test_rejects_invalid_interval(self, interval):
        with pytest.raises(ValueError):
            next_tick_after(_at(12, 0), interval)


def _orchestrator():
    orchestrator = MagicMock()
    orchestrator.collect_all_data = AsyncMock(return_value="summary")
    orchestrator.get_status = MagicMock(side_effect=lambda next_run=None: {"next_run": next_run})
    return orchestrator


class TestSyncScheduler:
    @pytest.mark.asyncio
    async def test_initial_run_fires_after_delay(self):
        orchestrator = _orchestrator()
        scheduler = SyncScheduler(orchestrator, interval_minutes=10, initial_delay_seconds=0)

        scheduler.start()
        for _ in range(20):
            await asyncio.sleep(0)
        await scheduler.shutdown()

        orchestrator.collect_all_data.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_before_initial_delay_prevents_any_run(self):
        orchestrator = _orchestrator()
        scheduler = SyncScheduler(orchestrator, interval_minutes=10, initial_delay_seconds=60)

        scheduler.start()
        await asyncio.sleep(0)
        await scheduler.shutdown()

        orchestrator.collect_all_data.assert_not_awaited()
        assert scheduler.next_run is None
        assert not scheduler.is_started

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_in_flight_cycle(self):
        release = asyncio.Event()
        finished = []

        async def slow_cycle():
            await release.wait()
            finished.append(True)

        orchestrator = _orchestrator()
        orchestrator.collect_all_data = AsyncMock(side_effect=slow_cycle)
        scheduler = SyncScheduler(orchestrator, interval_minutes=10, initial_delay_seconds=0)

        scheduler.start()
        for _ in range(20):
            await asyncio.sleep(0)

        shutdown = asyncio.create_task(scheduler.shutdown())
        await asyncio.sleep(0)
        assert not shutdown.done()

        release.set()
        await shutdown
        assert finished == [True]

    @pytest.mark.asyncio
    async def test_trigger_goes_through_orchestrator(self):
        orchestrator = _orchestrator()
        scheduler = SyncScheduler(orchestrator, interval_minutes=10, initial_delay_seconds=60)

        assert await scheduler.trigger() == "summary"
        orchestrator.collect_all_data.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_status_includes_next_run(self):
        now = _at(12, 0)
        scheduler = SyncScheduler(_orchestrator(), interval_minutes=10, initial_delay_seconds=30, clock=lambda: now)

        scheduler.start()
        status = scheduler.get_status()
        await scheduler.shutdown()

        assert status["next_run"] == _at(12, 0, 30)

    @pytest.mark.asyncio
    async def test_wait_stopped_returns_after_stop(self):
        scheduler = SyncScheduler(_orchestrator(), interval_minutes=10, initial_delay_seconds=60)
        scheduler.start()

        waiter = asyncio.create_task(scheduler.wait_stopped())
        await asyncio.sleep(0)
        scheduler.stop()
        await asyncio.wait_for(waiter, timeout=1)
        await scheduler.shutdown()

    def test_rejects_invalid_interval(self):
        with pytest.raises(ValueError):
            SyncScheduler(_orchestrator(), interval_minutes=0)
