"""Tests for the periodic task runner."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from escrow_engine.core.clock import SimClock
from escrow_engine.scheduler.periodic import PeriodicTask


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        PeriodicTask("t", AsyncMock(), 0)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_counts_runs_and_returns_result(self):
        clock = SimClock()
        work = AsyncMock(return_value="done")
        task = PeriodicTask("t", work, 60, clock=clock)

        assert await task.run_once() == "done"

        health = task.health_check()
        assert health.run_count == 1
        assert health.last_run_at == clock.now()
        assert health.healthy is False  # never started


class TestLoop:
    @pytest.mark.asyncio
    async def test_runs_immediately_on_start(self):
        work = AsyncMock()
        task = PeriodicTask("t", work, 3600)
        await task.start()
        await _settle()
        await task.stop()

        assert work.await_count == 1
        assert task.is_running is False

    @pytest.mark.asyncio
    async def test_deferred_first_run(self):
        work = AsyncMock()
        task = PeriodicTask("t", work, 3600, run_immediately=False)
        await task.start()
        await _settle()
        await task.stop()
        work.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_pass_is_counted_and_loop_survives(self):
        failures = [RuntimeError("boom")]

        async def flaky() -> None:
            if failures:
                raise failures.pop()

        work = AsyncMock(side_effect=flaky)
        task = PeriodicTask("t", work, 0.001)
        await task.start()
        for _ in range(50):
            if work.await_count >= 2:
                break
            await asyncio.sleep(0.01)

        health = task.health_check()
        await task.stop()

        assert work.await_count >= 2
        assert health.healthy is True
        assert health.error_count == 1
        assert "Failed passes" in health.message

    @pytest.mark.asyncio
    async def test_double_start_is_ignored(self):
        task = PeriodicTask("t", AsyncMock(), 3600)
        await task.start()
        first = task._task
        await task.start()
        assert task._task is first
        await task.stop()
        assert task.health_check().message == "Task is not running"
