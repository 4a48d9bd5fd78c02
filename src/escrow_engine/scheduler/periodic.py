"""Periodic task runner.

Scheduled work is modelled as a ticker plus a finite, idempotent pass
(``run_once``).  The ticker never sleeps per row; a pass that raises is
logged and counted, and the next tick runs as usual.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from escrow_engine.core.clock import IClock, WallClock

logger = logging.getLogger(__name__)


class TaskHealth(BaseModel):
    name: str
    healthy: bool
    message: str = ""
    last_run_at: datetime | None = None
    run_count: int = 0
    error_count: int = 0


class PeriodicTask:
    """Runs *work* every *interval* seconds until stopped.

    Parameters
    ----------
    name:
        Label used in logs and task names.
    work:
        Zero-argument coroutine function performing one pass.
    interval:
        Seconds between passes.  Must be positive.
    run_immediately:
        Run the first pass on start rather than after one interval.
    """

    def __init__(
        self,
        name: str,
        work: Callable[[], Awaitable[Any]],
        interval: float,
        *,
        run_immediately: bool = True,
        clock: IClock | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self._work = work
        self._interval = interval
        self._run_immediately = run_immediately
        self._clock = clock or WallClock()
        self._task: asyncio.Task | None = None
        self._running = False
        self._run_count = 0
        self._error_count = 0
        self._last_run_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("%s is already running", self.name)
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"periodic-{self.name}")
        logger.info("%s started (interval=%ss)", self.name, self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("%s stopped after %d runs", self.name, self._run_count)

    async def run_once(self) -> Any:
        """Run one pass now, outside the ticker."""
        result = await self._work()
        self._run_count += 1
        self._last_run_at = self._clock.now()
        return result

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval)
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._error_count += 1
                logger.exception(
                    "%s pass failed (errors=%d)", self.name, self._error_count
                )
            await asyncio.sleep(self._interval)

    def health_check(self) -> TaskHealth:
        message = ""
        if not self._running:
            message = "Task is not running"
        elif self._error_count > 0:
            message = f"Failed passes: {self._error_count}"
        return TaskHealth(
            name=self.name,
            healthy=self._running,
            message=message,
            last_run_at=self._last_run_at,
            run_count=self._run_count,
            error_count=self._error_count,
        )
