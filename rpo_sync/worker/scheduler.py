"""
Periodic Task Scheduler

Fixed-interval timer with a skip-if-running policy: a tick that finds the
previous run still in progress is dropped (counted, not queued).
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class TaskState(Enum):
    IDLE = "idle"
    RUNNING = "running"


class PeriodicTask:
    """
    Runs `func` every `interval` seconds on the current event loop.

    Each tick spawns `trigger()` as its own task, so a run that outlasts the
    interval is seen as RUNNING by the following ticks, which are skipped.
    Exceptions raised by `func` are logged and the task returns to IDLE.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable[Any]]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.func = func
        self.state = TaskState.IDLE
        self.runs = 0
        self.skipped = 0
        self.failures = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def is_started(self) -> bool:
        return self._running

    async def trigger(self) -> bool:
        """Run once now unless a run is in progress. Returns whether it ran."""
        if self.state is TaskState.RUNNING:
            self.skipped += 1
            logger.debug(f"{self.name}: previous run still in progress, skipping")
            return False

        self.state = TaskState.RUNNING
        try:
            await self.func()
        except Exception as e:
            self.failures += 1
            logger.error(f"{self.name} run failed: {e}", exc_info=True)
        finally:
            self.runs += 1
            self.state = TaskState.IDLE
        return True

    def start(self):
        """Start the timer loop. The first run happens one interval from now."""
        if self._running:
            logger.warning(f"{self.name} already running")
            return

        self._running = True

        async def timer_loop():
            while self._running:
                await asyncio.sleep(self.interval)
                run = asyncio.create_task(self.trigger())
                self._inflight.add(run)
                run.add_done_callback(self._inflight.discard)

        self._task = asyncio.create_task(timer_loop())
        logger.info(f"{self.name} started (interval: {self.interval}s)")

    async def stop(self):
        """Stop the timer and wait for an in-flight run to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info(f"{self.name} stopped (runs: {self.runs}, skipped: {self.skipped})")
