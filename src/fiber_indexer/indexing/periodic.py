"""Cancellable periodic timer used by the pollers."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Run an async callback every ``interval`` seconds until stopped.

    A tick that raises is logged and the loop keeps going. ``stop()`` cancels
    the sleeping or running tick and waits for it to unwind, so callers never
    race a half-finished tick during shutdown. Ticks never overlap.

    Args:
        name: Label for logs.
        interval: Seconds between the end of one tick and the start of the next.
        callback: Coroutine function run on each tick.
        run_immediately: Run the first tick on start instead of after one interval.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        *,
        run_immediately: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self.last_run: float | None = None
        self.last_error: str | None = None
        self.tick_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop on the running event loop. No-op if already running."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")
        logger.info("Started %s (every %.1fs)", self.name, self.interval)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped %s", self.name)

    async def trigger(self) -> None:
        """Run one tick now, serialized with the loop's own ticks."""
        await self._tick()

    async def _tick(self) -> None:
        async with self._lock:
            try:
                await self._callback()
                self.last_error = None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.last_error = str(e)
                logger.error("%s tick failed: %s", self.name, e, exc_info=True)
            finally:
                self.last_run = time.time()
                self.tick_count += 1

    async def _run(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            await self._tick()
            await asyncio.sleep(self.interval)
