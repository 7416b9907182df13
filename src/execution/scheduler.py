"""Fixed-interval tick scheduler with a single-flight guard."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog


class TickScheduler:
    """Run ``tick`` every ``interval`` seconds, never two at once.

    A boundary that arrives while the previous tick is still running is skipped
    rather than queued.
    """

    def __init__(
        self,
        interval: float,
        tick: Callable[[], Awaitable[Any]],
        name: str = "order_executor",
    ) -> None:
        self.interval = interval
        self._tick = tick
        self.name = name
        self._current: asyncio.Task | None = None
        self._loop_task: asyncio.Task | None = None
        self._stopped = asyncio.Event()
        self.ticks_started = 0
        self.ticks_skipped = 0
        self.log = structlog.get_logger(__name__)

    @property
    def tick_running(self) -> bool:
        return self._current is not None and not self._current.done()

    def trigger(self) -> bool:
        """Start a tick now unless one is running. Returns True if a tick was started."""
        if self.tick_running:
            self.ticks_skipped += 1
            self.log.warning("scheduler_tick_skipped", scheduler=self.name)
            return False
        self.ticks_started += 1
        self._current = asyncio.create_task(self._run_tick())
        return True

    async def _run_tick(self) -> None:
        try:
            await self._tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.log.exception("scheduler_tick_failed", scheduler=self.name)

    async def run_forever(self) -> None:
        self._stopped.clear()
        self.log.info("scheduler_started", scheduler=self.name, interval_sec=self.interval)
        while not self._stopped.is_set():
            self.trigger()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    def start(self) -> asyncio.Task:
        self._loop_task = asyncio.create_task(self.run_forever())
        return self._loop_task

    async def wait_idle(self) -> None:
        """Wait for the current tick, if any, to finish."""
        if self._current is not None:
            await asyncio.gather(self._current, return_exceptions=True)

    async def stop(self, cancel_running: bool = False) -> None:
        self._stopped.set()
        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        if self._current is not None and not self._current.done():
            if cancel_running:
                self._current.cancel()
            await asyncio.gather(self._current, return_exceptions=True)
        self.log.info("scheduler_stopped", scheduler=self.name)
