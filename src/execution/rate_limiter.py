"""Submission pacing and concurrency caps, global and per credential."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog

from src.config.settings import RateLimitConfig


class RateLimitTimeout(Exception):
    """The bounded wait for a submission slot elapsed."""

    def __init__(self, key: str, waited_for: str) -> None:
        self.key = key
        self.waited_for = waited_for
        super().__init__(f"rate limiter timeout for {key} waiting on {waited_for}")


class RateLimiter:
    """Bound exchange submissions.

    Three limits apply to every ``acquire``: at most ``max_concurrent_per_api_key``
    in flight for the credential, at most ``max_concurrent_orders`` in flight
    overall, and consecutive submissions spaced ``1 / max_orders_per_second``
    seconds apart.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._monotonic = monotonic
        self._sleep = sleep
        self._interval = 1.0 / config.max_orders_per_second
        self._global = asyncio.Semaphore(config.max_concurrent_orders)
        self._per_key: dict[str, asyncio.Semaphore] = {}
        self._in_flight: Counter[str] = Counter()
        self._pace_lock = asyncio.Lock()
        self._next_slot = 0.0
        self.log = structlog.get_logger(__name__)

    @asynccontextmanager
    async def acquire(self, key: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold a submission slot for ``key`` for the duration of the block.

        Raises ``RateLimitTimeout`` if the slot is not available within ``timeout``
        (default ``acquire_timeout_sec``).
        """
        timeout = self.config.acquire_timeout_sec if timeout is None else timeout
        deadline = self._monotonic() + timeout
        per_key = self._per_key.get(key)
        if per_key is None:
            per_key = asyncio.Semaphore(self.config.max_concurrent_per_api_key)
            self._per_key[key] = per_key

        held: list[asyncio.Semaphore] = []
        try:
            await self._take(per_key, deadline, key, "per_key_concurrency")
            held.append(per_key)
            await self._take(self._global, deadline, key, "global_concurrency")
            held.append(self._global)
            await self._pace(deadline, key)
        except BaseException:
            for semaphore in reversed(held):
                semaphore.release()
            raise

        self._in_flight[key] += 1
        try:
            yield
        finally:
            self._in_flight[key] -= 1
            if self._in_flight[key] <= 0:
                del self._in_flight[key]
            self._global.release()
            per_key.release()

    def in_flight(self) -> dict[str, Any]:
        return {
            "total": sum(self._in_flight.values()),
            "per_key": dict(self._in_flight),
            "max_concurrent_orders": self.config.max_concurrent_orders,
            "max_concurrent_per_api_key": self.config.max_concurrent_per_api_key,
            "max_orders_per_second": self.config.max_orders_per_second,
        }

    async def _take(
        self, semaphore: asyncio.Semaphore, deadline: float, key: str, waited_for: str
    ) -> None:
        if not semaphore.locked():
            await semaphore.acquire()
            return
        remaining = deadline - self._monotonic()
        if remaining <= 0:
            raise RateLimitTimeout(key, waited_for)
        try:
            await asyncio.wait_for(semaphore.acquire(), timeout=remaining)
        except asyncio.TimeoutError as exc:
            self.log.warning("rate_limit_acquire_timeout", key=key, waited_for=waited_for)
            raise RateLimitTimeout(key, waited_for) from exc

    async def _pace(self, deadline: float, key: str) -> None:
        async with self._pace_lock:
            now = self._monotonic()
            wait = self._next_slot - now
            if wait > 0 and now + wait > deadline:
                self.log.warning("rate_limit_acquire_timeout", key=key, waited_for="pacing")
                raise RateLimitTimeout(key, "pacing")
            self._next_slot = max(now, self._next_slot) + self._interval
        if wait > 0:
            await self._sleep(wait)
