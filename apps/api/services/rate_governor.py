"""
Rate governor for bursts of outbound metadata calls.

Controls:
- Max N concurrent calls (semaphore)
- Token bucket: N calls per refill period, refilled continuously
- Per-call failure isolation: one failed call yields None, never aborts the batch
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class TokenBucket:
    """Async token bucket holding ``capacity`` tokens, refilled over ``refill_period`` seconds."""

    def __init__(
        self,
        capacity: int,
        refill_period: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.refill_period = max(refill_period, 0.0)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        if self.refill_period == 0:
            self._tokens = float(self.capacity)
        else:
            rate = self.capacity / self.refill_period
            self._tokens = min(float(self.capacity), self._tokens + (now - self._updated) * rate)
        self._updated = now

    async def acquire(self) -> None:
        """Wait until a token is available and take it."""
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                rate = self.capacity / self.refill_period
                await self._sleep((1 - self._tokens) / rate)


class RateGovernor:
    """Runs a batch of calls under a concurrency cap and a token bucket."""

    def __init__(self, max_concurrent: int = 10, refill_period: float = 0.3, bucket: TokenBucket | None = None) -> None:
        self.max_concurrent = max_concurrent
        self.bucket = bucket or TokenBucket(capacity=max_concurrent, refill_period=refill_period)
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def _guarded(self, func: Callable[[T], Awaitable[R]], item: T) -> R | None:
        async with self._semaphore:
            await self.bucket.acquire()
            try:
                return await func(item)
            except Exception as e:
                logger.warning("Rate-governed call failed for %r: %s", item, e)
                return None

    async def map(self, func: Callable[[T], Awaitable[R]], items: Iterable[T]) -> list[R | None]:
        """Apply ``func`` to every item; results keep input order, failures are None."""
        return list(await asyncio.gather(*(self._guarded(func, item) for item in items)))
