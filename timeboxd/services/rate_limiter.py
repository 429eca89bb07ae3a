from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Protocol


class Limiter(Protocol):
    async def acquire(self) -> None: ...


class TokenBucketLimiter:
    """Async token bucket shared by every upstream catalog call.

    Tokens refill continuously at ``rate_per_second`` up to ``burst``. Waiters
    sleep outside the lock, so a fully booked bucket never blocks token
    accounting for other tasks. Waiters are not served in FIFO order.
    """

    def __init__(
        self,
        rate_per_second: float,
        burst: int = 1,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self.rate_per_second = rate_per_second
        self.burst = max(1, burst)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.burst)
        self._updated_at = clock()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                now = self._clock()
                self._refill(now)
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                wait_for = max(0.001, (1.0 - self._tokens) / self.rate_per_second)

            await self._sleep(wait_for)

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate_per_second)
        self._updated_at = now


class UnlimitedLimiter:
    async def acquire(self) -> None:
        return None


def build_limiter(rate_per_second: float, burst: int) -> Limiter:
    if rate_per_second <= 0:
        return UnlimitedLimiter()
    return TokenBucketLimiter(rate_per_second, burst)
