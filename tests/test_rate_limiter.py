from __future__ import annotations

import asyncio

import pytest

from timeboxd.services.rate_limiter import TokenBucketLimiter, UnlimitedLimiter, build_limiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_token_bucket_spends_burst_then_waits_for_refill() -> None:
    clock = FakeClock()
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.now += seconds

    limiter = TokenBucketLimiter(2.0, burst=2, clock=clock, sleep=fake_sleep)

    async def run() -> None:
        for _ in range(3):
            await limiter.acquire()

    asyncio.run(run())
    assert sleeps == [pytest.approx(0.5)]


def test_token_bucket_refills_up_to_burst_only() -> None:
    clock = FakeClock()
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.now += seconds

    limiter = TokenBucketLimiter(1.0, burst=2, clock=clock, sleep=fake_sleep)

    async def run() -> None:
        await limiter.acquire()
        await limiter.acquire()
        clock.now += 60.0
        for _ in range(3):
            await limiter.acquire()

    asyncio.run(run())
    assert len(sleeps) == 1


def test_token_bucket_serves_concurrent_waiters_without_deadlock() -> None:
    limiter = TokenBucketLimiter(200.0, burst=1)
    acquired: list[int] = []

    async def worker(index: int) -> None:
        await limiter.acquire()
        acquired.append(index)

    async def run() -> None:
        await asyncio.wait_for(asyncio.gather(*(worker(i) for i in range(8))), timeout=5.0)

    asyncio.run(run())
    assert sorted(acquired) == list(range(8))


def test_token_bucket_rejects_non_positive_rate() -> None:
    with pytest.raises(ValueError):
        TokenBucketLimiter(0.0)


def test_build_limiter_disables_limiting_for_zero_rate() -> None:
    assert isinstance(build_limiter(0.0, 4), UnlimitedLimiter)
    assert isinstance(build_limiter(4.0, 4), TokenBucketLimiter)
