import asyncio
import math
import time

from asyncioconcurrency import ConcurrencyLimiter, limit_function


class SlowFunc:
    def __init__(self, limiter: ConcurrencyLimiter) -> None:
        self.calls = 0
        self.peak = 0
        self.limiter = limiter

    async def perform_slow_call(self) -> None:
        self.peak = max(self.peak, self.limiter.active_count)
        await asyncio.sleep(0.1)
        self.calls += 1


async def perform_test(
    to_be_called: SlowFunc, num_calls: int, expected_duration: float
) -> None:
    start = time.monotonic()
    await asyncio.gather(
        *(
            to_be_called.limiter(to_be_called.perform_slow_call)
            for _ in range(num_calls)
        )
    )
    duration = time.monotonic() - start
    assert to_be_called.calls == num_calls
    # Sleeps may end a clock tick early, never a whole call early.
    assert duration > expected_duration - 0.05, f"duration was {duration}s"
    assert (
        duration - expected_duration < 0.5
    ), f"duration was {duration}s, but expected around {expected_duration}s"


def test_ConcurrencyLimiter():
    async def my_test() -> None:
        to_be_called = SlowFunc(ConcurrencyLimiter(2))
        await perform_test(to_be_called, num_calls=6, expected_duration=0.3)
        assert to_be_called.peak == 2

    asyncio.run(my_test())


def test_ConcurrencyLimiterUnbounded():
    async def my_test() -> None:
        to_be_called = SlowFunc(ConcurrencyLimiter(math.inf))
        await perform_test(to_be_called, num_calls=6, expected_duration=0.1)
        assert to_be_called.peak == 6

    asyncio.run(my_test())


def test_limit_function():
    async def sleeper(seconds: float) -> float:
        await asyncio.sleep(seconds)
        return seconds

    async def my_test() -> None:
        limited = limit_function(sleeper, 3)
        start = time.monotonic()
        results = await asyncio.gather(*(limited(0.1) for _ in range(6)))
        duration = time.monotonic() - start
        assert results == [0.1] * 6
        assert 0.15 < duration < 0.7, f"duration was {duration}s"
        assert limited.limiter.active_count == 0

    asyncio.run(my_test())
