from __future__ import annotations

import pytest

from themedraft.services.gatekeeper.rate_limiter import (
    FixedWindowRateLimiter,
    seconds_until_window_end,
    window_start,
)
from themedraft.tests.utils.fakes import FakeRedis


class _Clock:
    def __init__(self, now_s: float) -> None:
        self.now_s = now_s

    def __call__(self) -> float:
        return self.now_s


def test_window_math() -> None:
    assert window_start(125.0, 60) == 120
    assert seconds_until_window_end(125.0, 60) == 55
    # Never tell a client to retry in zero seconds.
    assert seconds_until_window_end(179.9, 60) == 1


@pytest.mark.asyncio
async def test_allows_up_to_limit_then_denies_with_retry_after() -> None:
    redis = FakeRedis()
    clock = _Clock(1_000_020.0)
    limiter = FixedWindowRateLimiter(redis, limit=5, window_s=60, prefix="rl", time_provider=clock)

    results = [await limiter.check_and_increment("t1") for _ in range(6)]

    assert [result.allowed for result in results] == [True] * 5 + [False]
    assert results[0].remaining == 4
    denied = results[-1]
    assert denied.retry_after == seconds_until_window_end(clock.now_s, 60)
    assert 1 <= denied.retry_after <= 60


@pytest.mark.asyncio
async def test_counter_key_arms_expiry_on_first_increment() -> None:
    redis = FakeRedis()
    clock = _Clock(600.0)
    limiter = FixedWindowRateLimiter(redis, limit=5, window_s=60, prefix="rl", time_provider=clock)

    await limiter.check_and_increment("t1")

    key = limiter.counter_key("t1", clock.now_s)
    assert key == "rl:t1:600"
    assert redis.ttls[key] == 60


@pytest.mark.asyncio
async def test_new_window_resets_the_budget() -> None:
    redis = FakeRedis()
    clock = _Clock(0.0)
    limiter = FixedWindowRateLimiter(redis, limit=1, window_s=60, prefix="rl", time_provider=clock)

    assert (await limiter.check_and_increment("t1")).allowed
    assert not (await limiter.check_and_increment("t1")).allowed
    clock.now_s = 60.0
    assert (await limiter.check_and_increment("t1")).allowed


@pytest.mark.asyncio
async def test_tenants_are_counted_independently() -> None:
    redis = FakeRedis()
    limiter = FixedWindowRateLimiter(redis, limit=1, window_s=60, prefix="rl", time_provider=_Clock(0.0))

    assert (await limiter.check_and_increment("t1")).allowed
    assert (await limiter.check_and_increment("t2")).allowed
    assert not (await limiter.check_and_increment("t1")).allowed
