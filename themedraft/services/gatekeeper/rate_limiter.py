from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import time
from typing import Any, Callable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    # Capture the outcome and retry hint for one admission attempt.
    allowed: bool
    remaining: int
    limit: int
    retry_after: int | None = None


# INCR and expiry arming run as one script so concurrent API instances never
# leave a counter without a TTL.
_FIXED_WINDOW_LUA = r"""
local count = redis.call("INCR", KEYS[1])
if count == 1 or redis.call("TTL", KEYS[1]) < 0 then
  redis.call("EXPIRE", KEYS[1], tonumber(ARGV[1]))
end
return count
"""


def window_start(now_s: float, window_s: int) -> int:
    # Derive the window from wall-clock epoch so every instance agrees on the key.
    return int(now_s // window_s) * window_s


def seconds_until_window_end(now_s: float, window_s: int) -> int:
    remaining = window_s - (now_s - window_start(now_s, window_s))
    return max(1, int(math.ceil(remaining)))


class FixedWindowRateLimiter:
    def __init__(
        self,
        redis: Any,
        *,
        limit: int,
        window_s: int = 60,
        prefix: str = "themedraft:rl",
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._limit = limit
        self._window_s = window_s
        self._prefix = prefix
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    @property
    def limit(self) -> int:
        return self._limit

    def counter_key(self, tenant_id: str, now_s: float) -> str:
        return f"{self._prefix}:{tenant_id}:{window_start(now_s, self._window_s)}"

    async def check_and_increment(self, tenant_id: str) -> RateLimitResult:
        now_s = self._time_provider()
        key = self.counter_key(tenant_id, now_s)
        count = int(await self._redis.eval(_FIXED_WINDOW_LUA, 1, key, self._window_s))
        if count <= self._limit:
            return RateLimitResult(
                allowed=True,
                remaining=max(self._limit - count, 0),
                limit=self._limit,
            )
        retry_after = seconds_until_window_end(now_s, self._window_s)
        logger.info("rate_limited tenant_id=%s count=%s retry_after=%s", tenant_id, count, retry_after)
        return RateLimitResult(
            allowed=False,
            remaining=0,
            limit=self._limit,
            retry_after=retry_after,
        )
