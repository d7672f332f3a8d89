"""Fixed window rate limiting for the public upload path."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import WatchError

from pixguard.admission.table import AdmissionTable
from pixguard.infra.redis import RedisProxy


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int = 0
    window_start: Optional[float] = None


@dataclass(frozen=True, slots=True)
class RateWindow:
    count: int
    window_start: float


class RateLimiter(Protocol):
    async def check_rate_limit(self, client_key: str, max_per_window: int) -> RateLimitResult:
        ...

    async def refund(self, client_key: str, result: RateLimitResult) -> None:
        """Give back the slot an allowed result consumed when the request was not admitted."""
        ...


def _retry_after(remaining_seconds: float) -> int:
    return max(1, math.ceil(remaining_seconds))


class MemoryRateLimiter(RateLimiter):
    """Per-process limiter; state is lost on restart, which only relaxes limits."""

    def __init__(
        self,
        *,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
        table: Optional[AdmissionTable[str, RateWindow]] = None,
        max_keys: int = 10_000,
    ) -> None:
        self.window_seconds = max(1, int(window_seconds))
        self._clock = clock
        self._table: AdmissionTable[str, RateWindow] = table if table is not None else AdmissionTable()
        self._max_keys = max_keys

    async def check_rate_limit(self, client_key: str, max_per_window: int) -> RateLimitResult:
        return self.check(client_key, max_per_window)

    def check(self, client_key: str, max_per_window: int) -> RateLimitResult:
        now = self._clock()
        window = self.window_seconds

        def _apply(current: Optional[RateWindow]) -> tuple[Optional[RateWindow], RateLimitResult]:
            if max_per_window <= 0:
                return current, RateLimitResult(allowed=False, retry_after_seconds=window)
            if current is None or now - current.window_start >= window:
                active = RateWindow(count=0, window_start=now)
            else:
                active = current
            if active.count >= max_per_window:
                remaining = window - (now - active.window_start)
                return current, RateLimitResult(allowed=False, retry_after_seconds=_retry_after(remaining))
            return (
                RateWindow(count=active.count + 1, window_start=active.window_start),
                RateLimitResult(allowed=True, window_start=active.window_start),
            )

        result = self._table.compute(client_key, _apply)
        if result.allowed and len(self._table) > self._max_keys:
            self.prune_expired()
        return result

    async def refund(self, client_key: str, result: RateLimitResult) -> None:
        self.restore(client_key, result)

    def restore(self, client_key: str, result: RateLimitResult) -> None:
        if not result.allowed:
            return

        def _apply(current: Optional[RateWindow]) -> tuple[Optional[RateWindow], None]:
            # a window that has rolled over already forgot the slot
            if current is None or current.window_start != result.window_start or current.count <= 0:
                return current, None
            return RateWindow(count=current.count - 1, window_start=current.window_start), None

        self._table.compute(client_key, _apply)

    def prune_expired(self) -> int:
        """Drop windows that have fully elapsed and return how many were removed."""
        now = self._clock()
        removed = 0
        for key in self._table:
            current = self._table.get(key)
            if current is not None and now - current.window_start >= self.window_seconds:
                if self._table.compare_and_swap(key, current, None):
                    removed += 1
        return removed

    def reset(self, client_key: str) -> None:
        self._table.pop(client_key)


@dataclass
class RedisRateLimiter(RateLimiter):
    """Counter based limiter shared by every API process through Redis."""

    redis: Redis | RedisProxy
    window_seconds: int = 60
    prefix: str = "rl:upload"

    async def check_rate_limit(self, client_key: str, max_per_window: int) -> RateLimitResult:
        window_ms = max(1, int(self.window_seconds)) * 1000
        if max_per_window <= 0:
            return RateLimitResult(allowed=False, retry_after_seconds=window_ms // 1000)
        key = f"{self.prefix}:{client_key}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, nx=True, px=window_ms)
            pipe.incr(key)
            pipe.pttl(key)
            _, count, ttl_ms = await pipe.execute()
        if int(count) <= max_per_window:
            return RateLimitResult(allowed=True)
        # Rejected hits still bump the counter; the key expires with the window either way.
        remaining_ms = int(ttl_ms) if ttl_ms and int(ttl_ms) > 0 else window_ms
        return RateLimitResult(allowed=False, retry_after_seconds=_retry_after(remaining_ms / 1000))

    async def refund(self, client_key: str, result: RateLimitResult) -> None:
        if not result.allowed:
            return
        key = f"{self.prefix}:{client_key}"
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    count = await pipe.get(key)
                    # an expired window has nothing left to give back
                    if count is None or int(count) <= 0:
                        await pipe.unwatch()
                        return
                    pipe.multi()
                    pipe.decr(key)
                    await pipe.execute()
                    return
                except WatchError:
                    continue


__all__ = ["MemoryRateLimiter", "RateLimitResult", "RateLimiter", "RateWindow", "RedisRateLimiter"]
