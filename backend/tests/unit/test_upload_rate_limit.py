import threading

import pytest

from pixguard.admission.rate_limit import MemoryRateLimiter, RedisRateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_memory_limiter_rejects_request_past_budget_with_hint():
    clock = FakeClock()
    limiter = MemoryRateLimiter(window_seconds=60, clock=clock)
    for _ in range(10):
        assert (await limiter.check_rate_limit("1.2.3.4", 10)).allowed
    clock.now += 5
    result = await limiter.check_rate_limit("1.2.3.4", 10)
    assert not result.allowed
    assert result.retry_after_seconds == 55


@pytest.mark.asyncio
async def test_memory_limiter_recovers_after_window():
    clock = FakeClock()
    limiter = MemoryRateLimiter(window_seconds=60, clock=clock)
    assert (await limiter.check_rate_limit("k", 1)).allowed
    assert not (await limiter.check_rate_limit("k", 1)).allowed
    clock.now += 60
    assert (await limiter.check_rate_limit("k", 1)).allowed
    assert not (await limiter.check_rate_limit("k", 1)).allowed


def test_memory_limiter_rounds_retry_after_up_to_one_second():
    clock = FakeClock()
    limiter = MemoryRateLimiter(window_seconds=60, clock=clock)
    assert limiter.check("k", 1).allowed
    clock.now += 59.6
    result = limiter.check("k", 1)
    assert not result.allowed
    assert result.retry_after_seconds == 1


def test_memory_limiter_rejections_do_not_consume_budget():
    clock = FakeClock()
    limiter = MemoryRateLimiter(window_seconds=10, clock=clock)
    assert limiter.check("k", 2).allowed
    assert limiter.check("k", 2).allowed
    for _ in range(5):
        assert not limiter.check("k", 2).allowed
    clock.now += 10
    assert limiter.check("k", 2).allowed
    assert limiter.check("k", 2).allowed
    assert not limiter.check("k", 2).allowed


def test_memory_limiter_keys_are_independent():
    limiter = MemoryRateLimiter(window_seconds=60, clock=FakeClock())
    assert limiter.check("a", 1).allowed
    assert not limiter.check("a", 1).allowed
    assert limiter.check("b", 1).allowed


def test_memory_limiter_zero_budget_rejects_everything():
    limiter = MemoryRateLimiter(window_seconds=30, clock=FakeClock())
    result = limiter.check("k", 0)
    assert not result.allowed
    assert result.retry_after_seconds >= 1


def test_memory_limiter_prunes_elapsed_windows():
    clock = FakeClock()
    limiter = MemoryRateLimiter(window_seconds=5, clock=clock)
    limiter.check("a", 3)
    limiter.check("b", 3)
    clock.now += 5
    limiter.check("c", 3)
    assert limiter.prune_expired() == 2


@pytest.mark.asyncio
async def test_redis_limiter_blocks_when_budget_exhausted(fake_redis):
    limiter = RedisRateLimiter(redis=fake_redis, window_seconds=60)
    for _ in range(3):
        assert (await limiter.check_rate_limit("5.6.7.8", 3)).allowed
    result = await limiter.check_rate_limit("5.6.7.8", 3)
    assert not result.allowed
    assert 1 <= result.retry_after_seconds <= 60


@pytest.mark.asyncio
async def test_redis_limiter_window_expiry_resets_counter(fake_redis):
    limiter = RedisRateLimiter(redis=fake_redis, window_seconds=60)
    assert (await limiter.check_rate_limit("k", 1)).allowed
    assert not (await limiter.check_rate_limit("k", 1)).allowed
    await fake_redis.delete("rl:upload:k")
    assert (await limiter.check_rate_limit("k", 1)).allowed


def test_memory_limiter_refund_returns_slot_in_same_window():
    clock = FakeClock()
    limiter = MemoryRateLimiter(window_seconds=60, clock=clock)
    first = limiter.check("k", 1)
    assert first.allowed
    limiter.restore("k", first)
    assert limiter.check("k", 1).allowed
    assert not limiter.check("k", 1).allowed


def test_memory_limiter_refund_ignores_rolled_over_window():
    clock = FakeClock()
    limiter = MemoryRateLimiter(window_seconds=10, clock=clock)
    old = limiter.check("k", 1)
    clock.now += 10
    assert limiter.check("k", 1).allowed
    limiter.restore("k", old)
    assert not limiter.check("k", 1).allowed


def test_memory_limiter_allows_exactly_budget_across_threads():
    limiter = MemoryRateLimiter(window_seconds=60, clock=FakeClock())
    start = threading.Barrier(24)
    allowed: list[bool] = []
    allowed_lock = threading.Lock()

    def hit() -> None:
        start.wait()
        result = limiter.check("shared", 7)
        with allowed_lock:
            allowed.append(result.allowed)

    threads = [threading.Thread(target=hit) for _ in range(24)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(allowed) == 24
    assert allowed.count(True) == 7


@pytest.mark.asyncio
async def test_redis_limiter_refund_decrements_counter(fake_redis):
    limiter = RedisRateLimiter(redis=fake_redis, window_seconds=60)
    result = await limiter.check_rate_limit("k", 1)
    assert result.allowed
    await limiter.refund("k", result)
    assert await fake_redis.get("rl:upload:k") == "0"
    assert (await limiter.check_rate_limit("k", 1)).allowed


@pytest.mark.asyncio
async def test_redis_limiter_refund_after_expiry_is_noop(fake_redis):
    limiter = RedisRateLimiter(redis=fake_redis, window_seconds=60)
    result = await limiter.check_rate_limit("k", 1)
    await fake_redis.delete("rl:upload:k")
    await limiter.refund("k", result)
    assert await fake_redis.get("rl:upload:k") is None
