"""
限流层单元测试（内存 Redis + 可控时钟，不真实 sleep）
"""

import asyncio

import pytest

from conftest import FakeClock, FakeRedis
from fx_service.exceptions import ExchangeRateUnavailableError, RateLimitExceededError
from fx_service.layers.rate_limiter import Admission, RateLimiter, RateLimitPolicy

LIMIT = 3
WINDOW = 60


def _limiter(redis, clock, **overrides) -> RateLimiter:
    options = dict(
        max_calls=LIMIT,
        window_seconds=WINDOW,
        max_wait_seconds=300,
        min_interval_seconds=0,
        policy=RateLimitPolicy.BLOCK,
        key_prefix="test",
        clock=clock,
        sleep=clock.sleep,
    )
    options.update(overrides)
    return RateLimiter(redis, **options)


def _fill(limiter: RateLimiter, n: int = LIMIT):
    async def go():
        for _ in range(n):
            await limiter.acquire()
    asyncio.run(go())


class TestAdmission:
    def setup_method(self):
        self.redis = FakeRedis()
        self.clock = FakeClock()

    def test_admits_up_to_limit(self):
        limiter = _limiter(self.redis, self.clock)

        async def go():
            return [await limiter.acquire() for _ in range(LIMIT)]

        permits = asyncio.run(go())
        assert [p.count for p in permits] == [1, 2, 3]
        assert all(p.admission is Admission.IMMEDIATE for p in permits)
        assert self.clock.slept == []

    def test_fail_fast_denies_next_call(self):
        limiter = _limiter(self.redis, self.clock, policy=RateLimitPolicy.FAIL_FAST)
        _fill(limiter)

        with pytest.raises(RateLimitExceededError) as info:
            asyncio.run(limiter.acquire())
        err = info.value
        assert err.current_count == LIMIT
        assert err.limit == LIMIT
        assert err.wait_seconds == pytest.approx(WINDOW)
        assert asyncio.run(limiter.current_count()) == LIMIT

    def test_policy_override_per_call(self):
        limiter = _limiter(self.redis, self.clock)
        _fill(limiter)
        with pytest.raises(RateLimitExceededError):
            asyncio.run(limiter.acquire(policy=RateLimitPolicy.FAIL_FAST))
        assert self.clock.slept == []

    def test_block_waits_for_oldest_marker(self):
        limiter = _limiter(self.redis, self.clock)
        _fill(limiter)
        self.clock.advance(10)

        permit = asyncio.run(limiter.acquire())
        assert permit.admission is Admission.DELAYED
        assert permit.waited_seconds == pytest.approx(WINDOW - 10)
        assert self.clock.slept == [pytest.approx(WINDOW - 10)]
        assert permit.count == 1

    def test_wait_beyond_max_raises(self):
        limiter = _limiter(self.redis, self.clock, max_wait_seconds=5)
        _fill(limiter)
        with pytest.raises(RateLimitExceededError) as info:
            asyncio.run(limiter.acquire())
        assert info.value.wait_seconds == pytest.approx(WINDOW)
        assert self.clock.slept == []

    def test_capacity_restored_after_window(self):
        limiter = _limiter(self.redis, self.clock)
        _fill(limiter)
        assert asyncio.run(limiter.has_capacity()) is False

        self.clock.advance(WINDOW)
        assert asyncio.run(limiter.has_capacity()) is True
        assert asyncio.run(limiter.current_count()) == 0
        permit = asyncio.run(limiter.acquire(policy=RateLimitPolicy.FAIL_FAST))
        assert permit.admission is Admission.IMMEDIATE

    def test_sliding_window_partial_expiry(self):
        limiter = _limiter(self.redis, self.clock, policy=RateLimitPolicy.FAIL_FAST)
        asyncio.run(limiter.acquire())
        self.clock.advance(30)
        _fill(limiter, 2)
        self.clock.advance(31)
        # 第一条已出窗，后两条仍在窗口内
        assert asyncio.run(limiter.current_count()) == 2
        asyncio.run(limiter.acquire())
        with pytest.raises(RateLimitExceededError):
            asyncio.run(limiter.acquire())

    def test_queries_have_no_side_effects(self):
        limiter = _limiter(self.redis, self.clock)
        _fill(limiter, 2)
        before = dict(self.redis.zsets)
        assert asyncio.run(limiter.current_count()) == 2
        assert asyncio.run(limiter.has_capacity()) is True
        assert asyncio.run(self.redis.zcard("test:upstream:rate_limit")) == 2
        assert self.redis.zsets.keys() == before.keys()

    def test_shared_across_instances(self):
        """两个实例共享同一个 Redis，计数合并"""
        a = _limiter(self.redis, self.clock, policy=RateLimitPolicy.FAIL_FAST)
        b = _limiter(self.redis, self.clock, policy=RateLimitPolicy.FAIL_FAST)
        _fill(a, 2)
        asyncio.run(b.acquire())
        with pytest.raises(RateLimitExceededError):
            asyncio.run(a.acquire())

    def test_marker_key_expires(self):
        limiter = _limiter(self.redis, self.clock)
        asyncio.run(limiter.acquire())
        assert self.redis.ttls["test:upstream:rate_limit"] == WINDOW * 2


class TestMinInterval:
    def test_spaces_consecutive_calls(self):
        redis, clock = FakeRedis(), FakeClock()
        limiter = _limiter(redis, clock, min_interval_seconds=0.5)

        first = asyncio.run(limiter.acquire())
        second = asyncio.run(limiter.acquire())
        assert first.admission is Admission.IMMEDIATE
        assert second.admission is Admission.DELAYED
        assert second.waited_seconds == pytest.approx(0.5)

    def test_no_wait_when_gap_is_large(self):
        redis, clock = FakeRedis(), FakeClock()
        limiter = _limiter(redis, clock, min_interval_seconds=0.5)
        asyncio.run(limiter.acquire())
        clock.advance(1)
        assert asyncio.run(limiter.acquire()).admission is Admission.IMMEDIATE


class TestMissingStore:
    def test_no_redis_fails_closed(self):
        limiter = _limiter(None, FakeClock())
        with pytest.raises(ExchangeRateUnavailableError):
            asyncio.run(limiter.acquire())
        with pytest.raises(ExchangeRateUnavailableError):
            asyncio.run(limiter.current_count())
