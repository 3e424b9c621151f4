"""
限流层
基于 Redis 有序集合的跨实例滑动窗口限流，保护上游调用配额

准入流程：
  1. 清理窗口之外的调用记录（score <= now - window）
  2. 窗口内记录数 >= 上限 → 阻塞等待最早记录出窗，或快速失败
  3. 否则写入一条以当前时间为 score 的调用记录并放行

清理-检查-写入整体非原子，依赖 ZADD 本身的原子性；并发下可能轻微超发（软限制），
但不会少发。等待时长超过 max_wait 时抛出 RateLimitExceededError，绝不无限阻塞。
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from fx_service.config import settings
from fx_service.db import get_redis
from fx_service.exceptions import ExchangeRateUnavailableError, RateLimitExceededError

logger = logging.getLogger(__name__)


class RateLimitPolicy(str, Enum):
    BLOCK = "block"
    FAIL_FAST = "fail_fast"


class Admission(str, Enum):
    IMMEDIATE = "immediate"
    DELAYED = "delayed"


@dataclass(frozen=True)
class Permit:
    """一次准入结果：是否经过等待、等待时长、准入后的窗口计数"""

    admission: Admission
    waited_seconds: float
    count: int


class RateLimiter:
    """滑动窗口限流器，Redis 句柄由外部注入"""

    def __init__(
        self,
        redis: Optional[Redis],
        max_calls: int = settings.RATE_LIMIT_MAX_CALLS,
        window_seconds: float = settings.RATE_LIMIT_WINDOW_SECONDS,
        max_wait_seconds: float = settings.RATE_LIMIT_MAX_WAIT_SECONDS,
        min_interval_seconds: float = settings.RATE_LIMIT_MIN_INTERVAL_SECONDS,
        policy: RateLimitPolicy = RateLimitPolicy(settings.RATE_LIMIT_POLICY),
        key_prefix: str = settings.CACHE_KEY_PREFIX,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._redis = redis
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.max_wait_seconds = max_wait_seconds
        self.min_interval_seconds = min_interval_seconds
        self.policy = policy
        self._calls_key = f"{key_prefix}:upstream:rate_limit"
        self._last_call_key = f"{key_prefix}:upstream:last_call"
        self._clock = clock
        self._sleep = sleep

    def _store(self) -> Redis:
        if self._redis is None:
            raise ExchangeRateUnavailableError("限流存储（Redis）不可用，拒绝调用上游")
        return self._redis

    # ── 准入 ──────────────────────────────────────────────

    async def acquire(self, policy: Optional[RateLimitPolicy] = None) -> Permit:
        """申请一次上游调用许可"""
        policy = policy or self.policy
        redis = self._store()
        waited = 0.0

        try:
            while True:
                now = self._clock()
                await redis.zremrangebyscore(self._calls_key, "-inf", now - self.window_seconds)
                count = await redis.zcard(self._calls_key)
                if count < self.max_calls:
                    break

                wait = await self._required_wait(redis, now)
                if policy is RateLimitPolicy.FAIL_FAST or waited + wait > self.max_wait_seconds:
                    logger.error(
                        f"上游调用限流拒绝: {count}/{self.max_calls}，需等待 {wait:.1f}s"
                    )
                    raise RateLimitExceededError(count, self.max_calls, wait)

                logger.warning(
                    f"上游调用达到上限 {count}/{self.max_calls}，阻塞等待 {wait:.1f}s"
                )
                await self._sleep(wait)
                waited += wait

            waited += await self._respect_min_interval(redis)

            now = self._clock()
            await redis.zadd(self._calls_key, {uuid.uuid4().hex: now})
            await redis.expire(self._calls_key, int(self.window_seconds * 2))
            await redis.set(self._last_call_key, repr(now), ex=int(self.window_seconds * 2))
        except RedisError as exc:
            raise ExchangeRateUnavailableError(f"限流存储访问失败: {exc}") from exc

        logger.debug(f"上游调用已记录: {count + 1}/{self.max_calls}")
        return Permit(
            admission=Admission.DELAYED if waited > 0 else Admission.IMMEDIATE,
            waited_seconds=waited,
            count=count + 1,
        )

    async def _required_wait(self, redis: Redis, now: float) -> float:
        """最早一条记录离开窗口所需的秒数"""
        oldest = await redis.zrange(self._calls_key, 0, 0, withscores=True)
        if not oldest:
            return 0.0
        _, score = oldest[0]
        return max(float(score) + self.window_seconds - now, 0.0)

    async def _respect_min_interval(self, redis: Redis) -> float:
        """与全局上一次调用保持最小间隔，返回实际等待秒数"""
        if self.min_interval_seconds <= 0:
            return 0.0
        last = await redis.get(self._last_call_key)
        if last is None:
            return 0.0
        gap = self._clock() - float(last)
        if gap >= self.min_interval_seconds:
            return 0.0
        delay = self.min_interval_seconds - gap
        await self._sleep(delay)
        return delay

    # ── 查询（无副作用） ──────────────────────────────────

    async def current_count(self) -> int:
        """当前窗口内的调用次数（所有实例）"""
        redis = self._store()
        cutoff = self._clock() - self.window_seconds
        try:
            return int(await redis.zcount(self._calls_key, f"({cutoff}", "+inf"))
        except RedisError as exc:
            raise ExchangeRateUnavailableError(f"限流存储访问失败: {exc}") from exc

    async def has_capacity(self) -> bool:
        return await self.current_count() < self.max_calls


# ── 模块级别单例 ──────────────────────────────────────────
_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = RateLimiter(get_redis())
    return _limiter


def reset_rate_limiter():
    """丢弃单例，下次获取时绑定当前的 Redis 连接"""
    global _limiter
    _limiter = None
