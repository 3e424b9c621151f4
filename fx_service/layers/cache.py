"""
缓存层（链路最上层）
Redis 读穿透缓存，TTL 带随机抖动以错开过期时间，防止缓存雪崩

  {prefix}:exchange_rate:{CUR}:{YYYY-MM-DD}   当前汇率
  {prefix}:chart:{CUR}:{period}:{YYYY-MM-DD}  滚动区间历史 / 图表序列
  {prefix}:chart:{CUR}:{start}-{end}          固定日期区间历史
  {prefix}:stale:exchange_rate:{CUR}          陈旧副本（长 TTL，仅供人工应急读取）

Redis 不可用时直接透传到下层；读到格式不兼容的条目视为未命中并删除。
"""

import hashlib
import logging
import math
import random
from typing import Any, List, Optional

from pydantic import TypeAdapter
from redis.asyncio import Redis
from redis.exceptions import RedisError

from fx_service import timeutil
from fx_service.config import settings
from fx_service.models.domain import ChartPeriod, Currency, CurrentRate, HistoricalRate

logger = logging.getLogger(__name__)

_RATE_ADAPTER = TypeAdapter(CurrentRate)
_HISTORY_ADAPTER = TypeAdapter(List[HistoricalRate])


def _make_key(namespace: str, *parts: str) -> str:
    """生成规范化缓存键"""
    raw = ":".join([namespace] + list(parts))
    if len(raw) > 200:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


def compute_ttl(base_ttl: int, jitter: float, rng: random.Random = None) -> int:
    """
    带抖动的 TTL：base × (1 ± jitter)，且不低于 base 的 50%

    结果始终落在 [ceil(base × max(0.5, 1 - jitter)), floor(base × (1 + jitter))]
    """
    rng = rng or random
    jitter = min(max(jitter, 0.0), 1.0)
    raw = max(base_ttl * (1 + rng.uniform(-jitter, jitter)), base_ttl * 0.5)
    low = math.ceil(base_ttl * max(0.5, 1 - jitter))
    high = math.floor(base_ttl * (1 + jitter))
    return max(1, min(max(round(raw), low), high))


class CacheProvider:
    """缓存层，下层为持久化层"""

    def __init__(
        self,
        delegate,
        redis: Optional[Redis],
        key_prefix: str = settings.CACHE_KEY_PREFIX,
        rate_ttl: int = settings.EXCHANGE_RATE_CACHE_TTL,
        history_ttl: int = settings.HISTORY_CACHE_TTL,
        jitter: float = settings.CACHE_JITTER_PERCENTAGE,
        stale_ttl: int = settings.STALE_CACHE_TTL,
        rng: Optional[random.Random] = None,
    ):
        self._delegate = delegate
        self._redis = redis
        self._prefix = key_prefix
        self._rate_ttl = rate_ttl
        self._history_ttl = history_ttl
        self._jitter = jitter
        self._stale_ttl = stale_ttl
        self._rng = rng

    # ── 键 ────────────────────────────────────────────────

    def rate_key(self, currency: Currency) -> str:
        return _make_key(self._prefix, "exchange_rate", currency.code, timeutil.today().isoformat())

    def history_key(self, currency: Currency, period) -> str:
        if isinstance(period, ChartPeriod):
            # 滚动区间随日期变化，按当天分键
            return _make_key(
                self._prefix, "chart", currency.code, period.code, timeutil.today().isoformat()
            )
        return _make_key(self._prefix, "chart", currency.code, period.code)

    def stale_key(self, currency: Currency) -> str:
        return _make_key(self._prefix, "stale", "exchange_rate", currency.code)

    # ── 对外接口 ──────────────────────────────────────────

    async def get_current_rate(self, currency: Currency) -> CurrentRate:
        key = self.rate_key(currency)
        cached = await self._read(key, _RATE_ADAPTER)
        if cached is not None:
            return cached

        rate = await self._delegate.get_current_rate(currency)
        await self._write_rate(key, rate)
        return rate

    async def refresh_current_rate(self, currency: Currency) -> CurrentRate:
        rate = await self._delegate.refresh_current_rate(currency)
        await self._write_rate(self.rate_key(currency), rate)
        return rate

    async def get_history(self, currency: Currency, period) -> List[HistoricalRate]:
        key = self.history_key(currency, period)
        cached = await self._read(key, _HISTORY_ADAPTER)
        if cached is not None:
            return cached

        history = await self._delegate.get_history(currency, period)
        await self._write(key, _HISTORY_ADAPTER.dump_json(history), self._history_ttl)
        return history

    async def get_stale_rate(self, currency: Currency) -> Optional[CurrentRate]:
        """读取陈旧副本（人工应急用，正常链路从不调用）"""
        return await self._read(self.stale_key(currency), _RATE_ADAPTER)

    # ── Redis 读写 ────────────────────────────────────────

    async def _read(self, key: str, adapter: TypeAdapter) -> Optional[Any]:
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            logger.warning(f"Redis 读取失败，按未命中处理: {exc}")
            return None
        if raw is None:
            logger.debug(f"缓存未命中: {key}")
            return None

        try:
            value = adapter.validate_json(raw)
        except (ValueError, TypeError) as exc:
            logger.warning(f"缓存条目格式不兼容，已删除: {key}: {exc}")
            await self._delete(key)
            return None
        logger.debug(f"缓存命中: {key}")
        return value

    async def _write_rate(self, key: str, rate: CurrentRate):
        payload = _RATE_ADAPTER.dump_json(rate)
        await self._write(key, payload, self._rate_ttl)
        await self._write(self.stale_key(rate.currency), payload, self._stale_ttl, jitter=False)

    async def _write(self, key: str, payload: bytes, base_ttl: int, jitter: bool = True):
        if self._redis is None:
            return
        ttl = compute_ttl(base_ttl, self._jitter, self._rng) if jitter else base_ttl
        try:
            await self._redis.setex(key, ttl, payload.decode())
            logger.debug(f"缓存写入: {key}（TTL {ttl}s）")
        except RedisError as exc:
            logger.warning(f"Redis 写入失败: {exc}")

    async def _delete(self, key: str):
        try:
            await self._redis.delete(key)
        except RedisError as exc:
            logger.warning(f"Redis 删除失败: {exc}")
