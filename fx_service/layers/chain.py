"""
三级汇率链路：Cache → Persistence → Upstream

每一层只持有对下一层的引用，对外暴露相同的三个方法。
"""

import logging
from typing import List, Optional, Protocol

from motor.motor_asyncio import AsyncIOMotorDatabase
from redis.asyncio import Redis

from fx_service.db import get_mongo_db, get_redis
from fx_service.layers.cache import CacheProvider
from fx_service.layers.persistence import PersistenceProvider, RateHistoryRepository
from fx_service.layers.rate_limiter import RateLimiter, reset_rate_limiter
from fx_service.layers.upstream import (
    UpstreamProvider,
    close_upstream_provider,
    get_upstream_provider,
)
from fx_service.models.domain import Currency, CurrentRate, HistoricalRate

logger = logging.getLogger(__name__)


class ExchangeRateProvider(Protocol):
    async def get_current_rate(self, currency: Currency) -> CurrentRate: ...

    async def refresh_current_rate(self, currency: Currency) -> CurrentRate: ...

    async def get_history(self, currency: Currency, period) -> List[HistoricalRate]: ...


def build_provider_chain(
    redis: Optional[Redis],
    db: Optional[AsyncIOMotorDatabase],
    upstream: Optional[UpstreamProvider] = None,
) -> CacheProvider:
    """按 Upstream → Persistence → Cache 的顺序逐层包装"""
    upstream = upstream or UpstreamProvider(rate_limiter=RateLimiter(redis))
    persistence = PersistenceProvider(upstream, RateHistoryRepository(db))
    return CacheProvider(persistence, redis)


# ── 模块级别单例 ──────────────────────────────────────────
_chain: Optional[CacheProvider] = None


def get_provider_chain() -> CacheProvider:
    global _chain
    if _chain is None:
        _chain = build_provider_chain(get_redis(), get_mongo_db(), get_upstream_provider())
        logger.info("汇率链路已组装: Cache → Persistence → Upstream")
    return _chain


async def close_provider_chain():
    """关闭上游 HTTP 客户端，丢弃链路与限流器单例"""
    global _chain
    await close_upstream_provider()
    reset_rate_limiter()
    _chain = None
