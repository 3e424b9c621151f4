"""
测试公共设施：内存版 Redis / 快照仓储 / 可控时钟 / 桩链路
"""

import os
import sys
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

# 测试环境不连接真实数据库
os.environ.setdefault("MONGODB_ENABLED", "false")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("UPSTREAM_API_KEY", "test-key")

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from fx_service.models.domain import Currency, CurrentRate, RateSnapshot  # noqa: E402


# ─────────────────────────────────────────────────────────
# 内存 Redis（字符串 + 有序集合，decode_responses 语义）
# ─────────────────────────────────────────────────────────

def _bound(raw):
    """解析 ZSET 区间端点，返回 (值, 是否开区间)"""
    if isinstance(raw, (int, float)):
        return float(raw), False
    text = str(raw)
    exclusive = text.startswith("(")
    if exclusive:
        text = text[1:]
    if text in ("-inf", "+inf", "inf"):
        return float(text), exclusive
    return float(text), exclusive


def _in_range(score: float, lo, hi) -> bool:
    lo_val, lo_ex = lo
    hi_val, hi_ex = hi
    above = score > lo_val if lo_ex else score >= lo_val
    below = score < hi_val if hi_ex else score <= hi_val
    return above and below


class FakeRedis:
    def __init__(self):
        self.store: Dict[str, str] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.ttls: Dict[str, int] = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value if isinstance(value, str) else str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def setex(self, key, ttl, value):
        return await self.set(key, value, ex=ttl)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None or self.zsets.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def zadd(self, key, mapping):
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update({m: float(s) for m, s in mapping.items()})
        return added

    async def zremrangebyscore(self, key, min, max):
        zset = self.zsets.get(key, {})
        lo, hi = _bound(min), _bound(max)
        doomed = [m for m, s in zset.items() if _in_range(s, lo, hi)]
        for member in doomed:
            del zset[member]
        return len(doomed)

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def zcount(self, key, min, max):
        lo, hi = _bound(min), _bound(max)
        return sum(1 for s in self.zsets.get(key, {}).values() if _in_range(s, lo, hi))

    async def zrange(self, key, start, end, withscores=False):
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        stop = None if end == -1 else end + 1
        picked = ordered[start:stop]
        return picked if withscores else [m for m, _ in picked]

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def dbsize(self):
        return len(self.store) + len(self.zsets)


# ─────────────────────────────────────────────────────────
# 可控时钟：sleep 直接推进时间
# ─────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.slept: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.slept.append(seconds)
        self.now += seconds


# ─────────────────────────────────────────────────────────
# 内存快照仓储（与 RateHistoryRepository 同接口）
# ─────────────────────────────────────────────────────────

class FakeHistoryRepository:
    def __init__(self, snapshots: Optional[List[RateSnapshot]] = None):
        self.snapshots: List[RateSnapshot] = list(snapshots or [])

    async def find_canonical(self, currency, day):
        for snap in self.snapshots:
            if snap.currency is currency and snap.canonical and snap.timestamp.date() == day:
                return snap
        return None

    async def find_latest(self, currency, since=None):
        matches = [
            s for s in self.snapshots
            if s.currency is currency and (since is None or s.timestamp >= since)
        ]
        return max(matches, key=lambda s: s.timestamp) if matches else None

    async def find_since(self, currency, since):
        return sorted(
            (s for s in self.snapshots if s.currency is currency and s.timestamp >= since),
            key=lambda s: s.timestamp,
        )

    async def insert(self, snapshot):
        if snapshot.canonical and await self.find_canonical(
            snapshot.currency, snapshot.timestamp.date()
        ):
            snapshot = snapshot.model_copy(update={"canonical": False})
        self.snapshots.append(snapshot)
        return snapshot


def snapshot(currency: Currency, rate: str, when: datetime, canonical: bool = True,
             change: str = "0") -> RateSnapshot:
    return RateSnapshot(
        currency=currency,
        rate=Decimal(rate),
        change=Decimal(change),
        timestamp=when,
        canonical=canonical,
    )


# ─────────────────────────────────────────────────────────
# 桩链路：记录调用，返回预设值或抛出预设异常
# ─────────────────────────────────────────────────────────

class StubProvider:
    def __init__(self, current=None, history=None, error: Exception = None, rates=None):
        self.current = current
        self.history = history if history is not None else []
        self.error = error
        self.rates: Dict[Currency, CurrentRate] = rates or {}
        self.calls: List[tuple] = []

    def _rate_for(self, currency):
        if currency in self.rates:
            return self.rates[currency]
        return self.current

    async def get_current_rate(self, currency):
        self.calls.append(("current", currency))
        if self.error:
            raise self.error
        return self._rate_for(currency)

    async def refresh_current_rate(self, currency):
        self.calls.append(("refresh", currency))
        if self.error:
            raise self.error
        return self._rate_for(currency)

    async def get_history(self, currency, period):
        self.calls.append(("history", currency, period))
        if self.error:
            raise self.error
        return self.history


def current_rate(currency: Currency, rate: str, when: datetime = None) -> CurrentRate:
    return CurrentRate(
        currency=currency,
        rate=Decimal(rate),
        timestamp=when or datetime(2024, 1, 2, 11, 0, 0),
    )


# ─────────────────────────────────────────────────────────
# 上游响应样例
# ─────────────────────────────────────────────────────────

def upstream_rows(*rows) -> dict:
    return {
        "StatisticSearch": {
            "list_total_count": len(rows),
            "row": [
                {
                    "STAT_CODE": "731Y001",
                    "ITEM_CODE1": "0000001",
                    "TIME": t,
                    "DATA_VALUE": v,
                }
                for t, v in rows
            ],
        }
    }


def upstream_result(code: str, message: str = "") -> dict:
    return {"RESULT": {"CODE": code, "MESSAGE": message}}

