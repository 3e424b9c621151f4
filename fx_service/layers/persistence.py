"""
持久化层（链路中间层）
MongoDB 中的汇率快照既是"当日汇率"的快速路径，也是日内历史的唯一来源

  - 每个币种每天最多一条 canonical 快照（部分唯一索引保证），有它即走快速路径，返回当日最新快照
  - 同一天的其他观测以非 canonical 快照追加，只增不改
  - 上游返回"无数据"时，向前回溯 FALLBACK_LOOKBACK_DAYS 天取最近快照
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from bson.decimal128 import Decimal128
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from fx_service import timeutil
from fx_service.config import settings
from fx_service.exceptions import ExchangeRateNotFoundError
from fx_service.layers.calculator import RATE_PLACES, Calculator
from fx_service.layers.processing import ProcessingLayer, get_processing_layer
from fx_service.models.domain import Currency, CurrentRate, HistoricalRate, RateSnapshot

logger = logging.getLogger(__name__)

HISTORY_COLLECTION = "exchange_rate_history"


def _to_document(snapshot: RateSnapshot) -> Dict[str, Any]:
    return {
        "currency": snapshot.currency.code,
        "rate": Decimal128(str(snapshot.rate)),
        "change": Decimal128(str(snapshot.change)),
        "timestamp": snapshot.timestamp,
        "day": snapshot.timestamp.date().isoformat(),
        "canonical": snapshot.canonical,
    }


def _from_document(doc: Dict[str, Any]) -> RateSnapshot:
    return RateSnapshot(
        currency=Currency(doc["currency"]),
        rate=doc["rate"].to_decimal(),
        change=doc["change"].to_decimal(),
        timestamp=doc["timestamp"],
        canonical=bool(doc.get("canonical")),
    )


class RateHistoryRepository:
    """汇率快照仓储；MongoDB 不可用时读取为空、写入跳过"""

    def __init__(self, db: Optional[AsyncIOMotorDatabase]):
        self._db = db

    @property
    def collection(self) -> Optional[AsyncIOMotorCollection]:
        return self._db[HISTORY_COLLECTION] if self._db is not None else None

    async def ensure_indexes(self):
        coll = self.collection
        if coll is None:
            return
        await coll.create_index(
            [("currency", ASCENDING), ("timestamp", ASCENDING)],
            name="currency_timestamp",
        )
        await coll.create_index(
            [("currency", ASCENDING), ("day", ASCENDING)],
            name="canonical_per_day",
            unique=True,
            partialFilterExpression={"canonical": True},
        )
        logger.info(f"✅ 索引已就绪: {HISTORY_COLLECTION}")

    async def find_canonical(self, currency: Currency, day: date) -> Optional[RateSnapshot]:
        coll = self.collection
        if coll is None:
            return None
        try:
            doc = await coll.find_one(
                {"currency": currency.code, "day": day.isoformat(), "canonical": True}
            )
        except PyMongoError as exc:
            logger.warning(f"MongoDB 读取失败: {exc}")
            return None
        return _from_document(doc) if doc else None

    async def find_latest(
        self, currency: Currency, since: Optional[datetime] = None
    ) -> Optional[RateSnapshot]:
        """最近一条快照，可限定不早于 since"""
        coll = self.collection
        if coll is None:
            return None
        query: Dict[str, Any] = {"currency": currency.code}
        if since is not None:
            query["timestamp"] = {"$gte": since}
        try:
            doc = await coll.find_one(
                query, sort=[("timestamp", DESCENDING), ("_id", DESCENDING)]
            )
        except PyMongoError as exc:
            logger.warning(f"MongoDB 读取失败: {exc}")
            return None
        return _from_document(doc) if doc else None

    async def find_since(self, currency: Currency, since: datetime) -> List[RateSnapshot]:
        coll = self.collection
        if coll is None:
            return []
        try:
            cursor = coll.find(
                {"currency": currency.code, "timestamp": {"$gte": since}}
            ).sort([("timestamp", ASCENDING), ("_id", ASCENDING)])
            docs = await cursor.to_list(length=None)
        except PyMongoError as exc:
            logger.warning(f"MongoDB 读取失败: {exc}")
            return []
        return [_from_document(d) for d in docs]

    async def insert(self, snapshot: RateSnapshot) -> RateSnapshot:
        """追加快照；canonical 冲突时降级为日内快照，从不覆盖已有记录"""
        coll = self.collection
        if coll is None:
            return snapshot
        try:
            try:
                await coll.insert_one(_to_document(snapshot))
            except DuplicateKeyError:
                if not snapshot.canonical:
                    raise
                logger.info(f"{snapshot.currency.code} 当日 canonical 快照已存在，改为日内快照")
                snapshot = snapshot.model_copy(update={"canonical": False})
                await coll.insert_one(_to_document(snapshot))
        except PyMongoError as exc:
            logger.warning(f"MongoDB 写入失败（快照未保存）: {exc}")
        return snapshot


class PersistenceProvider:
    """持久化层：快速路径 + 回写 + 节假日回退，下层为上游数据层"""

    def __init__(
        self,
        delegate,
        repository: RateHistoryRepository,
        processor: Optional[ProcessingLayer] = None,
        lookback_days: int = settings.FALLBACK_LOOKBACK_DAYS,
        intraday_window_hours: int = settings.INTRADAY_WINDOW_HOURS,
    ):
        self._delegate = delegate
        self._repo = repository
        self._processor = processor or get_processing_layer()
        self._lookback_days = lookback_days
        self._intraday_window = timedelta(hours=intraday_window_hours)

    async def get_current_rate(self, currency: Currency) -> CurrentRate:
        today = timeutil.today()
        if await self._repo.find_canonical(currency, today) is not None:
            # canonical 只保证每日唯一，返回的是当日最新一条
            latest = await self._repo.find_latest(currency, since=timeutil.start_of_day(today))
            if latest is not None:
                logger.debug(f"持久化命中（当日快照）: {currency.code}")
                return latest.to_current_rate()

        fetched = await self._delegate.get_current_rate(currency)
        if fetched is None:
            return await self._fallback(currency)
        saved = await self._record(fetched, canonical=True)
        return saved.to_current_rate()

    async def refresh_current_rate(self, currency: Currency) -> CurrentRate:
        """跳过快速路径直接取上游，追加一条日内快照"""
        fetched = await self._delegate.refresh_current_rate(currency)
        if fetched is None:
            return await self._fallback(currency)
        has_canonical = await self._repo.find_canonical(currency, timeutil.today()) is not None
        saved = await self._record(fetched, canonical=not has_canonical)
        return saved.to_current_rate()

    async def get_history(self, currency: Currency, period) -> List[HistoricalRate]:
        if period.intraday:
            since = timeutil.now() - self._intraday_window
            snapshots = await self._repo.find_since(currency, since)
            if snapshots:
                logger.debug(f"持久化命中（日内快照 {len(snapshots)} 条）: {currency.code}")
                return self._processor.snapshots_to_history(snapshots)

        history = await self._delegate.get_history(currency, period)
        if not history:
            raise ExchangeRateNotFoundError(
                f"{currency.code} 在 {period.code} 区间内没有汇率数据", currency=currency.code
            )
        return history

    # ── 内部 ──────────────────────────────────────────────

    async def _record(self, rate: CurrentRate, canonical: bool) -> RateSnapshot:
        previous = await self._repo.find_latest(rate.currency)
        change = (
            Calculator.round_half_up(rate.rate - previous.rate, RATE_PLACES)
            if previous is not None
            else Decimal("0")
        )
        snapshot = RateSnapshot(
            currency=rate.currency,
            rate=rate.rate,
            change=change,
            timestamp=rate.timestamp,
            canonical=canonical,
        )
        return await self._repo.insert(snapshot)

    async def _fallback(self, currency: Currency) -> CurrentRate:
        since = timeutil.start_of_day(timeutil.today() - timedelta(days=self._lookback_days))
        snapshot = await self._repo.find_latest(currency, since=since)
        if snapshot is None:
            raise ExchangeRateNotFoundError(
                f"{currency.code} 上游无数据，且最近 {self._lookback_days} 天没有可用快照",
                currency=currency.code,
            )
        logger.info(
            f"{currency.code} 上游无数据，回退到 {snapshot.timestamp:%Y-%m-%d %H:%M} 的快照"
        )
        return snapshot.to_current_rate()
