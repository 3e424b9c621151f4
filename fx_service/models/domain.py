"""
汇率领域模型
所有汇率为"1 单位外币 = X 韩元"，使用 Decimal，禁止二进制浮点
"""

import datetime as dt
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from fx_service.exceptions import ExchangeRateValidationError

RATE_SCALE = Decimal("0.0001")  # 内部汇率统一 4 位小数

_FROZEN = ConfigDict(frozen=True)


# ── 币种 ──────────────────────────────────────────────────

class Currency(str, Enum):
    """支持的币种：代码、名称、符号、小数位、上游代码、上游报价单位"""

    USD = ("USD", "US Dollar", "$", 2, "0000001", 1)
    EUR = ("EUR", "Euro", "€", 2, "0000003", 1)
    JPY = ("JPY", "Japanese Yen", "¥", 0, "0000002", 100)  # 上游按 100 日元报价
    CNY = ("CNY", "Chinese Yuan", "¥", 2, "0000053", 1)
    GBP = ("GBP", "British Pound", "£", 2, "0000012", 1)
    KRW = ("KRW", "Korean Won", "₩", 0, None, 1)            # 基准币种

    def __new__(cls, code, display_name, symbol, decimal_places, upstream_code, quote_unit):
        obj = str.__new__(cls, code)
        obj._value_ = code
        obj.display_name = display_name
        obj.symbol = symbol
        obj.decimal_places = decimal_places
        obj.upstream_code = upstream_code
        obj.quote_unit = quote_unit
        return obj

    @property
    def code(self) -> str:
        return self.value

    @property
    def is_reference(self) -> bool:
        return self is Currency.KRW

    @property
    def is_supported(self) -> bool:
        """上游是否提供该币种报价"""
        return self.upstream_code is not None

    def normalize(self, upstream_value: Decimal) -> Decimal:
        """上游报价换算为 1 单位外币的汇率（JPY 需除以 100）"""
        return (upstream_value / Decimal(self.quote_unit)).quantize(
            RATE_SCALE, rounding=ROUND_HALF_UP
        )

    @classmethod
    def from_code(cls, code: str) -> "Currency":
        try:
            return cls((code or "").strip().upper())
        except ValueError:
            raise ExchangeRateValidationError(f"不支持的币种: {code}", currency=code)

    @classmethod
    def supported(cls) -> List["Currency"]:
        return [c for c in cls if c.is_supported]


class CurrencyPair(BaseModel):
    model_config = _FROZEN

    base: Currency
    target: Currency

    @model_validator(mode="after")
    def _distinct(self) -> "CurrencyPair":
        if self.base is self.target:
            raise ValueError("base and target currencies must differ")
        return self

    @classmethod
    def of(cls, base: Currency, target: Currency) -> "CurrencyPair":
        if base is target:
            raise ExchangeRateValidationError(
                f"基准币种与目标币种不能相同: {base.code}", currency=base.code
            )
        return cls(base=base, target=target)

    @property
    def pair_code(self) -> str:
        return f"{self.base.code}/{self.target.code}"

    def reverse(self) -> "CurrencyPair":
        return CurrencyPair(base=self.target, target=self.base)


# ── 汇率值对象 ────────────────────────────────────────────

PositiveRate = Annotated[Decimal, Field(gt=0)]


class DailyRate(BaseModel):
    model_config = _FROZEN

    date: dt.date
    rate: PositiveRate


class HistoricalRate(BaseModel):
    """历史数据点；change 为相对上一个点的涨跌幅（%）"""

    model_config = _FROZEN

    date: dt.date
    rate: PositiveRate
    change: Decimal = Decimal("0")
    timestamp: Optional[dt.datetime] = None


class CurrentRate(BaseModel):
    """当前汇率；change 为相对上一条快照的变动额"""

    model_config = _FROZEN

    currency: Currency
    rate: PositiveRate
    change: Decimal = Decimal("0")
    timestamp: dt.datetime


class RateSnapshot(BaseModel):
    """持久化的一次观测，canonical 标记当日唯一的快速路径快照"""

    model_config = _FROZEN

    currency: Currency
    rate: PositiveRate
    change: Decimal = Decimal("0")
    timestamp: dt.datetime
    canonical: bool = False

    def to_current_rate(self) -> CurrentRate:
        return CurrentRate(
            currency=self.currency,
            rate=self.rate,
            change=self.change,
            timestamp=self.timestamp,
        )


# ── 查询周期 ──────────────────────────────────────────────

def _estimate_sample_count(start: dt.date, end: dt.date) -> int:
    """上游分页条数估算：工作日 - 约 10% 节假日，再加 20% 余量，至少 10 条"""
    business_days = sum(
        1
        for offset in range((end - start).days + 1)
        if (start + dt.timedelta(days=offset)).weekday() < 5
    )
    estimated = business_days - int(business_days * 0.1)
    return max(10, math.ceil(estimated * 1.2))


class ChartPeriod(Enum):
    ONE_DAY = ("1d", 1, True)
    ONE_WEEK = ("1w", 7, False)
    ONE_MONTH = ("1m", 30, False)
    THREE_MONTHS = ("3m", 90, False)
    ONE_YEAR = ("1y", 365, False)

    def __init__(self, code: str, days: int, intraday: bool):
        self.code = code
        self.days = days
        # 是否由日内快照覆盖（持久化层可直接读取）
        self.intraday = intraday

    def start_date(self, today: dt.date) -> dt.date:
        return today - dt.timedelta(days=self.days)

    def end_date(self, today: dt.date) -> dt.date:
        return today

    def required_count(self, today: dt.date) -> int:
        return _estimate_sample_count(self.start_date(today), self.end_date(today))

    @classmethod
    def from_code(cls, code: str) -> "ChartPeriod":
        for period in cls:
            if period.code == (code or "").strip().lower():
                return period
        raise ExchangeRateValidationError(
            f"不支持的周期: {code}，支持: {[p.code for p in cls]}"
        )


@dataclass(frozen=True)
class DateRange:
    """显式日期区间，与 ChartPeriod 提供相同的查询接口"""

    start: dt.date
    end: dt.date
    intraday = False

    def __post_init__(self):
        if self.start > self.end:
            raise ExchangeRateValidationError(
                f"开始日期 {self.start} 晚于结束日期 {self.end}"
            )

    @property
    def code(self) -> str:
        return f"{self.start:%Y%m%d}-{self.end:%Y%m%d}"

    def start_date(self, today: dt.date) -> dt.date:
        return self.start

    def end_date(self, today: dt.date) -> dt.date:
        return self.end

    def required_count(self, today: dt.date) -> int:
        return _estimate_sample_count(self.start, self.end)


# ── 图表 / 换算结果 ───────────────────────────────────────

class ChartStatistics(BaseModel):
    model_config = _FROZEN

    high: Decimal
    low: Decimal
    average: Decimal
    std_dev: Decimal


class ChartResult(BaseModel):
    model_config = _FROZEN

    base_currency: Currency
    target_currency: Currency
    period: str
    current_rate: Decimal
    change: Decimal
    change_percent: Decimal
    generated_at: dt.datetime
    points: List[HistoricalRate]
    statistics: ChartStatistics


class ConversionResult(BaseModel):
    model_config = _FROZEN

    from_currency: Currency
    to_currency: Currency
    amount: Decimal
    rate: PositiveRate
    converted_amount: Decimal
    rate_timestamp: dt.datetime
