"""
汇率服务
在三级链路之上提供当前汇率、历史、图表与换算，并为每个请求施加总超时预算
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, List, Optional, Tuple, TypeVar, Union

from fx_service import timeutil
from fx_service.config import settings
from fx_service.exceptions import ExchangeRateUnavailableError, ExchangeRateValidationError
from fx_service.layers.calculator import RATE_PLACES, Calculator, get_calculator
from fx_service.layers.chain import ExchangeRateProvider, get_provider_chain
from fx_service.models.domain import (
    ChartPeriod,
    ChartResult,
    ConversionResult,
    Currency,
    CurrencyPair,
    CurrentRate,
    DateRange,
    HistoricalRate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CROSS_RATE_PLACES = 6

Period = Union[ChartPeriod, DateRange]


class RateService:
    """汇率业务服务"""

    def __init__(
        self,
        provider: Optional[ExchangeRateProvider] = None,
        calculator: Optional[Calculator] = None,
        timeout: float = settings.REQUEST_TIMEOUT_SECONDS,
    ):
        self._provider = provider
        self._calc = calculator or get_calculator()
        self._timeout = timeout

    @property
    def provider(self) -> ExchangeRateProvider:
        # 未注入时每次取当前链路，重启后不会沿用已关闭的连接
        return self._provider if self._provider is not None else get_provider_chain()

    async def _within_deadline(self, call: Awaitable[T], what: str, currency: Currency) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error(f"{what} 超过 {self._timeout:.0f}s 预算: {currency.code}")
            raise ExchangeRateUnavailableError(
                f"{currency.code} {what}超时", currency=currency.code
            ) from exc

    @staticmethod
    def _require_quoted(currency: Currency):
        if currency.is_reference:
            raise ExchangeRateValidationError(
                f"{currency.code} 是基准币种，没有对韩元的汇率", currency=currency.code
            )

    # ── 当前汇率 / 历史 ───────────────────────────────────

    async def get_current_rate(self, currency: Currency) -> CurrentRate:
        self._require_quoted(currency)
        return await self._within_deadline(
            self.provider.get_current_rate(currency), "获取当前汇率", currency
        )

    async def refresh_current_rate(self, currency: Currency) -> CurrentRate:
        """供定时任务调用：强制从上游刷新并追加快照"""
        self._require_quoted(currency)
        return await self._within_deadline(
            self.provider.refresh_current_rate(currency), "刷新汇率", currency
        )

    async def get_history(self, currency: Currency, period: Period) -> List[HistoricalRate]:
        self._require_quoted(currency)
        return await self._within_deadline(
            self.provider.get_history(currency, period), "获取历史汇率", currency
        )

    # ── 图表 ──────────────────────────────────────────────

    async def get_chart(self, currency: Currency, period: Period) -> ChartResult:
        """
        图表数据：数据点、最新汇率、相对前一个点的变动额与涨跌幅、统计值

        只有一个数据点时变动额与涨跌幅为 0
        """
        points = await self.get_history(currency, period)
        current = points[-1].rate
        previous = points[-2].rate if len(points) > 1 else current
        return ChartResult(
            base_currency=currency,
            target_currency=Currency.KRW,
            period=period.code,
            current_rate=current,
            change=Calculator.round_half_up(current - previous, RATE_PLACES),
            change_percent=self._calc.change_percent(current, previous),
            generated_at=timeutil.now(),
            points=points,
            statistics=self._calc.statistics([p.rate for p in points]),
        )

    # ── 换算 ──────────────────────────────────────────────

    async def _rate_in_krw(self, currency: Currency) -> Tuple[Decimal, datetime]:
        if currency.is_reference:
            return Decimal("1"), timeutil.now()
        rate = await self.get_current_rate(currency)
        return rate.rate, rate.timestamp

    async def convert(
        self, amount: Decimal, from_currency: Currency, to_currency: Currency
    ) -> ConversionResult:
        """按交叉汇率（from / to，经韩元）换算金额"""
        if amount <= 0:
            raise ExchangeRateValidationError(f"金额必须为正数: {amount}")
        pair = CurrencyPair.of(from_currency, to_currency)

        from_rate, from_ts = await self._rate_in_krw(pair.base)
        to_rate, to_ts = await self._rate_in_krw(pair.target)
        cross = Calculator.round_half_up(from_rate / to_rate, CROSS_RATE_PLACES)

        return ConversionResult(
            from_currency=pair.base,
            to_currency=pair.target,
            amount=amount,
            rate=cross,
            converted_amount=self._calc.convert(amount, cross),
            rate_timestamp=min(from_ts, to_ts),
        )


# ── 模块级别单例 ──────────────────────────────────────────
_rate_service: Optional[RateService] = None


def get_rate_service() -> RateService:
    global _rate_service
    if _rate_service is None:
        _rate_service = RateService()
    return _rate_service
