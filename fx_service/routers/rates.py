"""
汇率查询路由
GET /api/rates/currencies            - 支持的币种
GET /api/rates/{currency}            - 当前汇率（1 单位外币 = X 韩元）
GET /api/rates/{currency}/history    - 历史汇率（period 或 start_date + end_date）
GET /api/rates/{currency}/chart      - 图表数据与统计
"""

from datetime import date
from typing import Optional, Union

from fastapi import APIRouter, Query

from fx_service.exceptions import ExchangeRateValidationError
from fx_service.models.domain import ChartPeriod, Currency, DateRange
from fx_service.models.response import ApiResponse
from fx_service.services.rate_service import get_rate_service

router = APIRouter(prefix="/api/rates", tags=["汇率查询"])

_DEFAULT_PERIOD = "1m"


def _resolve_period(
    period: Optional[str], start_date: Optional[date], end_date: Optional[date]
) -> Union[ChartPeriod, DateRange]:
    if start_date is None and end_date is None:
        return ChartPeriod.from_code(period or _DEFAULT_PERIOD)
    if start_date is None or end_date is None:
        raise ExchangeRateValidationError("start_date 与 end_date 必须同时提供")
    return DateRange(start=start_date, end=end_date)


@router.get("/currencies", response_model=ApiResponse)
async def list_currencies():
    """支持的币种（不含基准币种韩元）"""
    currencies = [
        {
            "code": c.code,
            "name": c.display_name,
            "symbol": c.symbol,
            "decimal_places": c.decimal_places,
            "quote_unit": c.quote_unit,
        }
        for c in Currency.supported()
    ]
    return ApiResponse.ok(
        data={"base": Currency.KRW.code, "count": len(currencies), "currencies": currencies}
    )


@router.get("/{currency}", response_model=ApiResponse)
async def get_current_rate(currency: str):
    rate = await get_rate_service().get_current_rate(Currency.from_code(currency))
    return ApiResponse.ok(data=rate.model_dump(mode="json"))


@router.get("/{currency}/history", response_model=ApiResponse)
async def get_history(
    currency: str,
    period: Optional[str] = Query(default=None, description="周期: 1d / 1w / 1m / 3m / 1y"),
    start_date: Optional[date] = Query(default=None, description="开始日期 YYYY-MM-DD"),
    end_date: Optional[date] = Query(default=None, description="结束日期 YYYY-MM-DD"),
):
    cur = Currency.from_code(currency)
    resolved = _resolve_period(period, start_date, end_date)
    points = await get_rate_service().get_history(cur, resolved)
    return ApiResponse.ok(
        data={
            "currency": cur.code,
            "period": resolved.code,
            "count": len(points),
            "rates": [p.model_dump(mode="json") for p in points],
        }
    )


@router.get("/{currency}/chart", response_model=ApiResponse)
async def get_chart(
    currency: str,
    period: str = Query(default=_DEFAULT_PERIOD, description="周期: 1d / 1w / 1m / 3m / 1y"),
):
    chart = await get_rate_service().get_chart(
        Currency.from_code(currency), ChartPeriod.from_code(period)
    )
    return ApiResponse.ok(data=chart.model_dump(mode="json"))
