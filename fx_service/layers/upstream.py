"""
上游数据层
调用统计检索接口（StatisticSearch）获取韩元汇率，并把上游结果码映射为异常体系

上游响应有两种形态：
  {"RESULT": {"CODE": "INFO-200", "MESSAGE": "..."}}                  → 仅状态
  {"StatisticSearch": {"list_total_count": n, "row": [...]}}          → 数据行

INFO-200（区间内无数据，如节假日）不是错误：返回空结果，由持久化层回退。
其余非成功结果码一律抛出 ExchangeRateUnavailableError，并保留上游码与消息。
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from fx_service import timeutil
from fx_service.config import settings
from fx_service.exceptions import (
    ExchangeRateUnavailableError,
    ExchangeRateValidationError,
    UpstreamEmptyResponseError,
)
from fx_service.layers.processing import ProcessingLayer, get_processing_layer
from fx_service.layers.rate_limiter import RateLimiter, get_rate_limiter
from fx_service.models.domain import Currency, CurrentRate, DailyRate, HistoricalRate

logger = logging.getLogger(__name__)

SUCCESS_CODE = "INFO-000"
NO_DATA_CODE = "INFO-200"

# 上游结果码 → 含义
_UPSTREAM_ERRORS: Dict[str, str] = {
    "INFO-100": "认证失败，API Key 无效",
    "ERROR-100": "请求参数错误（必填参数缺失）",
    "ERROR-101": "请求参数错误（日期格式不正确）",
    "ERROR-200": "请求参数错误（文件类型不正确）",
    "ERROR-300": "请求参数错误（条数参数缺失）",
    "ERROR-301": "请求参数错误（条数参数类型不正确）",
    "ERROR-400": "上游查询超时，请缩小查询区间",
    "ERROR-500": "上游服务器错误",
    "ERROR-600": "上游数据库连接错误",
    "ERROR-601": "上游数据库 SQL 错误",
    "ERROR-602": "上游调用次数超限",
}


# ── 上游响应模型 ──────────────────────────────────────────

class UpstreamResult(BaseModel):
    code: str = Field(validation_alias=AliasChoices("CODE", "RESULT_CODE"))
    message: str = Field(default="", validation_alias=AliasChoices("MESSAGE", "RESULT_MESSAGE"))


class UpstreamRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    time: str = Field(validation_alias="TIME")
    data_value: Optional[str] = Field(default=None, validation_alias="DATA_VALUE")

    @field_validator("time", "data_value", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> Any:
        return None if value is None else str(value)


class StatisticSearch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    list_total_count: int = 0
    row: List[UpstreamRow] = Field(default_factory=list)
    result: Optional[UpstreamResult] = Field(default=None, validation_alias="RESULT")


class UpstreamEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    statistic_search: Optional[StatisticSearch] = Field(
        default=None, validation_alias="StatisticSearch"
    )
    result: Optional[UpstreamResult] = Field(default=None, validation_alias="RESULT")


def _unavailable(currency: Currency, result: UpstreamResult) -> ExchangeRateUnavailableError:
    meaning = _UPSTREAM_ERRORS.get(result.code, "未知上游错误")
    return ExchangeRateUnavailableError(
        f"{currency.code} 汇率上游不可用: {meaning} [{result.code}] {result.message}",
        currency=currency.code,
        upstream_code=result.code,
        upstream_message=result.message,
    )


class UpstreamProvider:
    """链路最底层：限流后调用上游，返回规范化后的汇率"""

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        processor: Optional[ProcessingLayer] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = settings.UPSTREAM_BASE_URL,
        api_key: str = settings.UPSTREAM_API_KEY,
        stat_code: str = settings.UPSTREAM_STAT_CODE,
        timeout: float = settings.UPSTREAM_TIMEOUT_SECONDS,
    ):
        self._limiter = rate_limiter or get_rate_limiter()
        self._processor = processor or get_processing_layer()
        self._client = client
        self._owns_client = client is None
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._stat_code = stat_code
        self._timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ── 对外接口 ──────────────────────────────────────────

    async def get_current_rate(self, currency: Currency) -> Optional[CurrentRate]:
        """当日汇率；上游无数据时返回 None"""
        today = timeutil.today()
        daily = await self.fetch_daily_rates(currency, today, today, count=1)
        if not daily:
            return None
        latest = daily[-1]
        return CurrentRate(currency=currency, rate=latest.rate, timestamp=timeutil.now())

    async def refresh_current_rate(self, currency: Currency) -> Optional[CurrentRate]:
        return await self.get_current_rate(currency)

    async def get_history(self, currency: Currency, period) -> List[HistoricalRate]:
        """区间历史汇率（升序，含日涨跌幅）；上游无数据时返回空列表"""
        today = timeutil.today()
        daily = await self.fetch_daily_rates(
            currency,
            period.start_date(today),
            period.end_date(today),
            count=period.required_count(today),
        )
        return self._processor.with_changes(daily)

    # ── 上游调用 ──────────────────────────────────────────

    def _build_url(self, currency: Currency, start: date, end: date, count: int) -> str:
        return (
            f"{self._base_url}/StatisticSearch/{self._api_key}/json/kr/1/{count}"
            f"/{self._stat_code}/D/{start:%Y%m%d}/{end:%Y%m%d}/{currency.upstream_code}"
        )

    async def fetch_daily_rates(
        self, currency: Currency, start: date, end: date, count: int
    ) -> List[DailyRate]:
        if not currency.is_supported:
            raise ExchangeRateValidationError(
                f"上游不提供该币种报价: {currency.code}", currency=currency.code
            )

        await self._limiter.acquire()

        url = self._build_url(currency, start, end, count)
        logger.info(f"请求上游汇率: {currency.code} {start} ~ {end}（最多 {count} 条）")
        try:
            resp = await self._get_client().get(url)
            resp.raise_for_status()
            envelope = UpstreamEnvelope.model_validate(resp.json())
        except httpx.TimeoutException as exc:
            logger.error(f"上游请求超时: {currency.code}: {exc}")
            raise ExchangeRateUnavailableError(
                f"{currency.code} 汇率上游请求超时", currency=currency.code
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(f"上游请求失败: {currency.code}: {exc}")
            raise ExchangeRateUnavailableError(
                f"{currency.code} 汇率上游请求失败: {exc}", currency=currency.code
            ) from exc
        except (ValueError, ValidationError) as exc:
            logger.error(f"上游响应无法解析: {currency.code}: {exc}")
            raise ExchangeRateUnavailableError(
                f"{currency.code} 汇率上游响应格式错误", currency=currency.code
            ) from exc

        return self._classify(currency, envelope)

    def _classify(self, currency: Currency, envelope: UpstreamEnvelope) -> List[DailyRate]:
        search = envelope.statistic_search
        result = envelope.result or (search.result if search else None)

        if result is not None and result.code == NO_DATA_CODE:
            logger.info(f"上游无数据（节假日或未发布）: {currency.code}")
            return []
        if result is not None and result.code != SUCCESS_CODE:
            error = _unavailable(currency, result)
            logger.error(error.message)
            raise error

        if search is None or not search.row:
            raise UpstreamEmptyResponseError(
                f"{currency.code} 上游返回成功状态但没有数据行", currency=currency.code
            )

        rows = [{"time": r.time, "value": r.data_value} for r in search.row]
        daily = self._processor.normalize_rows(rows, currency)
        if not daily:
            raise UpstreamEmptyResponseError(
                f"{currency.code} 上游数据行均无法解析", currency=currency.code
            )
        return daily


# ── 模块级别单例 ──────────────────────────────────────────
_upstream: Optional[UpstreamProvider] = None


def get_upstream_provider() -> UpstreamProvider:
    global _upstream
    if _upstream is None:
        _upstream = UpstreamProvider()
    return _upstream


async def close_upstream_provider():
    global _upstream
    if _upstream is not None:
        await _upstream.aclose()
        _upstream = None
