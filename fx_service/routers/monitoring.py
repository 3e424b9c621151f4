"""
运维监控路由
GET /api/monitoring/rate-limit          - 上游调用限流窗口状态
GET /api/monitoring/stale/{currency}    - 读取陈旧缓存副本（人工应急）
"""

from fastapi import APIRouter

from fx_service.exceptions import ExchangeRateNotFoundError
from fx_service.layers.chain import get_provider_chain
from fx_service.layers.rate_limiter import get_rate_limiter
from fx_service.models.domain import Currency
from fx_service.models.response import ApiResponse

router = APIRouter(prefix="/api/monitoring", tags=["运维监控"])


@router.get("/rate-limit", response_model=ApiResponse)
async def rate_limit_status():
    limiter = get_rate_limiter()
    count = await limiter.current_count()
    return ApiResponse.ok(
        data={
            "current_count": count,
            "limit": limiter.max_calls,
            "remaining": max(limiter.max_calls - count, 0),
            "window_seconds": limiter.window_seconds,
            "has_capacity": count < limiter.max_calls,
            "policy": limiter.policy.value,
        }
    )


@router.get("/stale/{currency}", response_model=ApiResponse)
async def stale_rate(currency: str):
    """陈旧副本可能已过期数日，仅在上游长时间不可用时人工参考"""
    cur = Currency.from_code(currency)
    rate = await get_provider_chain().get_stale_rate(cur)
    if rate is None:
        raise ExchangeRateNotFoundError(f"{cur.code} 没有陈旧缓存副本", currency=cur.code)
    return ApiResponse.ok(data=rate.model_dump(mode="json"), message="陈旧数据，仅供应急参考")
