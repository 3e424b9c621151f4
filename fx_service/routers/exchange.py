"""
换算路由
GET /api/exchange/convert?from=USD&to=KRW&amount=100
"""

from decimal import Decimal

from fastapi import APIRouter, Query

from fx_service.models.domain import Currency
from fx_service.models.response import ApiResponse
from fx_service.services.rate_service import get_rate_service

router = APIRouter(prefix="/api/exchange", tags=["汇率换算"])


@router.get("/convert", response_model=ApiResponse)
async def convert(
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
    amount: Decimal = Query(...),
):
    result = await get_rate_service().convert(
        amount, Currency.from_code(from_currency), Currency.from_code(to_currency)
    )
    return ApiResponse.ok(data=result.model_dump(mode="json"))
