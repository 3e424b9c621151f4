"""健康检查路由"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from fx_service import __version__
from fx_service.db import check_health

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health():
    """服务健康检查（含各后端连接状态）"""
    db_health = await check_health()
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "FX Rate Service",
            "databases": db_health,
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe：限流依赖 Redis，Redis 不可用时不接流量"""
    db_health = await check_health()
    ready = db_health["redis"]["status"] == "healthy"
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"ready": ready, "databases": db_health},
    )
