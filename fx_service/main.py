"""
FXNow 汇率解析服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn fx_service.main:app --host 0.0.0.0 --port 8002
    python -m fx_service.main
"""

import logging
import math
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fx_service import __version__
from fx_service.config import settings
from fx_service.db import close_connections, init_mongodb, init_redis
from fx_service.exceptions import ExchangeRateError, RateLimitExceededError
from fx_service.layers.chain import close_provider_chain
from fx_service.models.response import ApiResponse
from fx_service.routers import exchange, health, monitoring, rates

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 FXNow 汇率服务 v{__version__} 启动中")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   上游      : {settings.UPSTREAM_BASE_URL}")
    logger.info(
        f"   限流      : {settings.RATE_LIMIT_MAX_CALLS} 次 / "
        f"{settings.RATE_LIMIT_WINDOW_SECONDS}s（{settings.RATE_LIMIT_POLICY}）"
    )
    logger.info("=" * 60)

    # 初始化数据库连接（失败不阻断启动，降级运行）
    mongo_ok = await init_mongodb()
    redis_ok = await init_redis()

    if mongo_ok and redis_ok:
        logger.info("✅ 所有数据库连接就绪")
    elif mongo_ok:
        logger.warning("⚠️ Redis 不可用，缓存透传，上游调用将被拒绝")
    elif redis_ok:
        logger.warning("⚠️ MongoDB 不可用，无快照持久化与节假日回退")
    else:
        logger.warning("⚠️ 数据库均不可用，仅能返回错误")

    yield

    logger.info("🔄 汇率服务正在关闭...")
    await close_provider_chain()
    await close_connections()
    logger.info("✅ 汇率服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="FXNow 汇率服务",
    description=(
        "以韩元为基准的汇率解析服务：\n"
        "- 💱 当前汇率 / 历史汇率 / 图表统计 / 金额换算\n"
        "- 🛡️ 跨实例滑动窗口限流，保护上游调用配额\n"
        "- 🗄️ Redis 缓存 + MongoDB 快照，节假日自动回退\n\n"
        "**解析链路**\n"
        "```\n"
        "Cache Layer        ← Redis 读穿缓存，TTL 抖动\n"
        "Persistence Layer  ← 当日快照 / 日内历史 / 节假日回退\n"
        "Upstream Layer     ← 统计检索接口（限流后调用）\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 异常处理 ──────────────────────────────────────────────
@app.exception_handler(ExchangeRateError)
async def exchange_rate_exception_handler(request: Request, exc: ExchangeRateError):
    if exc.http_status >= 500:
        logger.warning(f"{request.url.path} → {exc.http_status} {exc.error_code}: {exc.message}")
    body = ApiResponse.fail(error=exc.error_code, message=exc.message, detail=exc.to_detail())
    headers = {}
    if isinstance(exc, RateLimitExceededError):
        headers["Retry-After"] = str(max(1, math.ceil(exc.wait_seconds)))
    return JSONResponse(status_code=exc.http_status, content=body.model_dump(), headers=headers)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(rates.router)
app.include_router(exchange.router)
app.include_router(monitoring.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "FXNow FX Rate Service",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "fx_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
