"""
汇率服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class FxServiceSettings(BaseSettings):
    """汇率服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── MongoDB 配置（快照持久化） ─────────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="fxnow")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=50)
    MONGO_MIN_CONNECTIONS: int = Field(default=5)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（缓存 + 限流计数） ──────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 上游数据源（统计检索接口） ─────────────────────────
    UPSTREAM_BASE_URL: str = Field(default="https://ecos.bok.or.kr/api")
    UPSTREAM_API_KEY: str = Field(default="")
    UPSTREAM_STAT_CODE: str = Field(default="731Y001")  # 日度韩元兑主要币种汇率
    UPSTREAM_TIMEOUT_SECONDS: float = Field(default=10.0)

    # ── 限流配置（跨实例滑动窗口） ─────────────────────────
    RATE_LIMIT_MAX_CALLS: int = Field(default=300)
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=1800)      # 30 分钟
    RATE_LIMIT_MAX_WAIT_SECONDS: float = Field(default=300.0)  # 最长阻塞 5 分钟
    RATE_LIMIT_MIN_INTERVAL_SECONDS: float = Field(default=0.2)
    RATE_LIMIT_POLICY: Literal["block", "fail_fast"] = Field(default="block")

    # ── 缓存配置 ──────────────────────────────────────────
    CACHE_KEY_PREFIX: str = Field(default="fxnow")
    EXCHANGE_RATE_CACHE_TTL: int = Field(default=1800)    # 当前汇率 TTL（秒）
    HISTORY_CACHE_TTL: int = Field(default=3600)          # 历史/图表 TTL
    CACHE_JITTER_PERCENTAGE: float = Field(default=0.2)   # ±20%
    STALE_CACHE_TTL: int = Field(default=604800)          # 陈旧副本保留 7 天

    # ── 持久化层配置 ──────────────────────────────────────
    FALLBACK_LOOKBACK_DAYS: int = Field(default=7)
    INTRADAY_WINDOW_HOURS: int = Field(default=24)

    # ── 单次请求总预算（缓存 + 持久化 + 上游 + 限流等待） ───
    REQUEST_TIMEOUT_SECONDS: float = Field(default=330.0)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="Asia/Seoul")


@lru_cache
def get_settings() -> FxServiceSettings:
    """获取全局配置（单例）"""
    return FxServiceSettings()


settings = get_settings()
