"""
FXNow 汇率解析服务
针对固定币种集合，以韩元（KRW）为基准解析当前汇率与历史汇率

架构分层：
  限流层   (RateLimiter)   → 跨实例滑动窗口，保护上游调用配额
  上游层   (Upstream)      → 调用统计检索接口，规范化报价单位
  持久化层 (Persistence)   → 当日快照快速路径 + 节假日回退
  缓存层   (Cache)         → Redis 读穿缓存，TTL 抖动防雪崩
"""

__version__ = "1.0.0"
