"""
汇率服务异常体系

  ExchangeRateValidationError   输入不合法（币种/周期/日期/金额），不重试        → 400
  ExchangeRateNotFoundError     整条链路都没有数据                              → 404
  ExchangeRateUnavailableError  上游降级（鉴权、参数、超时、服务端、上游限流）  → 503
  RateLimitExceededError        本地限流拒绝，携带当前计数、上限、所需等待      → 503

节假日"无数据"不是异常，而是上游层返回的空结果，由持久化层就地回退。
"""

from typing import Any, Dict, Optional


class ExchangeRateError(Exception):
    """所有汇率异常的基类"""

    error_code = "EXCHANGE_RATE_ERROR"
    http_status = 500

    def __init__(self, message: str, currency: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.currency = currency

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.error_code, "message": self.message}
        if self.currency:
            detail["currency"] = self.currency
        return detail


class ExchangeRateValidationError(ExchangeRateError):
    error_code = "INVALID_REQUEST"
    http_status = 400


class ExchangeRateNotFoundError(ExchangeRateError):
    error_code = "RATE_NOT_FOUND"
    http_status = 404


class ExchangeRateUnavailableError(ExchangeRateError):
    """上游不可用，保留上游返回的结果码与消息"""

    error_code = "RATE_UNAVAILABLE"
    http_status = 503

    def __init__(
        self,
        message: str,
        currency: Optional[str] = None,
        upstream_code: Optional[str] = None,
        upstream_message: Optional[str] = None,
    ):
        super().__init__(message, currency)
        self.upstream_code = upstream_code
        self.upstream_message = upstream_message

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        if self.upstream_code:
            detail["upstream_code"] = self.upstream_code
            detail["upstream_message"] = self.upstream_message
        return detail


class UpstreamEmptyResponseError(ExchangeRateUnavailableError):
    """上游状态正常但没有任何数据行（区别于节假日无数据）"""

    error_code = "UPSTREAM_EMPTY_RESPONSE"


class RateLimitExceededError(ExchangeRateUnavailableError):
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, current_count: int, limit: int, wait_seconds: float):
        super().__init__(
            f"上游调用限流：窗口内已调用 {current_count}/{limit} 次，"
            f"需等待 {wait_seconds:.1f} 秒"
        )
        self.current_count = current_count
        self.limit = limit
        self.wait_seconds = wait_seconds

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            current_count=self.current_count,
            limit=self.limit,
            wait_seconds=round(self.wait_seconds, 1),
        )
        return detail
