"""统一 API 响应模型"""

from typing import Any, Dict, Optional

from pydantic import BaseModel


class ApiResponse(BaseModel):
    """标准 API 响应封装；失败时 detail 携带错误码及限流 / 上游元数据"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "success") -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(
        cls,
        error: str,
        message: str = "failed",
        detail: Optional[Dict[str, Any]] = None,
    ) -> "ApiResponse":
        return cls(success=False, error=error, message=message, detail=detail)
