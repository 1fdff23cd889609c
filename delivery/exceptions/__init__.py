# 渐进式发布控制器 - 异常模块
"""异常定义与处理器"""

from .exceptions import (
    DeliveryError,
    ConflictError,
    ValidationError,
    NoOpError,
    NotFoundError,
    RolloutFailedError,
    AdapterError,
    GateTimeoutError,
    HealthDegradedError,
    OperatorAbort,
    PerformanceGateFailed,
)

__all__ = [
    "DeliveryError",
    "ConflictError",
    "ValidationError",
    "NoOpError",
    "NotFoundError",
    "RolloutFailedError",
    "AdapterError",
    "GateTimeoutError",
    "HealthDegradedError",
    "OperatorAbort",
    "PerformanceGateFailed",
]
