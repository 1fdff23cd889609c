# 渐进式发布控制器 - 自定义异常类
"""发布异常定义"""

from typing import Any, Dict, List, Optional


class DeliveryError(Exception):
    """
    发布异常基类

    Attributes:
        code: 业务错误码
        message: 错误消息
        status_code: HTTP状态码
        detail: 详细信息
    """
    code: str = "ErrInternal"
    message: str = "发布控制器内部错误"
    status_code: int = 500

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        detail: Optional[Any] = None,
        errors: Optional[List[Dict]] = None
    ):
        self.message = message or self.message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.detail = detail
        self.errors = errors
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        result = {
            "code": self.code,
            "message": self.message,
            "data": self.detail
        }
        if self.errors:
            result["errors"] = self.errors
        return result


# ==================== 提交阶段同步拒绝 ====================

class ConflictError(DeliveryError):
    """同一应用已有进行中的发布 - 409"""
    code = "ErrConflictingRollout"
    message = "该应用已有进行中的发布"
    status_code = 409

    def __init__(self, app_name: str, rollout_id: Optional[str] = None, **kwargs):
        self.app_name = app_name
        self.rollout_id = rollout_id
        super().__init__(
            message=f"应用 {app_name} 已有进行中的发布 ({rollout_id})",
            detail={"app_name": app_name, "rollout_id": rollout_id},
            **kwargs
        )


class ValidationError(DeliveryError):
    """发布请求校验失败 - 422"""
    code = "ErrValidation"
    message = "发布请求校验失败"
    status_code = 422


class NoOpError(ValidationError):
    """候选版本与稳定版本相同"""
    code = "ErrNoOp"
    message = "候选版本与稳定版本相同，无需发布"


class NotFoundError(DeliveryError):
    """应用或发布不存在 - 404"""
    code = "ErrNotFound"
    message = "请求的发布不存在"
    status_code = 404

    def __init__(self, resource: str = "发布", resource_id: Any = None, **kwargs):
        if resource_id:
            message = f"{resource} ({resource_id}) 不存在"
        else:
            message = f"{resource}不存在"
        super().__init__(message=message, **kwargs)


class RolloutFailedError(DeliveryError):
    """发布以失败告终，详情见 history"""
    code = "ErrRolloutFailed"
    message = "发布失败"
    status_code = 409


# ==================== 发布过程中被吸收为回滚原因 ====================

class AdapterError(DeliveryError):
    """平台调用在重试耗尽后仍失败"""
    code = "ErrAdapter"
    message = "平台调用失败"
    status_code = 502


class PerformanceGateFailed(DeliveryError):
    """压测指标未满足阈值"""
    code = "ErrPerformanceGateFailed"
    message = "性能门禁未通过"
    status_code = 409

    def __init__(self, message: Optional[str] = None, verdict: Any = None, **kwargs):
        self.verdict = verdict
        super().__init__(message=message, **kwargs)


class GateTimeoutError(PerformanceGateFailed):
    """压测系统未在超时时间内返回结果"""
    code = "ErrGateTimeout"
    message = "性能门禁超时"
    status_code = 504


class HealthDegradedError(DeliveryError):
    """连续健康检查失败次数超过阈值"""
    code = "ErrHealthDegraded"
    message = "健康检查连续失败"
    status_code = 503

    def __init__(self, message: Optional[str] = None, verdict: Any = None, **kwargs):
        self.verdict = verdict
        super().__init__(message=message, **kwargs)


class OperatorAbort(DeliveryError):
    """运维人员主动中止"""
    code = "ErrOperatorAbort"
    message = "发布被运维人员中止"
    status_code = 409
