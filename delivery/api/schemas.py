"""
渐进式发布控制器 - Pydantic 模式
"""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..models import Strategy


# ==================== 通用响应 ====================

class ResponseBase(BaseModel):
    """统一响应基类"""
    code: str = "OK"
    message: str = "success"
    data: Optional[Any] = None


# ==================== 发布请求 ====================

class ThresholdSchema(BaseModel):
    """性能阈值"""
    metric: str = Field(..., min_length=1, description="指标名，如 p95_latency")
    operator: str = Field(..., pattern=r"^(<|<=|>|>=)$")
    limit: float


class LoadTestSchema(BaseModel):
    """压测参数"""
    virtual_users: int = Field(10, ge=1, le=10000)
    duration: float = Field(120, gt=0, description="压测时长（秒）")


class RolloutOptionsSchema(BaseModel):
    """单次发布的时间与重试参数，未填写的使用全局配置"""
    bake_time: Optional[float] = Field(None, ge=0)
    poll_interval: Optional[float] = Field(None, gt=0)
    health_grace: Optional[float] = Field(None, ge=0)
    success_threshold: Optional[int] = Field(None, ge=1)
    max_consecutive_failures: Optional[int] = Field(None, ge=1)
    gate_timeout: Optional[float] = Field(None, gt=0)
    ready_timeout: Optional[float] = Field(None, gt=0)
    adapter_max_retries: Optional[int] = Field(None, ge=0)
    scale_down_delay: Optional[float] = Field(None, ge=0)


class RolloutCreate(BaseModel):
    """提交发布"""
    app_name: str = Field(..., min_length=1, max_length=100)
    candidate_version: str = Field(..., min_length=1, max_length=100)
    strategy: Optional[Strategy] = None
    stable_version: Optional[str] = None
    policy: Optional[str] = Field(None, description="发布策略预设，如 production/staging")
    # 支持 "p95_latency<500" 形式
    thresholds: Optional[List[Union[ThresholdSchema, str]]] = None
    canary_weights: Optional[List[int]] = None
    load_test: Optional[LoadTestSchema] = None
    options: Optional[RolloutOptionsSchema] = None
    workload_spec: Optional[Dict[str, Any]] = None
    requested_by: Optional[str] = None


class AbortRequest(BaseModel):
    """中止发布"""
    reason: str = Field("manual", max_length=500)
