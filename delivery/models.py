# 渐进式发布控制器 - 数据模型
"""发布、步进计划、健康与性能结论、流量权重"""

import copy
import math
import operator as _operator
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .exceptions import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Strategy(str, Enum):
    """发布策略"""
    ROLLING = "rolling"
    BLUE_GREEN = "blue_green"
    CANARY = "canary"


class RolloutState(str, Enum):
    """发布状态"""
    PENDING = "pending"
    PROGRESSING = "progressing"
    ROLLING_BACK = "rolling_back"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({
    RolloutState.SUCCEEDED,
    RolloutState.ROLLED_BACK,
    RolloutState.ABORTED,
})

# 允许的状态迁移
_TRANSITIONS: Dict[RolloutState, frozenset] = {
    RolloutState.PENDING: frozenset({RolloutState.PROGRESSING, RolloutState.ROLLING_BACK}),
    RolloutState.PROGRESSING: frozenset({RolloutState.SUCCEEDED, RolloutState.ROLLING_BACK}),
    RolloutState.ROLLING_BACK: frozenset({RolloutState.ROLLED_BACK, RolloutState.ABORTED}),
    RolloutState.SUCCEEDED: frozenset(),
    RolloutState.ROLLED_BACK: frozenset(),
    RolloutState.ABORTED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """非法状态迁移"""


class HistoryKind(str, Enum):
    """历史记录类型"""
    STATE = "state"
    WEIGHT = "weight"
    HEALTH = "health"
    GATE_PASS = "gate-pass"
    GATE_FAIL = "gate-fail"
    ROLLBACK = "rollback"
    SCALE_DOWN = "scale-down"


# ==================== 阈值 ====================

_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": _operator.lt,
    "<=": _operator.le,
    ">": _operator.gt,
    ">=": _operator.ge,
}

_THRESHOLD_PATTERN = re.compile(
    r"^\s*(?P<metric>[A-Za-z_][\w.(){}:\-]*?)\s*(?P<op><=|>=|<|>)\s*(?P<limit>[-+]?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)


@dataclass(frozen=True)
class Threshold:
    """性能阈值 {metric, operator, limit}"""
    metric: str
    operator: str
    limit: float

    def __post_init__(self):
        if self.operator not in _OPERATORS:
            raise ValidationError(f"不支持的比较运算符: {self.operator}")
        if not self.metric:
            raise ValidationError("阈值缺少指标名")

    def check(self, value: float) -> bool:
        """value 满足阈值时返回 True"""
        return _OPERATORS[self.operator](value, self.limit)

    @classmethod
    def parse(cls, expression: str) -> "Threshold":
        """解析 "p95_latency<500" 形式的表达式"""
        match = _THRESHOLD_PATTERN.match(expression or "")
        if not match:
            raise ValidationError(f"无法解析阈值表达式: {expression!r}")
        return cls(
            metric=match.group("metric"),
            operator=match.group("op"),
            limit=float(match.group("limit")),
        )

    def __str__(self) -> str:
        return f"{self.metric}{self.operator}{self.limit:g}"

    def to_dict(self) -> Dict[str, Any]:
        return {"metric": self.metric, "operator": self.operator, "limit": self.limit}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Threshold":
        return cls(metric=data["metric"], operator=data["operator"], limit=float(data["limit"]))


# ==================== 步进与流量 ====================

@dataclass(frozen=True)
class StepSpec:
    """步进计划中的一步"""
    weight: int
    bake_time: float
    requires_performance_gate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weight": self.weight,
            "bake_time": self.bake_time,
            "requires_performance_gate": self.requires_performance_gate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepSpec":
        return cls(
            weight=int(data["weight"]),
            bake_time=float(data["bake_time"]),
            requires_performance_gate=bool(data.get("requires_performance_gate", False)),
        )


@dataclass(frozen=True)
class TrafficWeight:
    """稳定版本与候选版本的流量权重，两者之和恒为100"""
    stable_weight: int
    candidate_weight: int

    def __post_init__(self):
        for value in (self.stable_weight, self.candidate_weight):
            if not 0 <= value <= 100:
                raise ValueError(f"权重超出范围: {value}")
        if self.stable_weight + self.candidate_weight != 100:
            raise ValueError(
                f"权重之和必须为100: {self.stable_weight}+{self.candidate_weight}"
            )

    @classmethod
    def for_candidate(cls, candidate_weight: int) -> "TrafficWeight":
        return cls(stable_weight=100 - candidate_weight, candidate_weight=candidate_weight)

    def to_dict(self) -> Dict[str, int]:
        return {"stable_weight": self.stable_weight, "candidate_weight": self.candidate_weight}


# ==================== 结论 ====================

@dataclass
class HealthVerdict:
    """健康结论，每次轮询重新计算"""
    healthy: bool
    consecutive_failures: int
    consecutive_successes: int = 0
    last_checked_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "last_checked_at": _iso(self.last_checked_at),
        }


@dataclass
class PerformanceVerdict:
    """性能门禁结论"""
    passed: bool
    metrics: Dict[str, float] = field(default_factory=dict)
    threshold_violations: List[str] = field(default_factory=list)
    run_id: str = ""
    details: Dict[str, str] = field(default_factory=dict)
    report_ref: Optional[str] = None

    @property
    def timed_out(self) -> bool:
        return "gate-timeout" in self.threshold_violations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "metrics": dict(self.metrics),
            "threshold_violations": list(self.threshold_violations),
            "run_id": self.run_id,
            "details": dict(self.details),
            "report_ref": self.report_ref,
        }


# ==================== 请求与选项 ====================

@dataclass
class LoadTestOptions:
    """压测参数"""
    virtual_users: int = 10
    duration: float = 120.0

    def to_dict(self) -> Dict[str, Any]:
        return {"virtual_users": self.virtual_users, "duration": self.duration}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoadTestOptions":
        return cls(
            virtual_users=int(data.get("virtual_users", 10)),
            duration=float(data.get("duration", 120.0)),
        )


@dataclass
class RolloutOptions:
    """单次发布的时间与重试参数"""
    bake_time: float = 60.0
    poll_interval: float = 10.0
    health_grace: Optional[float] = None
    success_threshold: int = 3
    max_consecutive_failures: int = 3
    gate_timeout: Optional[float] = None
    gate_timeout_margin: float = 120.0
    gate_timeout_min: float = 300.0
    ready_timeout: float = 300.0
    adapter_max_retries: int = 3
    adapter_base_delay: float = 1.0
    adapter_max_delay: float = 30.0
    weight_tolerance: int = 1
    weight_verify_attempts: int = 3
    scale_down_delay: float = 60.0
    rolling_increment: int = 10
    canary_weights: List[int] = field(default_factory=lambda: [10, 50, 100])

    @classmethod
    def from_settings(cls, settings: Any, **overrides) -> "RolloutOptions":
        """以全局配置为默认值构建"""
        values = dict(
            bake_time=settings.BAKE_TIME_SECONDS,
            poll_interval=settings.HEALTH_POLL_INTERVAL,
            health_grace=settings.HEALTH_GRACE_SECONDS,
            success_threshold=settings.HEALTH_SUCCESS_THRESHOLD,
            max_consecutive_failures=settings.MAX_CONSECUTIVE_FAILURES,
            gate_timeout_margin=settings.GATE_TIMEOUT_MARGIN,
            gate_timeout_min=settings.GATE_TIMEOUT_MIN,
            ready_timeout=settings.READY_TIMEOUT,
            adapter_max_retries=settings.ADAPTER_MAX_RETRIES,
            adapter_base_delay=settings.ADAPTER_BASE_DELAY,
            adapter_max_delay=settings.ADAPTER_MAX_DELAY,
            weight_tolerance=settings.WEIGHT_TOLERANCE,
            weight_verify_attempts=settings.WEIGHT_VERIFY_ATTEMPTS,
            scale_down_delay=settings.SCALE_DOWN_DELAY,
            rolling_increment=settings.ROLLING_INCREMENT,
            canary_weights=list(settings.CANARY_WEIGHTS),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def effective_grace(self) -> float:
        return self.bake_time if self.health_grace is None else self.health_grace

    def resolve_gate_timeout(self, load_test: LoadTestOptions) -> float:
        """门禁超时：显式配置优先，否则为压测时长加余量"""
        if self.gate_timeout is not None:
            return self.gate_timeout
        return max(load_test.duration + self.gate_timeout_margin, self.gate_timeout_min)

    def validate(self):
        if self.bake_time < 0 or self.poll_interval <= 0:
            raise ValidationError("观察窗口与轮询间隔必须为正数")
        if self.success_threshold < 1 or self.max_consecutive_failures < 1:
            raise ValidationError("健康检查阈值必须大于0")
        if self.gate_timeout is not None and self.gate_timeout <= 0:
            raise ValidationError("门禁超时必须为正数")
        if self.adapter_max_retries < 0 or self.weight_verify_attempts < 1:
            raise ValidationError("重试次数配置无效")
        if not 0 <= self.weight_tolerance < 100:
            raise ValidationError("权重容差无效")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bake_time": self.bake_time,
            "poll_interval": self.poll_interval,
            "health_grace": self.health_grace,
            "success_threshold": self.success_threshold,
            "max_consecutive_failures": self.max_consecutive_failures,
            "gate_timeout": self.gate_timeout,
            "ready_timeout": self.ready_timeout,
            "adapter_max_retries": self.adapter_max_retries,
            "weight_tolerance": self.weight_tolerance,
            "scale_down_delay": self.scale_down_delay,
        }


@dataclass
class RolloutRequest:
    """发布请求"""
    app_name: str
    candidate_version: str
    strategy: Strategy
    thresholds: List[Threshold] = field(default_factory=list)
    stable_version: Optional[str] = None
    canary_weights: Optional[List[int]] = None
    load_test: LoadTestOptions = field(default_factory=LoadTestOptions)
    options: Optional[RolloutOptions] = None
    workload_spec: Optional[Dict[str, Any]] = None
    policy: Optional[str] = None
    requested_by: Optional[str] = None

    def validate(self):
        if not self.app_name or not self.app_name.strip():
            raise ValidationError("app_name 不能为空")
        if not self.candidate_version or not self.candidate_version.strip():
            raise ValidationError("candidate_version 不能为空")
        if not isinstance(self.strategy, Strategy):
            raise ValidationError(f"未知的发布策略: {self.strategy}")
        if self.load_test.virtual_users < 1 or self.load_test.duration <= 0:
            raise ValidationError("压测参数无效")


# ==================== 发布记录 ====================

@dataclass
class HistoryEntry:
    """发布历史条目"""
    kind: HistoryKind
    state: RolloutState
    weight: int
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "state": self.state.value,
            "weight": self.weight,
            "reason": self.reason,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            kind=HistoryKind(data["kind"]),
            state=RolloutState(data["state"]),
            weight=int(data["weight"]),
            reason=data.get("reason"),
            details=data.get("details") or {},
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class Rollout:
    """一次渐进式发布"""
    app_name: str
    strategy: Strategy
    stable_version: str
    candidate_version: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: RolloutState = RolloutState.PENDING
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    current_weight: int = 0
    step_index: int = -1
    history: List[HistoryEntry] = field(default_factory=list)
    reason: Optional[str] = None
    thresholds: List[Threshold] = field(default_factory=list)
    schedule: List[StepSpec] = field(default_factory=list)
    load_test: LoadTestOptions = field(default_factory=LoadTestOptions)
    requested_by: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _ensure_mutable(self):
        if self.is_terminal:
            raise InvalidTransitionError(f"发布 {self.id} 已处于终态 {self.state.value}")

    def record(self, kind: HistoryKind, reason: Optional[str] = None, **details) -> HistoryEntry:
        """追加历史条目"""
        self._ensure_mutable()
        entry = HistoryEntry(
            kind=kind,
            state=self.state,
            weight=self.current_weight,
            reason=reason,
            details=details,
        )
        self.history.append(entry)
        return entry

    def transition(self, new_state: RolloutState, reason: Optional[str] = None, **details) -> HistoryEntry:
        """状态迁移"""
        self._ensure_mutable()
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"非法状态迁移: {self.state.value} -> {new_state.value}"
            )

        previous = self.state
        self.state = new_state
        if new_state == RolloutState.ROLLING_BACK:
            self.current_weight = 0
            self.reason = reason
        if new_state in TERMINAL_STATES:
            self.completed_at = utcnow()
            if reason:
                self.reason = reason

        entry = HistoryEntry(
            kind=HistoryKind.STATE,
            state=new_state,
            weight=self.current_weight,
            reason=reason,
            details={"from": previous.value, **details},
        )
        self.history.append(entry)
        return entry

    def set_weight(self, weight: int, reason: Optional[str] = None) -> HistoryEntry:
        """记录已确认的候选版本流量比例，发布中只增不减"""
        if self.state != RolloutState.PROGRESSING:
            raise InvalidTransitionError(f"状态 {self.state.value} 下不能调整权重")
        if weight < self.current_weight:
            raise ValueError(f"发布中权重不能回退: {self.current_weight} -> {weight}")
        self.current_weight = weight
        return self.record(HistoryKind.WEIGHT, reason, candidate_weight=weight)

    def entries(self, kind: HistoryKind) -> List[HistoryEntry]:
        return [e for e in self.history if e.kind == kind]

    def snapshot(self) -> "Rollout":
        """一致性快照"""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "app_name": self.app_name,
            "strategy": self.strategy.value,
            "stable_version": self.stable_version,
            "candidate_version": self.candidate_version,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "completed_at": _iso(self.completed_at),
            "current_weight": self.current_weight,
            "step_index": self.step_index,
            "reason": self.reason,
            "thresholds": [t.to_dict() for t in self.thresholds],
            "schedule": [s.to_dict() for s in self.schedule],
            "load_test": self.load_test.to_dict(),
            "requested_by": self.requested_by,
            "history": [e.to_dict() for e in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rollout":
        return cls(
            id=data["id"],
            app_name=data["app_name"],
            strategy=Strategy(data["strategy"]),
            stable_version=data["stable_version"],
            candidate_version=data["candidate_version"],
            state=RolloutState(data["state"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            completed_at=_parse_dt(data.get("completed_at")),
            current_weight=int(data.get("current_weight", 0)),
            step_index=int(data.get("step_index", -1)),
            reason=data.get("reason"),
            thresholds=[Threshold.from_dict(t) for t in data.get("thresholds", [])],
            schedule=[StepSpec.from_dict(s) for s in data.get("schedule", [])],
            load_test=LoadTestOptions.from_dict(data.get("load_test", {})),
            requested_by=data.get("requested_by"),
            history=[HistoryEntry.from_dict(e) for e in data.get("history", [])],
        )


@dataclass
class RolloutEvent:
    """状态变更通知"""
    app_name: str
    rollout_id: str
    state: RolloutState
    reason: Optional[str] = None
    candidate_version: Optional[str] = None
    current_weight: int = 0
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_rollout(cls, rollout: Rollout, reason: Optional[str] = None) -> "RolloutEvent":
        return cls(
            app_name=rollout.app_name,
            rollout_id=rollout.id,
            state=rollout.state,
            reason=reason,
            candidate_version=rollout.candidate_version,
            current_weight=rollout.current_weight,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "app_name": self.app_name,
            "rollout_id": self.rollout_id,
            "state": self.state.value,
            "reason": self.reason,
            "candidate_version": self.candidate_version,
            "current_weight": self.current_weight,
            "timestamp": self.timestamp.isoformat(),
        }


def coerce_metric(value: Any) -> Optional[float]:
    """数值指标转为 float，非数值或非有限值返回 None"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None
