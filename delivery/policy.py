# 渐进式发布控制器 - 发布策略预设
"""
按环境预设的发布策略

调用方自行决定使用哪个预设（例如由 CI 根据分支类型选择），
控制器本身不读取任何源码管理信息。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import NotFoundError
from .models import LoadTestOptions, RolloutRequest, Strategy, Threshold


@dataclass(frozen=True)
class RolloutPolicy:
    """发布策略预设"""
    name: str
    strategy: Strategy
    thresholds: List[Threshold] = field(default_factory=list)
    load_test: LoadTestOptions = field(default_factory=LoadTestOptions)
    bake_time: Optional[float] = None
    max_consecutive_failures: Optional[int] = None
    canary_weights: Optional[Tuple[int, ...]] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "strategy": self.strategy.value,
            "thresholds": [str(t) for t in self.thresholds],
            "load_test": self.load_test.to_dict(),
            "bake_time": self.bake_time,
            "max_consecutive_failures": self.max_consecutive_failures,
            "canary_weights": list(self.canary_weights) if self.canary_weights else None,
            "description": self.description,
        }

    def to_request(self, app_name: str, candidate_version: str, **overrides) -> RolloutRequest:
        """生成发布请求，显式传入的字段覆盖预设"""
        values: Dict[str, Any] = dict(
            app_name=app_name,
            candidate_version=candidate_version,
            strategy=self.strategy,
            thresholds=list(self.thresholds),
            load_test=LoadTestOptions(
                virtual_users=self.load_test.virtual_users,
                duration=self.load_test.duration,
            ),
            canary_weights=list(self.canary_weights) if self.canary_weights else None,
            policy=self.name,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return RolloutRequest(**values)


def _thresholds(*expressions: str) -> List[Threshold]:
    return [Threshold.parse(e) for e in expressions]


POLICIES: Dict[str, RolloutPolicy] = {
    policy.name: policy
    for policy in (
        RolloutPolicy(
            name="production",
            strategy=Strategy.CANARY,
            thresholds=_thresholds("p95_latency<2000", "error_rate<0.05"),
            load_test=LoadTestOptions(virtual_users=20, duration=180),
            description="生产环境：金丝雀，轻量压测，阈值宽松",
        ),
        RolloutPolicy(
            name="staging",
            strategy=Strategy.BLUE_GREEN,
            thresholds=_thresholds("p95_latency<500", "error_rate<0.01", "checks_pass_rate>0.99"),
            load_test=LoadTestOptions(virtual_users=100, duration=600),
            description="预发环境：蓝绿，全面压测，阈值严格",
        ),
        RolloutPolicy(
            name="release",
            strategy=Strategy.CANARY,
            thresholds=_thresholds("p95_latency<1000", "error_rate<0.02"),
            load_test=LoadTestOptions(virtual_users=75, duration=480),
            description="发布分支：标准压测",
        ),
        RolloutPolicy(
            name="hotfix",
            strategy=Strategy.CANARY,
            canary_weights=(25, 100),
            thresholds=_thresholds("p95_latency<1500", "error_rate<0.05"),
            load_test=LoadTestOptions(virtual_users=50, duration=300),
            description="热修复：单步金丝雀，压测通过后直接全量",
        ),
        RolloutPolicy(
            name="feature",
            strategy=Strategy.CANARY,
            canary_weights=(5, 100),
            thresholds=_thresholds("p95_latency<2000", "error_rate<0.1"),
            load_test=LoadTestOptions(virtual_users=25, duration=180),
            description="功能分支：小流量金丝雀，轻量压测",
        ),
        RolloutPolicy(
            name="none",
            strategy=Strategy.ROLLING,
            load_test=LoadTestOptions(virtual_users=10, duration=120),
            description="滚动发布，不做性能门禁",
        ),
    )
}


def resolve_policy(name: str) -> RolloutPolicy:
    try:
        return POLICIES[name]
    except KeyError:
        raise NotFoundError("发布策略", name) from None


def list_policies() -> List[RolloutPolicy]:
    return list(POLICIES.values())
