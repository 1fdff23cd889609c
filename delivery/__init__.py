"""
渐进式发布控制器
滚动/蓝绿/金丝雀发布，健康检查与性能门禁，失败自动回滚
"""

from .controller import RolloutController
from .gate import PerformanceGate
from .harness import K6Harness, LoadTestHarness, LoadTestReport, LoadTestRequest
from .health import HealthProbe, HealthSource, HTTPHealthSource, PlatformHealthSource
from .models import (
    HealthVerdict,
    LoadTestOptions,
    PerformanceVerdict,
    Rollout,
    RolloutOptions,
    RolloutRequest,
    RolloutState,
    StepSpec,
    Strategy,
    Threshold,
    TrafficWeight,
)
from .notify import LoggingSink, NotificationSink, Notifier, SlackWebhookSink
from .platform import InMemoryPlatform, Platform
from .policy import RolloutPolicy, resolve_policy
from .rollback import RollbackManager
from .traffic import TrafficRouter

__version__ = "1.0.0"

__all__ = [
    "RolloutController",
    "PerformanceGate",
    "K6Harness",
    "LoadTestHarness",
    "LoadTestReport",
    "LoadTestRequest",
    "HealthProbe",
    "HealthSource",
    "HTTPHealthSource",
    "PlatformHealthSource",
    "HealthVerdict",
    "LoadTestOptions",
    "PerformanceVerdict",
    "Rollout",
    "RolloutOptions",
    "RolloutRequest",
    "RolloutState",
    "StepSpec",
    "Strategy",
    "Threshold",
    "TrafficWeight",
    "LoggingSink",
    "NotificationSink",
    "Notifier",
    "SlackWebhookSink",
    "InMemoryPlatform",
    "Platform",
    "RolloutPolicy",
    "resolve_policy",
    "RollbackManager",
    "TrafficRouter",
]
