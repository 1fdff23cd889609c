# 渐进式发布控制器 - 测试夹具
"""共享测试夹具"""

import asyncio
from typing import Dict, List, Optional

import pytest

from delivery.core.config import Settings
from delivery.harness import LoadTestHarness, LoadTestReport, LoadTestRequest
from delivery.models import RolloutEvent, RolloutOptions
from delivery.notify import NotificationSink, Notifier
from delivery.platform import InMemoryPlatform


class FakeHarness(LoadTestHarness):
    """按调用顺序返回预设指标的压测系统"""

    def __init__(
        self,
        results: Optional[List[Dict[str, float]]] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None
    ):
        self.results = results or [{"p95_latency": 120.0, "error_rate": 0.0}]
        self.delay = delay
        self.error = error
        self.calls: List[LoadTestRequest] = []

    async def run(self, request: LoadTestRequest) -> LoadTestReport:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        index = min(len(self.calls), len(self.results)) - 1
        return LoadTestReport(metrics=dict(self.results[index]), report_ref=f"report-{len(self.calls)}")


class RecordingSink(NotificationSink):
    """记录收到的通知"""

    def __init__(self):
        self.events: List[RolloutEvent] = []

    async def send(self, event: RolloutEvent) -> None:
        self.events.append(event)


def fast_options(**overrides) -> RolloutOptions:
    """毫秒级观察窗口"""
    values = dict(
        bake_time=0.05,
        poll_interval=0.01,
        health_grace=0.2,
        success_threshold=2,
        max_consecutive_failures=3,
        gate_timeout=2.0,
        ready_timeout=0.05,
        adapter_max_retries=1,
        adapter_base_delay=0.001,
        adapter_max_delay=0.01,
        scale_down_delay=0.0,
    )
    values.update(overrides)
    return RolloutOptions(**values)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def platform():
    """shop 应用：v1 为稳定版本，v2 已部署待发布"""
    platform = InMemoryPlatform()
    platform.register("shop", "v1", stable=True)
    platform.register("shop", "v2")
    return platform


@pytest.fixture
def harness():
    return FakeHarness()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifier(sink):
    return Notifier([sink])
