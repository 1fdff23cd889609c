# 渐进式发布控制器 - 流量管理测试
"""traffic模块测试"""

import asyncio

import pytest

from delivery.exceptions import AdapterError
from delivery.models import TrafficWeight
from delivery.platform import InMemoryPlatform
from delivery.retry import AsyncRetrier
from delivery.traffic import TrafficRouter

pytestmark = pytest.mark.asyncio


class DriftingPlatform(InMemoryPlatform):
    """写入后实际生效的权重偏移 drift"""

    def __init__(self, drift: int):
        super().__init__()
        self.drift = drift

    async def set_weights(self, app_name, stable_weight, candidate_weight):
        self.weight_writes.append((app_name, stable_weight, candidate_weight))
        actual = max(0, min(100, candidate_weight + self.drift))
        self.weights[app_name] = TrafficWeight.for_candidate(actual)


class BrokenPlatform(InMemoryPlatform):
    """读取权重总是失败"""

    def __init__(self):
        super().__init__()
        self.reads = 0

    async def get_weights(self, app_name):
        self.reads += 1
        raise ConnectionError("平台不可用")


def make_router(platform, **kwargs) -> TrafficRouter:
    return TrafficRouter(platform, retrier=AsyncRetrier(max_retries=2, base_delay=0.001), **kwargs)


class TestTrafficRouter:
    """流量路由测试"""

    async def test_set_weights(self, platform):
        """测试写入并回读确认"""
        router = make_router(platform)

        result = await router.set_weights("shop", 90, 10)

        assert result == TrafficWeight(90, 10)
        assert platform.weight_writes == [("shop", 90, 10)]

    async def test_idempotent(self, platform):
        """测试目标与当前一致时不产生写入"""
        router = make_router(platform)

        await router.set_weights("shop", 50, 50)
        await router.set_weights("shop", 50, 50)
        await router.set_weights("shop", 50, 50)

        assert platform.weight_writes == [("shop", 50, 50)]

    async def test_initial_state_is_noop(self, platform):
        """测试初始 100/0 时切回 100/0 不写入"""
        router = make_router(platform)

        await router.set_weights("shop", 100, 0)

        assert platform.weight_writes == []

    async def test_within_tolerance(self):
        """测试回读偏差在容差内视为成功"""
        platform = DriftingPlatform(drift=1)
        router = make_router(platform, tolerance=1)

        result = await router.set_weights("shop", 90, 10)

        assert result.candidate_weight == 11
        assert len(platform.weight_writes) == 1

    async def test_mismatch_raises_adapter_error(self):
        """测试回读偏差超出容差且校验次数耗尽"""
        platform = DriftingPlatform(drift=5)
        router = make_router(platform, tolerance=1, verify_attempts=3)

        with pytest.raises(AdapterError) as exc_info:
            await router.set_weights("shop", 50, 50)

        assert len(platform.weight_writes) == 3
        assert exc_info.value.detail["expected"]["candidate_weight"] == 50
        assert exc_info.value.detail["actual"]["candidate_weight"] == 55

    async def test_platform_failure_after_retries(self):
        """测试平台调用重试耗尽后抛出 AdapterError"""
        platform = BrokenPlatform()
        router = make_router(platform)

        with pytest.raises(AdapterError):
            await router.get_weights("shop")
        assert platform.reads == 3

    async def test_writes_are_sequenced(self, platform):
        """测试同一应用的并发写入按顺序执行"""
        router_a = make_router(platform)
        router_b = TrafficRouter(platform, locks=router_a._locks)

        await asyncio.gather(
            router_a.set_weights("shop", 90, 10),
            router_b.set_weights("shop", 50, 50),
        )

        assert platform.weight_writes == [("shop", 90, 10), ("shop", 50, 50)]
        assert platform.weights["shop"] == TrafficWeight(50, 50)
