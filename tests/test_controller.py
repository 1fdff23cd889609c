# 渐进式发布控制器 - 状态机测试
"""controller模块测试"""

import asyncio

import pytest

from conftest import FakeHarness, fast_options
from delivery.controller import RolloutController
from delivery.exceptions import (
    ConflictError,
    GateTimeoutError,
    NoOpError,
    NotFoundError,
    RolloutFailedError,
    ValidationError,
)
from delivery.models import (
    HistoryKind,
    RolloutRequest,
    RolloutState,
    Strategy,
    Threshold,
    TrafficWeight,
)
from delivery.policy import resolve_policy
from delivery.store import RolloutStore

pytestmark = pytest.mark.asyncio

P95 = [Threshold.parse("p95_latency<500")]


@pytest.fixture
def controller(platform, harness, notifier, settings):
    return RolloutController(
        platform,
        harness=harness,
        notifier=notifier,
        store=RolloutStore(),
        settings=settings,
    )


def make_request(strategy=Strategy.CANARY, thresholds=None, **kwargs) -> RolloutRequest:
    kwargs.setdefault("options", fast_options())
    return RolloutRequest(
        app_name="shop",
        candidate_version="v2",
        strategy=strategy,
        thresholds=thresholds if thresholds is not None else [],
        **kwargs
    )


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("等待条件超时")
        await asyncio.sleep(0.005)


def weights_of(rollout):
    return [e.details["candidate_weight"] for e in rollout.entries(HistoryKind.WEIGHT)]


class TestSuccessfulRollouts:
    """发布成功测试"""

    async def test_canary_success(self, controller, platform, harness):
        """测试金丝雀 10/50/100 全部通过"""
        submitted = await controller.start_rollout(make_request(thresholds=P95))
        assert submitted.state == RolloutState.PENDING
        assert submitted.stable_version == "v1"

        rollout = await controller.wait_for_result("shop")

        assert rollout.state == RolloutState.SUCCEEDED
        assert rollout.current_weight == 100
        assert weights_of(rollout) == [10, 50, 100]
        assert len(rollout.entries(HistoryKind.GATE_PASS)) == 2
        assert len(harness.calls) == 2
        assert platform.weights["shop"] == TrafficWeight(0, 100)

    async def test_scale_down_old_stable(self, controller, platform):
        """测试成功后通知平台缩容旧版本"""
        await controller.start_rollout(make_request(Strategy.ROLLING))
        rollout = await controller.wait_for_result("shop")

        entry = rollout.entries(HistoryKind.SCALE_DOWN)[0]
        assert entry.details["version"] == "v1"
        assert platform.workloads["shop"]["v1"].retired_at is not None
        assert platform.stable_versions["shop"] == "v2"
        # 缩容记录在 Succeeded 之前
        assert rollout.history[-1].kind == HistoryKind.STATE
        assert rollout.history[-1].state == RolloutState.SUCCEEDED

    async def test_rolling_without_gate(self, controller, harness):
        """测试滚动发布不调用压测"""
        await controller.start_rollout(make_request(Strategy.ROLLING, thresholds=P95))
        rollout = await controller.wait_for_result("shop")

        assert weights_of(rollout) == [10, 20, 30, 40, 50, 60, 70, 80, 90, 100]
        assert harness.calls == []

    async def test_blue_green_gate_at_zero_traffic(self, controller, harness):
        """测试蓝绿发布在0%流量下过门禁"""
        await controller.start_rollout(make_request(Strategy.BLUE_GREEN, thresholds=P95))
        rollout = await controller.wait_for_result("shop")

        assert rollout.state == RolloutState.SUCCEEDED
        assert weights_of(rollout) == [0, 100]
        gate = rollout.entries(HistoryKind.GATE_PASS)[0]
        assert gate.weight == 0

    async def test_state_notifications(self, controller, notifier, sink):
        """测试每次状态变更都发送通知"""
        await controller.start_rollout(make_request(Strategy.ROLLING))
        await controller.wait_for_result("shop")
        await notifier.drain()

        assert [e.state for e in sink.events] == [
            RolloutState.PENDING,
            RolloutState.PROGRESSING,
            RolloutState.SUCCEEDED,
        ]

    async def test_next_rollout_uses_new_stable(self, controller, platform):
        """测试下一次发布以上次的候选版本为稳定版本"""
        await controller.start_rollout(make_request(Strategy.ROLLING))
        await controller.wait_for_result("shop")
        platform.register("shop", "v3")

        rollout = await controller.start_rollout(RolloutRequest(
            app_name="shop",
            candidate_version="v3",
            strategy=Strategy.ROLLING,
            options=fast_options(),
        ))

        assert rollout.stable_version == "v2"
        await controller.wait_for_result("shop")

    async def test_apply_workload_spec(self, controller, platform):
        """测试提交了工作负载定义时先声明再等待就绪"""
        del platform.workloads["shop"]["v2"]

        await controller.start_rollout(make_request(
            Strategy.ROLLING, workload_spec={"image": "shop:v2", "replicas": 3}
        ))
        rollout = await controller.wait_for_result("shop")

        assert rollout.state == RolloutState.SUCCEEDED
        assert platform.workloads["shop"]["v2"].spec["replicas"] == 3


class TestFailedRollouts:
    """发布失败与回滚测试"""

    async def test_canary_gate_failure_at_50(self, platform):
        """测试金丝雀在50%步门禁失败后回滚"""
        harness = FakeHarness([{"p95_latency": 300}, {"p95_latency": 900}])
        controller = RolloutController(platform, harness=harness, store=RolloutStore())

        await controller.start_rollout(make_request(thresholds=P95))
        with pytest.raises(RolloutFailedError) as exc_info:
            await controller.wait_for_result("shop")

        rollout = controller.get_rollout_status("shop")
        assert rollout.state == RolloutState.ROLLED_BACK
        assert rollout.current_weight == 0
        assert rollout.reason == "PerformanceGateFailed"
        assert weights_of(rollout) == [10, 50]
        assert rollout.entries(HistoryKind.GATE_FAIL)[0].details["threshold_violations"] == ["p95_latency"]
        assert platform.weights["shop"] == TrafficWeight(100, 0)
        assert exc_info.value.detail["id"] == rollout.id

    async def test_gate_timeout(self, platform):
        """测试蓝绿门禁超时回滚"""
        harness = FakeHarness(delay=10)
        controller = RolloutController(platform, harness=harness, store=RolloutStore())

        await controller.start_rollout(make_request(
            Strategy.BLUE_GREEN, thresholds=P95, options=fast_options(gate_timeout=0.05)
        ))
        with pytest.raises(RolloutFailedError):
            await controller.wait_for_result("shop")

        rollout = controller.get_rollout_status("shop")
        assert rollout.state == RolloutState.ROLLED_BACK
        assert rollout.reason == "GateTimeoutError"
        gate = rollout.entries(HistoryKind.GATE_FAIL)[0]
        assert gate.details["threshold_violations"] == ["gate-timeout"]
        rollback = rollout.entries(HistoryKind.ROLLBACK)[0]
        assert rollback.reason == GateTimeoutError.__name__
        assert rollback.details["message"] == "gate-timeout"
        assert rollback.details["verdict"]["threshold_violations"] == ["gate-timeout"]
        assert platform.weights["shop"] == TrafficWeight(100, 0)

    async def test_health_degraded(self, controller, platform):
        """测试连续健康检查失败回滚"""
        platform.set_healthy("shop", "v2", False)

        await controller.start_rollout(make_request(Strategy.ROLLING))
        with pytest.raises(RolloutFailedError):
            await controller.wait_for_result("shop")

        rollout = controller.get_rollout_status("shop")
        assert rollout.state == RolloutState.ROLLED_BACK
        assert rollout.reason == "HealthDegradedError"
        health = rollout.entries(HistoryKind.HEALTH)[0]
        assert health.details["consecutive_failures"] == 3
        assert weights_of(rollout) == [10]

    async def test_candidate_never_ready(self, controller, platform):
        """测试候选版本未就绪时从 Pending 回滚"""
        platform.register("shop", "v2", ready=False)

        await controller.start_rollout(make_request())
        with pytest.raises(RolloutFailedError):
            await controller.wait_for_result("shop")

        rollout = controller.get_rollout_status("shop")
        assert rollout.state == RolloutState.ROLLED_BACK
        assert rollout.reason == "AdapterError"
        states = [e.state for e in rollout.entries(HistoryKind.STATE)]
        assert RolloutState.PROGRESSING not in states
        assert platform.weight_writes == []


    async def test_weight_drift_rolls_back(self, controller, platform, monkeypatch):
        """测试权重回读偏差超出容差时按平台故障回滚"""
        write = platform.set_weights

        async def drifting_write(app_name, stable_weight, candidate_weight):
            if candidate_weight == 50:
                stable_weight, candidate_weight = 60, 40
            await write(app_name, stable_weight, candidate_weight)

        monkeypatch.setattr(platform, "set_weights", drifting_write)

        await controller.start_rollout(make_request())
        with pytest.raises(RolloutFailedError):
            await controller.wait_for_result("shop")

        rollout = controller.get_rollout_status("shop")
        assert rollout.state == RolloutState.ROLLED_BACK
        assert rollout.reason == "AdapterError"
        assert weights_of(rollout) == [10]
        assert platform.weights["shop"] == TrafficWeight(100, 0)
        assert rollout.entries(HistoryKind.ROLLBACK)[0].details["confirmed"] is True

    async def test_hotfix_policy_runs_gate(self, platform):
        """测试热修复预设在首个金丝雀步执行门禁"""
        harness = FakeHarness([{"p95_latency": 99999, "error_rate": 0.9}])
        controller = RolloutController(platform, harness=harness, store=RolloutStore())
        request = resolve_policy("hotfix").to_request("shop", "v2", options=fast_options())

        await controller.start_rollout(request)
        with pytest.raises(RolloutFailedError):
            await controller.wait_for_result("shop")

        rollout = controller.get_rollout_status("shop")
        assert len(harness.calls) == 1
        assert harness.calls[0].virtual_users == 50
        assert rollout.reason == "PerformanceGateFailed"
        assert weights_of(rollout) == [25]
        assert platform.weights["shop"] == TrafficWeight(100, 0)


class TestAbort:
    """人工中止测试"""

    async def test_abort_mid_bake(self, controller, platform, harness):
        """测试10%观察期间中止"""
        await controller.start_rollout(make_request(thresholds=P95, options=fast_options(bake_time=10)))
        await wait_until(lambda: platform.weights["shop"].candidate_weight == 10)

        rollout = await controller.abort_rollout("shop", "误发布")

        assert rollout.state == RolloutState.ABORTED
        assert rollout.reason == "OperatorAbort"
        assert rollout.current_weight == 0
        assert platform.weights["shop"] == TrafficWeight(100, 0)
        assert harness.calls == []

    async def test_abort_during_gate(self, platform):
        """测试门禁执行期间中止，迟到的结论被丢弃"""
        harness = FakeHarness(delay=10)
        controller = RolloutController(platform, harness=harness, store=RolloutStore())

        await controller.start_rollout(make_request(Strategy.BLUE_GREEN, thresholds=P95))
        await wait_until(lambda: len(harness.calls) == 1)

        rollout = await controller.abort_rollout("shop")

        assert rollout.state == RolloutState.ABORTED
        assert rollout.entries(HistoryKind.GATE_PASS) == []
        assert rollout.entries(HistoryKind.GATE_FAIL) == []

    async def test_abort_without_active_rollout(self, controller):
        with pytest.raises(NotFoundError):
            await controller.abort_rollout("shop")

    async def test_shutdown_aborts_active(self, controller):
        """测试关闭时中止进行中的发布"""
        await controller.start_rollout(make_request(options=fast_options(bake_time=10)))

        await controller.shutdown()

        assert controller.get_rollout_status("shop").state == RolloutState.ABORTED


class TestSubmission:
    """提交校验测试"""

    async def test_conflict(self, controller):
        """测试同一应用的第二个发布被拒绝"""
        first = await controller.start_rollout(make_request(options=fast_options(bake_time=10)))

        with pytest.raises(ConflictError) as exc_info:
            await controller.start_rollout(make_request())

        assert exc_info.value.rollout_id == first.id
        await controller.abort_rollout("shop")

    async def test_concurrent_submissions(self, controller):
        """测试并发提交只有一个成功"""
        results = await asyncio.gather(
            controller.start_rollout(make_request(options=fast_options(bake_time=10))),
            controller.start_rollout(make_request(options=fast_options(bake_time=10))),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ConflictError) for r in results) == 1
        await controller.abort_rollout("shop")

    async def test_other_app_not_blocked(self, controller, platform):
        platform.register("cart", "v1", stable=True)
        platform.register("cart", "v2")
        await controller.start_rollout(make_request(options=fast_options(bake_time=10)))

        other = await controller.start_rollout(RolloutRequest(
            app_name="cart", candidate_version="v2", strategy=Strategy.ROLLING, options=fast_options()
        ))

        assert other.app_name == "cart"
        await controller.abort_rollout("shop")
        await controller.wait_for_result("cart")

    async def test_noop(self, controller):
        """测试候选版本与稳定版本相同"""
        with pytest.raises(NoOpError):
            await controller.start_rollout(make_request(stable_version="v2"))

        assert controller.list_rollouts() == []

    async def test_noop_from_platform(self, controller):
        request = make_request()
        request.candidate_version = "v1"

        with pytest.raises(NoOpError):
            await controller.start_rollout(request)

    async def test_thresholds_without_harness(self, platform):
        """测试声明了阈值但未配置压测系统"""
        controller = RolloutController(platform, store=RolloutStore())

        with pytest.raises(ValidationError):
            await controller.start_rollout(make_request(thresholds=P95))

    async def test_ungated_thresholds_without_harness(self, platform):
        """测试滚动发布不含门禁步骤，未配置压测系统也可提交"""
        controller = RolloutController(platform, store=RolloutStore())

        await controller.start_rollout(make_request(Strategy.ROLLING, thresholds=P95))
        rollout = await controller.wait_for_result("shop")

        assert rollout.state == RolloutState.SUCCEEDED
        assert rollout.entries(HistoryKind.GATE_PASS) == []

    async def test_invalid_canary_weights(self, controller):
        with pytest.raises(ValidationError):
            await controller.start_rollout(make_request(canary_weights=[50, 10, 100]))

    async def test_unknown_stable_version(self, controller):
        request = make_request()
        request.app_name = "unknown"

        with pytest.raises(ValidationError):
            await controller.start_rollout(request)


class TestQueries:
    """查询接口测试"""

    async def test_status_is_snapshot(self, controller):
        """测试状态查询返回快照"""
        await controller.start_rollout(make_request(options=fast_options(bake_time=10)))

        snapshot = controller.get_rollout_status("shop")
        snapshot.history.clear()

        assert controller.get_rollout_status("shop").history is not snapshot.history
        await controller.abort_rollout("shop")

    async def test_status_unknown_app(self, controller):
        with pytest.raises(NotFoundError):
            controller.get_rollout_status("nothing")

    async def test_list_rollouts(self, controller, platform):
        await controller.start_rollout(make_request(Strategy.ROLLING))
        await controller.wait_for_result("shop")

        rollouts = controller.list_rollouts("shop")

        assert len(rollouts) == 1
        assert rollouts[0].state == RolloutState.SUCCEEDED

    async def test_wait_for_result_timeout(self, controller):
        await controller.start_rollout(make_request(options=fast_options(bake_time=10)))

        with pytest.raises(asyncio.TimeoutError):
            await controller.wait_for_result("shop", timeout=0.02)

        await controller.abort_rollout("shop")
