# 渐进式发布控制器 - 状态机
"""
发布状态机与运维接口

每个进行中的发布由一个后台任务推进：
Pending -> Progressing -> Succeeded，任一环节失败经 RollingBack
进入 RolledBack，人工中止经 RollingBack 进入 Aborted。
"""

import asyncio
import dataclasses
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from .core.config import Settings, get_settings
from .exceptions import (
    AdapterError,
    ConflictError,
    GateTimeoutError,
    HealthDegradedError,
    NoOpError,
    NotFoundError,
    OperatorAbort,
    PerformanceGateFailed,
    RolloutFailedError,
    ValidationError,
)
from .gate import PerformanceGate
from .harness import LoadTestHarness
from .health import HealthProbe, HealthSource, PlatformHealthSource
from .models import (
    HistoryKind,
    Rollout,
    RolloutOptions,
    RolloutRequest,
    RolloutState,
    StepSpec,
)
from .notify import LoggingSink, Notifier
from .platform import Platform
from .retry import AsyncRetrier
from .rollback import RollbackManager
from .schedule import build_schedule
from .store import RolloutStore
from .traffic import TrafficRouter

logger = structlog.get_logger()


@dataclass
class _Run:
    """单个发布的运行上下文"""
    rollout: Rollout
    options: RolloutOptions
    router: TrafficRouter
    probe: HealthProbe
    retrier: AsyncRetrier
    workload_spec: Optional[Dict[str, Any]] = None
    abort_event: asyncio.Event = dataclasses.field(default_factory=asyncio.Event)
    abort_reason: Optional[str] = None
    task: Optional[asyncio.Task] = None


class RolloutController:
    """
    发布控制器

    对外提供 start_rollout / abort_rollout / get_rollout_status /
    wait_for_result / list_rollouts。同一应用同一时间只允许一个
    未结束的发布，提交检查在锁内完成。
    """

    def __init__(
        self,
        platform: Platform,
        health_source: Optional[HealthSource] = None,
        harness: Optional[LoadTestHarness] = None,
        notifier: Optional[Notifier] = None,
        store: Optional[RolloutStore] = None,
        settings: Optional[Settings] = None,
        rollback_manager: Optional[RollbackManager] = None
    ):
        self.settings = settings or get_settings()
        self.platform = platform
        self.health_source = health_source or PlatformHealthSource(platform)
        self.gate = PerformanceGate(harness) if harness is not None else None
        self.notifier = notifier or Notifier([LoggingSink()])
        self.store = store or RolloutStore(
            history_file=self.settings.HISTORY_FILE,
            history_limit=self.settings.HISTORY_LIMIT
        )
        self.rollback_manager = rollback_manager or RollbackManager(self.notifier)

        self._lock = asyncio.Lock()
        self._runs: Dict[str, _Run] = {}
        self._router_locks: Dict[str, asyncio.Lock] = {}
        self._stable_versions: Dict[str, str] = {}

    # ==================== 运维接口 ====================

    async def start_rollout(self, request: RolloutRequest) -> Rollout:
        """
        提交发布

        校验与冲突检查同步完成，之后由后台任务推进。

        Raises:
            ValidationError: 请求无效（含 NoOpError）
            ConflictError: 该应用已有未结束的发布
        """
        request.validate()

        if request.options is not None:
            options = dataclasses.replace(request.options)
        else:
            options = RolloutOptions.from_settings(self.settings)
        if request.canary_weights:
            options.canary_weights = list(request.canary_weights)
        options.validate()

        schedule = build_schedule(
            request.strategy,
            options.bake_time,
            gated=bool(request.thresholds),
            canary_weights=options.canary_weights,
            rolling_increment=options.rolling_increment,
        )
        gated = any(s.requires_performance_gate for s in schedule)

        if gated and self.gate is None:
            raise ValidationError("声明了性能阈值但未配置压测系统")
        if request.thresholds and not gated:
            logger.warning(
                "发布策略不含门禁步骤，性能阈值不生效",
                app_name=request.app_name,
                strategy=request.strategy.value
            )

        async with self._lock:
            active = self.store.active(request.app_name)
            if active is not None:
                raise ConflictError(request.app_name, active.id)

            stable_version = await self._resolve_stable(request)
            if stable_version == request.candidate_version:
                raise NoOpError(detail={
                    "app_name": request.app_name,
                    "version": stable_version,
                })

            rollout = Rollout(
                app_name=request.app_name,
                strategy=request.strategy,
                stable_version=stable_version,
                candidate_version=request.candidate_version,
                thresholds=list(request.thresholds),
                schedule=schedule,
                load_test=request.load_test,
                requested_by=request.requested_by,
            )
            retrier = AsyncRetrier.from_options(options)
            run = _Run(
                rollout=rollout,
                options=options,
                retrier=retrier,
                router=TrafficRouter(
                    self.platform,
                    retrier=retrier,
                    tolerance=options.weight_tolerance,
                    verify_attempts=options.weight_verify_attempts,
                    locks=self._router_locks,
                ),
                probe=HealthProbe(
                    self.health_source,
                    success_threshold=options.success_threshold,
                    max_consecutive_failures=options.max_consecutive_failures,
                ),
                workload_spec=request.workload_spec,
            )
            self.store.add(rollout)
            self._runs[rollout.app_name] = run
            run.task = asyncio.create_task(self._execute(run), name=f"rollout-{rollout.id}")

        logger.info(
            "发布已提交",
            app_name=rollout.app_name,
            rollout_id=rollout.id,
            strategy=rollout.strategy.value,
            stable_version=stable_version,
            candidate_version=rollout.candidate_version,
            policy=request.policy,
            steps=[s.weight for s in schedule]
        )
        self.notifier.notify(rollout, "submitted")
        return rollout.snapshot()

    async def abort_rollout(self, app_name: str, reason: str = "manual") -> Rollout:
        """中止进行中的发布，等待回滚完成后返回终态快照"""
        run = self._runs.get(app_name)
        if run is None or run.rollout.is_terminal:
            raise NotFoundError("进行中的发布", app_name)

        logger.warning("收到中止请求", app_name=app_name, rollout_id=run.rollout.id, reason=reason)
        if run.abort_reason is None:
            run.abort_reason = reason
        run.abort_event.set()

        await asyncio.shield(run.task)
        return run.rollout.snapshot()

    def get_rollout_status(self, app_name: str) -> Rollout:
        """最近一次发布的快照"""
        rollout = self.store.latest(app_name)
        if rollout is None:
            raise NotFoundError("发布", app_name)
        return rollout.snapshot()

    async def wait_for_result(self, app_name: str, timeout: Optional[float] = None) -> Rollout:
        """
        等待发布结束

        Raises:
            RolloutFailedError: 发布以回滚或中止告终
            asyncio.TimeoutError: 超时仍未结束
        """
        run = self._runs.get(app_name)
        if run is not None and run.task is not None:
            await asyncio.wait_for(asyncio.shield(run.task), timeout=timeout)

        rollout = self.get_rollout_status(app_name)
        if rollout.state != RolloutState.SUCCEEDED:
            raise RolloutFailedError(
                message=f"发布 {rollout.id} 以 {rollout.state.value} 结束: {rollout.reason}",
                detail=rollout.to_dict()
            )
        return rollout

    def list_rollouts(self, app_name: Optional[str] = None) -> List[Rollout]:
        return [r.snapshot() for r in self.store.list(app_name)]

    async def shutdown(self, timeout: float = 30.0):
        """中止所有进行中的发布并等待回滚完成"""
        runs = [run for run in self._runs.values() if not run.rollout.is_terminal]
        for run in runs:
            if run.abort_reason is None:
                run.abort_reason = "shutdown"
            run.abort_event.set()

        tasks = [run.task for run in runs if run.task is not None]
        if tasks:
            logger.info("等待进行中的发布回滚", count=len(tasks))
            await asyncio.wait(tasks, timeout=timeout)
        await self.notifier.drain()

    # ==================== 执行 ====================

    async def _resolve_stable(self, request: RolloutRequest) -> str:
        if request.stable_version:
            return request.stable_version
        stable = self._stable_versions.get(request.app_name)
        if stable:
            return stable
        try:
            stable = await self.platform.current_version(request.app_name)
        except Exception as e:
            raise AdapterError(f"读取 {request.app_name} 当前版本失败: {e}") from e
        if not stable:
            raise ValidationError(
                f"无法确定 {request.app_name} 的稳定版本，请在请求中指定 stable_version"
            )
        return stable

    async def _execute(self, run: _Run):
        rollout = run.rollout
        structlog.contextvars.bind_contextvars(app_name=rollout.app_name, rollout_id=rollout.id)

        try:
            await self._prepare(run)
            await self._progress(run)
            await self._finish(run)
        except OperatorAbort as e:
            await self._rollback(run, type(e).__name__, message=run.abort_reason or "", aborted=True)
        except (PerformanceGateFailed, HealthDegradedError) as e:
            await self._rollback(run, type(e).__name__, message=e.message, verdict=e.verdict)
        except AdapterError as e:
            await self._rollback(run, type(e).__name__, message=e.message)
        except Exception as e:
            logger.exception("发布执行异常", error=str(e))
            if not rollout.is_terminal:
                await self._rollback(run, type(e).__name__, message=str(e))
        finally:
            if rollout.is_terminal:
                self.store.finalize(rollout)
            if self._runs.get(rollout.app_name) is run:
                del self._runs[rollout.app_name]
            logger.info("发布结束", state=rollout.state.value, reason=rollout.reason)
            structlog.contextvars.unbind_contextvars("app_name", "rollout_id")

    async def _rollback(self, run: _Run, reason: str, **kwargs):
        try:
            await self.rollback_manager.rollback(run.rollout, reason, router=run.router, **kwargs)
        except AdapterError as e:
            logger.error("回滚写入未确认，需要人工介入", reason=reason, error=e.message)

    def _check_abort(self, run: _Run):
        if run.abort_event.is_set():
            raise OperatorAbort()

    async def _race(self, run: _Run, awaitable: Awaitable[Any]) -> Any:
        """等待 awaitable，中止信号先到则取消它并抛出 OperatorAbort"""
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(run.abort_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("中止后丢弃的结果", error=str(e))
        raise OperatorAbort()

    async def _platform_call(self, run: _Run, action: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await run.retrier.execute(fn, action=action)
        except Exception as e:
            raise AdapterError(
                f"{action}失败: {e}",
                detail={"app_name": run.rollout.app_name, "action": action}
            ) from e

    async def _prepare(self, run: _Run):
        """Pending：确认候选版本可部署，0% 流量，绑定版本"""
        rollout = run.rollout
        app, candidate = rollout.app_name, rollout.candidate_version

        if run.workload_spec is not None:
            await self._platform_call(
                run, "声明工作负载",
                lambda: self.platform.apply_workload(app, candidate, run.workload_spec)
            )
            self._check_abort(run)

        ready = await self._race(run, self._platform_call(
            run, "等待候选版本就绪",
            lambda: self.platform.wait_ready(app, candidate, run.options.ready_timeout)
        ))
        if not ready:
            raise AdapterError(
                f"候选版本 {candidate} 在 {run.options.ready_timeout:g} 秒内未就绪",
                detail={"app_name": app, "version": candidate}
            )

        await self._platform_call(
            run, "绑定版本",
            lambda: self.platform.assign_versions(app, rollout.stable_version, candidate)
        )
        await run.router.set_weights(app, 100, 0)
        self._check_abort(run)

        rollout.transition(RolloutState.PROGRESSING)
        self.notifier.notify(rollout)
        logger.info("候选版本就绪，开始推进")

    async def _progress(self, run: _Run):
        """Progressing：逐步调整权重、观察、过门禁"""
        rollout = run.rollout

        for index, step in enumerate(rollout.schedule):
            self._check_abort(run)
            rollout.step_index = index

            actual = await run.router.set_weights(rollout.app_name, 100 - step.weight, step.weight)
            self._check_abort(run)
            rollout.set_weight(step.weight, f"step-{index}")
            logger.info(
                "进入步骤",
                step=index,
                weight=step.weight,
                actual_weight=actual.candidate_weight,
                gated=step.requires_performance_gate
            )

            await self._bake(run, step)

            if step.requires_performance_gate:
                await self._run_gate(run, index)

    async def _bake(self, run: _Run, step: StepSpec):
        """观察窗口内持续健康检查"""
        rollout = run.rollout
        options = run.options

        try:
            verdict = await run.probe.watch(
                rollout.app_name,
                rollout.candidate_version,
                bake_time=step.bake_time,
                poll_interval=options.poll_interval,
                grace=options.effective_grace,
                cancel_event=run.abort_event,
            )
        except HealthDegradedError as e:
            if rollout.state == RolloutState.PROGRESSING:
                rollout.record(
                    HistoryKind.HEALTH,
                    "HealthDegradedError",
                    **(e.verdict.to_dict() if e.verdict is not None else {})
                )
            raise

        if verdict is None:
            raise OperatorAbort()
        logger.debug("观察窗口通过", weight=step.weight, **verdict.to_dict())

    async def _run_gate(self, run: _Run, index: int):
        """性能门禁，与中止信号竞争"""
        rollout = run.rollout
        timeout = run.options.resolve_gate_timeout(rollout.load_test)

        verdict = await self._race(run, self.gate.evaluate(
            rollout.app_name,
            rollout.candidate_version,
            rollout.thresholds,
            rollout.load_test,
            timeout,
        ))

        if rollout.state != RolloutState.PROGRESSING:
            logger.info("丢弃过期的门禁结论", run_id=verdict.run_id)
            return

        if verdict.passed:
            rollout.record(HistoryKind.GATE_PASS, None, step=index, **verdict.to_dict())
            return

        message = ", ".join(verdict.threshold_violations)
        if verdict.timed_out:
            error = GateTimeoutError(message, verdict=verdict)
        else:
            error = PerformanceGateFailed(message, verdict=verdict)
        rollout.record(HistoryKind.GATE_FAIL, type(error).__name__, step=index, **verdict.to_dict())
        raise error

    async def _finish(self, run: _Run):
        """全量后再观察一个窗口，通知平台缩容旧版本"""
        rollout = run.rollout
        options = run.options

        self._check_abort(run)
        await self._bake(run, StepSpec(weight=100, bake_time=options.bake_time))
        self._check_abort(run)

        try:
            await self._platform_call(
                run, "旧版本缩容",
                lambda: self.platform.retire_workload(
                    rollout.app_name, rollout.stable_version, options.scale_down_delay
                )
            )
            rollout.record(
                HistoryKind.SCALE_DOWN,
                None,
                version=rollout.stable_version,
                drain_seconds=options.scale_down_delay,
                confirmed=True
            )
        except AdapterError as e:
            logger.error("旧版本缩容失败", version=rollout.stable_version, error=e.message)
            rollout.record(
                HistoryKind.SCALE_DOWN,
                "AdapterError",
                version=rollout.stable_version,
                drain_seconds=options.scale_down_delay,
                confirmed=False,
                error=e.message
            )

        self._stable_versions[rollout.app_name] = rollout.candidate_version
        rollout.transition(RolloutState.SUCCEEDED)
        self.notifier.notify(rollout)
        logger.info("发布成功", version=rollout.candidate_version)
