# 渐进式发布控制器 - 回滚管理
"""快速回滚：一次写入把流量切回稳定版本"""

import inspect
from typing import Any, Awaitable, Callable, List, Optional, Union

import structlog

from .exceptions import AdapterError
from .models import HistoryKind, Rollout, RolloutState
from .notify import Notifier
from .traffic import TrafficRouter

logger = structlog.get_logger()

# 回滚后的清理钩子，入参为已结束的发布
RollbackHook = Callable[[Rollout], Union[None, Awaitable[None]]]


class RollbackManager:
    """
    回滚管理器

    不删除候选版本的工作负载，只撤回它的流量，保留现场供排查。
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        post_rollback_hooks: Optional[List[RollbackHook]] = None
    ):
        self.notifier = notifier
        self.post_rollback_hooks: List[RollbackHook] = list(post_rollback_hooks or [])

    def add_hook(self, hook: RollbackHook):
        self.post_rollback_hooks.append(hook)

    def _notify(self, rollout: Rollout, reason: Optional[str]):
        if self.notifier is not None:
            self.notifier.notify(rollout, reason)

    async def rollback(
        self,
        rollout: Rollout,
        reason: str,
        *,
        router: TrafficRouter,
        message: str = "",
        verdict: Any = None,
        aborted: bool = False
    ) -> Rollout:
        """
        执行回滚

        Args:
            rollout: 发布
            reason: 回滚原因（异常类名）
            router: 流量路由
            message: 可读的说明
            verdict: 触发回滚的健康/性能结论
            aborted: 是否为人工中止

        Raises:
            AdapterError: 回滚写入失败（发布仍会进入终态）
        """
        log = logger.bind(app_name=rollout.app_name, rollout_id=rollout.id)

        if rollout.state != RolloutState.ROLLING_BACK:
            rollout.transition(RolloutState.ROLLING_BACK, reason, message=message)
            self._notify(rollout, reason)

        log.warning("开始回滚", reason=reason, message=message)

        error: Optional[AdapterError] = None
        try:
            await router.set_weights(rollout.app_name, 100, 0)
        except AdapterError as e:
            error = e
            log.error("回滚写入失败", error=e.message)

        details = {"confirmed": error is None, "message": message}
        if verdict is not None:
            details["verdict"] = verdict.to_dict()
        if error is not None:
            details["error"] = error.message
        rollout.record(HistoryKind.ROLLBACK, reason, **details)

        final_state = RolloutState.ABORTED if aborted else RolloutState.ROLLED_BACK
        rollout.transition(final_state, reason)
        self._notify(rollout, reason)

        if error is not None:
            raise error

        log.info("回滚完成", state=final_state.value)
        await self._run_hooks(rollout)
        return rollout

    async def _run_hooks(self, rollout: Rollout):
        """执行回滚后钩子，失败只记录日志"""
        for hook in self.post_rollback_hooks:
            try:
                result = hook(rollout)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "回滚钩子执行失败",
                    hook=getattr(hook, "__name__", repr(hook)),
                    rollout_id=rollout.id,
                    error=str(e)
                )
