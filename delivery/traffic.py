# 渐进式发布控制器 - 流量管理
"""流量权重适配器：幂等写入、回读校验、顺序执行"""

import asyncio
from typing import Dict, Optional

import structlog

from .exceptions import AdapterError
from .models import TrafficWeight
from .platform import Platform
from .retry import AsyncRetrier

logger = structlog.get_logger()


class TrafficRouter:
    """
    流量路由适配器

    对平台流量原语的薄封装。除重试退避外不持有状态；同一应用的
    写入通过锁串行化，上一次写入回读确认（或确定失败）之前不会
    发出下一次写入。
    """

    def __init__(
        self,
        platform: Platform,
        retrier: Optional[AsyncRetrier] = None,
        tolerance: int = 1,
        verify_attempts: int = 3,
        locks: Optional[Dict[str, asyncio.Lock]] = None
    ):
        self.platform = platform
        self.retrier = retrier or AsyncRetrier()
        self.tolerance = tolerance
        self.verify_attempts = verify_attempts
        # 可在多个路由实例间共享
        self._locks = locks if locks is not None else {}

    def _lock_for(self, app_name: str) -> asyncio.Lock:
        lock = self._locks.get(app_name)
        if lock is None:
            lock = self._locks[app_name] = asyncio.Lock()
        return lock

    def _within_tolerance(self, actual: TrafficWeight, target: TrafficWeight) -> bool:
        return abs(actual.candidate_weight - target.candidate_weight) <= self.tolerance

    async def get_weights(self, app_name: str) -> TrafficWeight:
        """读取当前权重"""
        try:
            stable, candidate = await self.retrier.execute(
                lambda: self.platform.get_weights(app_name),
                action="读取流量权重"
            )
            return TrafficWeight(stable, candidate)
        except AdapterError:
            raise
        except Exception as e:
            raise AdapterError(
                f"读取 {app_name} 流量权重失败: {e}",
                detail={"app_name": app_name}
            ) from e

    async def _write(self, app_name: str, target: TrafficWeight):
        try:
            await self.retrier.execute(
                lambda: self.platform.set_weights(
                    app_name, target.stable_weight, target.candidate_weight
                ),
                action="写入流量权重"
            )
        except Exception as e:
            raise AdapterError(
                f"写入 {app_name} 流量权重失败: {e}",
                detail={"app_name": app_name, **target.to_dict()}
            ) from e

    async def set_weights(
        self,
        app_name: str,
        stable_weight: int,
        candidate_weight: int
    ) -> TrafficWeight:
        """
        设置流量权重

        当前回读值已等于目标时不产生任何平台写入。写入后回读，
        偏差超过容差则重新写入，校验次数耗尽抛出 AdapterError。

        Returns:
            回读确认的权重
        """
        target = TrafficWeight(stable_weight, candidate_weight)

        async with self._lock_for(app_name):
            current = await self.get_weights(app_name)
            if current == target:
                logger.debug("权重未变化，跳过写入", app_name=app_name, **target.to_dict())
                return current

            actual = current
            for attempt in range(1, self.verify_attempts + 1):
                await self._write(app_name, target)
                actual = await self.get_weights(app_name)

                if self._within_tolerance(actual, target):
                    logger.info(
                        "流量权重已更新",
                        app_name=app_name,
                        stable_weight=actual.stable_weight,
                        candidate_weight=actual.candidate_weight
                    )
                    return actual

                logger.warning(
                    "权重回读不一致",
                    app_name=app_name,
                    attempt=attempt,
                    expected=target.candidate_weight,
                    actual=actual.candidate_weight
                )

            raise AdapterError(
                f"{app_name} 流量权重回读校验失败: 期望 {target.candidate_weight}, "
                f"实际 {actual.candidate_weight}",
                detail={
                    "app_name": app_name,
                    "expected": target.to_dict(),
                    "actual": actual.to_dict(),
                }
            )
