"""
健康探针 - 连续成功判定、观察窗口轮询、宽限期
Health Probe - Consecutive Success Verdict, Bake Window Polling, Grace Period
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

import httpx
import structlog

from .exceptions import HealthDegradedError
from .models import HealthVerdict, utcnow
from .platform import Platform

logger = structlog.get_logger()


# ==================== 健康信号来源 ====================

class HealthSource(ABC):
    """健康信号来源基类"""

    @abstractmethod
    async def probe(self, app_name: str, version: str) -> bool:
        """单次检查，返回是否健康"""
        pass


class PlatformHealthSource(HealthSource):
    """读取平台的就绪/存活信号"""

    def __init__(self, platform: Platform):
        self.platform = platform

    async def probe(self, app_name: str, version: str) -> bool:
        return await self.platform.is_healthy(app_name, version)


class HTTPHealthSource(HealthSource):
    """HTTP 健康检查（等价于 curl -f .../health）"""

    def __init__(
        self,
        url_template: str,
        expected_status: int = 200,
        expected_body_contains: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.url_template = url_template
        self.expected_status = expected_status
        self.expected_body_contains = expected_body_contains
        self.timeout = timeout
        self._client = client

    def url_for(self, app_name: str, version: str) -> str:
        return self.url_template.format(app_name=app_name, version=version)

    async def probe(self, app_name: str, version: str) -> bool:
        url = self.url_for(app_name, version)

        if self._client is not None:
            response = await self._client.get(url, timeout=self.timeout)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, timeout=self.timeout)

        if response.status_code != self.expected_status:
            logger.debug("健康检查状态码异常", url=url, status_code=response.status_code)
            return False
        if self.expected_body_contains:
            return self.expected_body_contains in response.text
        return True

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()


# ==================== 健康探针 ====================

@dataclass
class _ProbeCounter:
    successes: int = 0
    failures: int = 0
    last_checked_at: Optional[datetime] = None


async def wait_or_cancelled(event: Optional[asyncio.Event], timeout: float) -> bool:
    """等待 timeout 秒，期间 event 被置位则提前返回 True"""
    if event is None:
        await asyncio.sleep(timeout)
        return False
    try:
        await asyncio.wait_for(event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


class HealthProbe:
    """
    健康探针

    最近 success_threshold 次检查全部成功才判定为健康；单次失败只
    清零连续成功计数，连续失败达到 max_consecutive_failures 才会
    触发回滚。
    """

    def __init__(
        self,
        source: HealthSource,
        success_threshold: int = 3,
        max_consecutive_failures: int = 3,
        check_timeout: float = 10.0
    ):
        self.source = source
        self.success_threshold = success_threshold
        self.max_consecutive_failures = max_consecutive_failures
        self.check_timeout = check_timeout
        self._counters: Dict[Tuple[str, str], _ProbeCounter] = {}

    def reset(self, app_name: str, version: str):
        """清零计数（每一步开始时调用）"""
        self._counters[(app_name, version)] = _ProbeCounter()

    def verdict(self, app_name: str, version: str) -> HealthVerdict:
        counter = self._counters.get((app_name, version), _ProbeCounter())
        return HealthVerdict(
            healthy=counter.successes >= self.success_threshold,
            consecutive_failures=counter.failures,
            consecutive_successes=counter.successes,
            last_checked_at=counter.last_checked_at,
        )

    async def _probe_once(self, app_name: str, version: str) -> bool:
        try:
            return bool(await asyncio.wait_for(
                self.source.probe(app_name, version),
                timeout=self.check_timeout
            ))
        except asyncio.TimeoutError:
            logger.warning("健康检查超时", app_name=app_name, version=version)
            return False
        except Exception as e:
            logger.warning("健康检查异常", app_name=app_name, version=version, error=str(e))
            return False

    async def check(self, app_name: str, version: str) -> HealthVerdict:
        """执行一次检查并返回最新结论"""
        ok = await self._probe_once(app_name, version)

        counter = self._counters.setdefault((app_name, version), _ProbeCounter())
        counter.last_checked_at = utcnow()
        if ok:
            counter.successes += 1
            counter.failures = 0
        else:
            counter.successes = 0
            counter.failures += 1

        return self.verdict(app_name, version)

    async def watch(
        self,
        app_name: str,
        version: str,
        bake_time: float,
        poll_interval: float,
        grace: float = 0.0,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Optional[HealthVerdict]:
        """
        在观察窗口内持续轮询

        窗口结束时结论必须为健康；尚未健康则在宽限期内继续轮询。

        Returns:
            健康结论；cancel_event 被置位时返回 None

        Raises:
            HealthDegradedError: 连续失败超过阈值或宽限期内未恢复
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + bake_time
        hard_deadline = deadline + grace

        self.reset(app_name, version)

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return None

            verdict = await self.check(app_name, version)

            if verdict.consecutive_failures >= self.max_consecutive_failures:
                raise HealthDegradedError(
                    f"{app_name}:{version} 连续 {verdict.consecutive_failures} 次健康检查失败",
                    verdict=verdict,
                    detail=verdict.to_dict()
                )

            now = loop.time()
            if now >= deadline:
                if verdict.healthy:
                    return verdict
                if now >= hard_deadline:
                    raise HealthDegradedError(
                        f"{app_name}:{version} 在宽限期内未恢复健康",
                        verdict=verdict,
                        detail=verdict.to_dict()
                    )

            if await wait_or_cancelled(cancel_event, poll_interval):
                return None
