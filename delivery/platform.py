# 渐进式发布控制器 - 平台协作方
"""编排平台接口：工作负载声明、就绪等待、流量权重原语"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog

from .models import TrafficWeight, utcnow

logger = structlog.get_logger()


class Platform(ABC):
    """
    编排平台协作方

    控制器不构造也不修改工作负载定义，只通过本接口声明版本、
    等待就绪、调整两个版本之间的流量权重。
    """

    @abstractmethod
    async def apply_workload(self, app_name: str, version: str, spec: Dict[str, Any]) -> None:
        """声明一个版本的工作负载"""

    @abstractmethod
    async def wait_ready(self, app_name: str, version: str, timeout: float) -> bool:
        """等待版本就绪，超时返回 False"""

    @abstractmethod
    async def current_version(self, app_name: str) -> Optional[str]:
        """当前承载流量的稳定版本"""

    @abstractmethod
    async def assign_versions(self, app_name: str, stable_version: str, candidate_version: str) -> None:
        """绑定流量原语中稳定/候选两条轨道对应的版本"""

    @abstractmethod
    async def is_healthy(self, app_name: str, version: str) -> bool:
        """版本的就绪/存活信号"""

    @abstractmethod
    async def set_weights(self, app_name: str, stable_weight: int, candidate_weight: int) -> None:
        """设置流量权重"""

    @abstractmethod
    async def get_weights(self, app_name: str) -> Tuple[int, int]:
        """读取流量权重 (stable, candidate)"""

    @abstractmethod
    async def retire_workload(self, app_name: str, version: str, drain_seconds: float) -> None:
        """标记旧版本在排空后缩容"""


@dataclass
class WorkloadRecord:
    """内存平台中的工作负载"""
    version: str
    spec: Dict[str, Any] = field(default_factory=dict)
    ready: bool = True
    healthy: bool = True
    retired_at: Optional[datetime] = None
    drain_seconds: float = 0.0


class InMemoryPlatform(Platform):
    """
    内存平台实现

    用于演练（dry run）与测试：记录每次权重写入，便于核对
    控制器实际对平台造成的变更。
    """

    def __init__(self):
        self.workloads: Dict[str, Dict[str, WorkloadRecord]] = {}
        self.weights: Dict[str, TrafficWeight] = {}
        self.tracks: Dict[str, Tuple[str, str]] = {}
        self.stable_versions: Dict[str, str] = {}
        # 权重写入记录 [(app_name, stable, candidate)]
        self.weight_writes: List[Tuple[str, int, int]] = []

    def register(
        self,
        app_name: str,
        version: str,
        stable: bool = False,
        ready: bool = True,
        healthy: bool = True
    ) -> WorkloadRecord:
        """登记已存在的版本"""
        record = WorkloadRecord(version=version, ready=ready, healthy=healthy)
        self.workloads.setdefault(app_name, {})[version] = record
        if stable:
            self.stable_versions[app_name] = version
            self.weights.setdefault(app_name, TrafficWeight(100, 0))
        return record

    def set_healthy(self, app_name: str, version: str, healthy: bool):
        self._record(app_name, version).healthy = healthy

    def _record(self, app_name: str, version: str) -> WorkloadRecord:
        try:
            return self.workloads[app_name][version]
        except KeyError:
            raise LookupError(f"工作负载不存在: {app_name}:{version}") from None

    async def apply_workload(self, app_name: str, version: str, spec: Dict[str, Any]) -> None:
        record = self.workloads.setdefault(app_name, {}).get(version)
        if record is None:
            self.register(app_name, version)
            record = self._record(app_name, version)
        record.spec = dict(spec)
        logger.info("声明工作负载", app_name=app_name, version=version)

    async def wait_ready(self, app_name: str, version: str, timeout: float) -> bool:
        record = self.workloads.get(app_name, {}).get(version)
        if record is None:
            return False
        if record.ready:
            return True
        await asyncio.sleep(timeout)
        return record.ready

    async def current_version(self, app_name: str) -> Optional[str]:
        return self.stable_versions.get(app_name)

    async def assign_versions(self, app_name: str, stable_version: str, candidate_version: str) -> None:
        self.tracks[app_name] = (stable_version, candidate_version)
        self.weights.setdefault(app_name, TrafficWeight(100, 0))

    async def is_healthy(self, app_name: str, version: str) -> bool:
        return self._record(app_name, version).healthy

    async def set_weights(self, app_name: str, stable_weight: int, candidate_weight: int) -> None:
        self.weights[app_name] = TrafficWeight(stable_weight, candidate_weight)
        self.weight_writes.append((app_name, stable_weight, candidate_weight))

    async def get_weights(self, app_name: str) -> Tuple[int, int]:
        weight = self.weights.get(app_name, TrafficWeight(100, 0))
        return weight.stable_weight, weight.candidate_weight

    async def retire_workload(self, app_name: str, version: str, drain_seconds: float) -> None:
        record = self._record(app_name, version)
        record.retired_at = utcnow()
        record.drain_seconds = drain_seconds

        # 候选版本接管为新的稳定版本
        stable, candidate = self.tracks.get(app_name, (version, version))
        if stable == version:
            self.stable_versions[app_name] = candidate
        logger.info(
            "旧版本已标记缩容",
            app_name=app_name,
            version=version,
            drain_seconds=drain_seconds
        )
