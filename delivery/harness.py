# 渐进式发布控制器 - 压测系统
"""压测系统接口与 k6 命令行实现"""

import asyncio
import json
import math
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .models import coerce_metric

logger = structlog.get_logger()


@dataclass
class LoadTestRequest:
    """压测请求"""
    app_name: str
    target_version: str
    thresholds_hint: List[str] = field(default_factory=list)
    duration: float = 120.0
    virtual_users: int = 10
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass
class LoadTestReport:
    """压测结果：指标映射 + 报告位置"""
    metrics: Dict[str, Any] = field(default_factory=dict)
    report_ref: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


class LoadTestHarness(ABC):
    """压测系统协作方"""

    @abstractmethod
    async def run(self, request: LoadTestRequest) -> LoadTestReport:
        """执行一次压测"""


# k6 指标别名 -> (k6 指标, 统计项)
K6_ALIASES = {
    "p95_latency": ("http_req_duration", "p(95)"),
    "p99_latency": ("http_req_duration", "p(99)"),
    "avg_latency": ("http_req_duration", "avg"),
    "max_latency": ("http_req_duration", "max"),
    "throughput": ("http_reqs", "rate"),
}


def _rate_value(stats: Dict[str, Any]) -> Optional[float]:
    for key in ("value", "rate"):
        value = coerce_metric(stats.get(key))
        if value is not None:
            return value
    return None


def parse_k6_summary(summary: Dict[str, Any]) -> Dict[str, float]:
    """
    解析 k6 --summary-export 输出

    兼容 summary-export 的扁平格式与 handleSummary 的 values 嵌套格式，
    展开为 "<metric>.<stat>"，并补充常用别名。
    """
    metrics: Dict[str, float] = {}

    for name, stats in (summary.get("metrics") or {}).items():
        if not isinstance(stats, dict):
            continue
        values = stats.get("values") if isinstance(stats.get("values"), dict) else stats
        for stat, raw in values.items():
            value = coerce_metric(raw)
            if value is not None:
                metrics[f"{name}.{stat}"] = value

    raw_metrics = summary.get("metrics") or {}

    def stats_of(name: str) -> Dict[str, Any]:
        stats = raw_metrics.get(name) or {}
        if isinstance(stats.get("values"), dict):
            return stats["values"]
        return stats

    for alias, (name, stat) in K6_ALIASES.items():
        value = coerce_metric(stats_of(name).get(stat))
        if value is not None:
            metrics[alias] = value

    error_rate = _rate_value(stats_of("http_req_failed"))
    if error_rate is not None:
        metrics["error_rate"] = error_rate

    checks_rate = _rate_value(stats_of("checks"))
    if checks_rate is not None:
        metrics["checks_pass_rate"] = checks_rate

    return metrics


class K6Harness(LoadTestHarness):
    """
    k6 压测

    以子进程执行 `k6 run`，通过 --summary-export 导出结果并解析。
    压测被取消（门禁超时或中止）时终止子进程。
    """

    def __init__(
        self,
        script: str,
        target_url_template: str = "http://{app_name}-{version}.internal",
        k6_binary: str = "k6",
        results_dir: str = "./performance-results",
        extra_env: Optional[Dict[str, str]] = None
    ):
        self.script = script
        self.target_url_template = target_url_template
        self.k6_binary = k6_binary
        self.results_dir = Path(results_dir)
        self.extra_env = extra_env or {}

    def target_url(self, request: LoadTestRequest) -> str:
        return self.target_url_template.format(
            app_name=request.app_name,
            version=request.target_version
        )

    def summary_path(self, request: LoadTestRequest) -> Path:
        return self.results_dir / f"{request.app_name}-{request.target_version}-{request.run_id}.json"

    def build_command(self, request: LoadTestRequest) -> List[str]:
        """
        组装 k6 命令行

        时长向上取整到秒，k6 不接受 0s。阈值以逗号拼接后通过
        THRESHOLDS 传给脚本，脚本可据此设置自己的 thresholds。
        """
        command = [
            self.k6_binary, "run",
            "--vus", str(request.virtual_users),
            "--duration", f"{max(1, math.ceil(request.duration))}s",
            "--summary-export", str(self.summary_path(request)),
            "-e", f"TARGET_URL={self.target_url(request)}",
            "-e", f"APP_VERSION={request.target_version}",
        ]
        if request.thresholds_hint:
            command += ["-e", f"THRESHOLDS={','.join(request.thresholds_hint)}"]
        command.append(self.script)
        return command

    async def run(self, request: LoadTestRequest) -> LoadTestReport:
        self.results_dir.mkdir(parents=True, exist_ok=True)
        command = self.build_command(request)
        summary_path = self.summary_path(request)

        logger.info(
            "启动压测",
            app_name=request.app_name,
            version=request.target_version,
            run_id=request.run_id,
            virtual_users=request.virtual_users,
            duration=request.duration
        )

        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **self.extra_env}
        )
        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            logger.warning("压测被取消", run_id=request.run_id)
            raise

        # 阈值未满足时 k6 以 99 退出，结果文件仍然有效
        if process.returncode not in (0, 99):
            raise RuntimeError(
                f"k6 退出码 {process.returncode}: {stderr.decode(errors='replace')[-500:]}"
            )

        with open(summary_path, "r", encoding="utf-8") as f:
            summary = json.load(f)

        metrics = parse_k6_summary(summary)
        logger.info("压测完成", run_id=request.run_id, metrics_count=len(metrics))
        return LoadTestReport(metrics=metrics, report_ref=str(summary_path), raw=summary)
