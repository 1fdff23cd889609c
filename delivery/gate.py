# 渐进式发布控制器 - 性能门禁
"""调用压测系统并按阈值给出结论"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import structlog

from .harness import LoadTestHarness, LoadTestRequest
from .models import LoadTestOptions, PerformanceVerdict, Threshold, coerce_metric

logger = structlog.get_logger()

GATE_TIMEOUT = "gate-timeout"
GATE_ERROR = "gate-error"


def evaluate_thresholds(
    metrics: Dict[str, Any],
    thresholds: Sequence[Threshold],
    run_id: str = "",
    report_ref: Optional[str] = None
) -> PerformanceVerdict:
    """
    按阈值判定

    指标缺失或非数值视为该指标违规；无违规才算通过。
    """
    violations: List[str] = []
    details: Dict[str, str] = {}
    numeric: Dict[str, float] = {}

    for name, raw in metrics.items():
        value = coerce_metric(raw)
        if value is not None:
            numeric[name] = value

    for threshold in thresholds:
        value = numeric.get(threshold.metric)
        if value is None:
            violations.append(threshold.metric)
            details[threshold.metric] = f"缺少指标或非数值: {threshold}"
        elif not threshold.check(value):
            violations.append(threshold.metric)
            details[threshold.metric] = f"{value:g} 不满足 {threshold}"

    return PerformanceVerdict(
        passed=not violations,
        metrics=numeric,
        threshold_violations=violations,
        run_id=run_id,
        details=details,
        report_ref=report_ref,
    )


class PerformanceGate:
    """性能门禁"""

    def __init__(self, harness: LoadTestHarness):
        self.harness = harness

    async def evaluate(
        self,
        app_name: str,
        version: str,
        thresholds: Sequence[Threshold],
        load_test: LoadTestOptions,
        timeout: float
    ) -> PerformanceVerdict:
        """
        执行门禁

        超时与压测异常都不会抛出，而是给出未通过的结论
        （gate-timeout / gate-error）。
        """
        request = LoadTestRequest(
            app_name=app_name,
            target_version=version,
            thresholds_hint=[str(t) for t in thresholds],
            duration=load_test.duration,
            virtual_users=load_test.virtual_users,
        )

        try:
            report = await asyncio.wait_for(self.harness.run(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("性能门禁超时", app_name=app_name, version=version, timeout=timeout)
            return PerformanceVerdict(
                passed=False,
                threshold_violations=[GATE_TIMEOUT],
                run_id=request.run_id,
                details={GATE_TIMEOUT: f"压测未在 {timeout:g} 秒内返回"},
            )
        except Exception as e:
            logger.error("压测执行失败", app_name=app_name, version=version, error=str(e))
            return PerformanceVerdict(
                passed=False,
                threshold_violations=[GATE_ERROR],
                run_id=request.run_id,
                details={GATE_ERROR: str(e)},
            )

        verdict = evaluate_thresholds(
            report.metrics,
            thresholds,
            run_id=request.run_id,
            report_ref=report.report_ref
        )
        logger.info(
            "性能门禁结论",
            app_name=app_name,
            version=version,
            passed=verdict.passed,
            violations=verdict.threshold_violations
        )
        return verdict
