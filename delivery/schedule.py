# 渐进式发布控制器 - 步进计划
"""根据发布策略生成步进计划"""

from typing import List, Optional, Sequence

from .exceptions import ValidationError
from .models import StepSpec, Strategy


def validate_weights(weights: Sequence[int]) -> List[int]:
    """校验权重序列：严格递增、位于1..100、以100结束"""
    if not weights:
        raise ValidationError("权重序列不能为空")

    result = [int(w) for w in weights]
    previous = 0
    for weight in result:
        if not 1 <= weight <= 100:
            raise ValidationError(f"权重必须位于1..100: {weight}")
        if weight <= previous:
            raise ValidationError(f"权重必须严格递增: {list(weights)}")
        previous = weight

    if result[-1] != 100:
        raise ValidationError("最后一步必须切到100%流量")
    return result


def rolling_schedule(bake_time: float, increment: int = 10) -> List[StepSpec]:
    """滚动发布：小步递增，无性能门禁"""
    if not 1 <= increment <= 100:
        raise ValidationError(f"滚动步长无效: {increment}")

    weights = list(range(increment, 100, increment)) + [100]
    return [StepSpec(weight=w, bake_time=bake_time) for w in weights]


def blue_green_schedule(bake_time: float, gated: bool = True) -> List[StepSpec]:
    """蓝绿发布：候选版本在0%流量下通过门禁后一次性切到100%"""
    return [
        StepSpec(weight=0, bake_time=bake_time, requires_performance_gate=gated),
        StepSpec(weight=100, bake_time=bake_time),
    ]


def canary_schedule(
    bake_time: float,
    weights: Sequence[int] = (10, 50, 100),
    gated: bool = True
) -> List[StepSpec]:
    """金丝雀发布：少量递增，除最后的全量步外每步都过门禁"""
    weights = validate_weights(weights)
    return [
        StepSpec(
            weight=w,
            bake_time=bake_time,
            requires_performance_gate=gated and w < 100,
        )
        for w in weights
    ]


def build_schedule(
    strategy: Strategy,
    bake_time: float,
    gated: bool = True,
    canary_weights: Optional[Sequence[int]] = None,
    rolling_increment: int = 10
) -> List[StepSpec]:
    """
    生成步进计划

    Args:
        strategy: 发布策略
        bake_time: 每步观察时间（秒）
        gated: 是否启用性能门禁（声明了阈值且配置了压测系统）
        canary_weights: 金丝雀权重序列
        rolling_increment: 滚动发布步长

    Returns:
        StepSpec 列表
    """
    if strategy == Strategy.ROLLING:
        return rolling_schedule(bake_time, rolling_increment)
    if strategy == Strategy.BLUE_GREEN:
        return blue_green_schedule(bake_time, gated)
    if strategy == Strategy.CANARY:
        return canary_schedule(bake_time, canary_weights or (10, 50, 100), gated)
    raise ValidationError(f"未知的发布策略: {strategy}")
