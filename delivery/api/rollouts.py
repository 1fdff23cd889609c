"""
渐进式发布控制器 - 发布管理 API
"""
import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from ..controller import RolloutController
from ..core.config import Settings
from ..exceptions import ValidationError
from ..models import LoadTestOptions, RolloutOptions, RolloutRequest, Threshold
from ..policy import list_policies, resolve_policy
from .schemas import AbortRequest, ResponseBase, RolloutCreate, ThresholdSchema

router = APIRouter(tags=["发布管理"])


def get_controller(request: Request) -> RolloutController:
    """从应用状态获取控制器"""
    return request.app.state.controller


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def build_request(payload: RolloutCreate, settings: Settings) -> RolloutRequest:
    """
    请求体 -> RolloutRequest

    指定了 policy 时以预设为底，请求中显式给出的字段覆盖预设。
    """
    policy = resolve_policy(payload.policy) if payload.policy else None

    strategy = payload.strategy or (policy.strategy if policy else None)
    if strategy is None:
        raise ValidationError("缺少发布策略（strategy 或 policy）")

    if payload.thresholds is not None:
        thresholds = [
            Threshold(metric=t.metric, operator=t.operator, limit=t.limit)
            if isinstance(t, ThresholdSchema) else Threshold.parse(t)
            for t in payload.thresholds
        ]
    else:
        thresholds = list(policy.thresholds) if policy else []

    if payload.load_test is not None:
        load_test = LoadTestOptions(
            virtual_users=payload.load_test.virtual_users,
            duration=payload.load_test.duration,
        )
    elif policy is not None:
        load_test = LoadTestOptions(
            virtual_users=policy.load_test.virtual_users,
            duration=policy.load_test.duration,
        )
    else:
        load_test = LoadTestOptions(
            virtual_users=settings.LOAD_TEST_VIRTUAL_USERS,
            duration=settings.LOAD_TEST_DURATION,
        )

    canary_weights = payload.canary_weights
    if canary_weights is None and policy is not None and policy.canary_weights:
        canary_weights = list(policy.canary_weights)

    overrides = {}
    if policy is not None:
        overrides.update(
            bake_time=policy.bake_time,
            max_consecutive_failures=policy.max_consecutive_failures,
        )
    if payload.options is not None:
        overrides.update(payload.options.model_dump(exclude_none=True))

    return RolloutRequest(
        app_name=payload.app_name,
        candidate_version=payload.candidate_version,
        strategy=strategy,
        thresholds=thresholds,
        stable_version=payload.stable_version,
        canary_weights=canary_weights,
        load_test=load_test,
        options=RolloutOptions.from_settings(settings, **overrides),
        workload_spec=payload.workload_spec,
        policy=payload.policy,
        requested_by=payload.requested_by,
    )


@router.post("/rollouts", status_code=status.HTTP_202_ACCEPTED, response_model=ResponseBase)
async def start_rollout(
    payload: RolloutCreate,
    controller: RolloutController = Depends(get_controller),
    settings: Settings = Depends(get_app_settings)
):
    """提交发布"""
    rollout = await controller.start_rollout(build_request(payload, settings))
    return ResponseBase(message="发布已提交", data=rollout.to_dict())


@router.get("/rollouts", response_model=ResponseBase)
async def list_rollouts(
    app_name: Optional[str] = Query(None, description="应用名"),
    controller: RolloutController = Depends(get_controller)
):
    """发布列表"""
    rollouts = controller.list_rollouts(app_name)
    return ResponseBase(data=[r.to_dict() for r in rollouts])


@router.get("/rollouts/{app_name}", response_model=ResponseBase)
async def get_rollout_status(
    app_name: str,
    controller: RolloutController = Depends(get_controller)
):
    """最近一次发布状态"""
    rollout = controller.get_rollout_status(app_name)
    return ResponseBase(data=rollout.to_dict())


@router.post("/rollouts/{app_name}/abort", response_model=ResponseBase)
async def abort_rollout(
    app_name: str,
    payload: Optional[AbortRequest] = None,
    controller: RolloutController = Depends(get_controller)
):
    """中止发布"""
    reason = payload.reason if payload else "manual"
    rollout = await controller.abort_rollout(app_name, reason)
    return ResponseBase(message="发布已中止", data=rollout.to_dict())


@router.get("/rollouts/{app_name}/result")
async def wait_for_result(
    app_name: str,
    timeout: float = Query(30, gt=0, le=3600, description="最长等待秒数"),
    controller: RolloutController = Depends(get_controller)
):
    """等待发布结束"""
    try:
        rollout = await controller.wait_for_result(app_name, timeout=timeout)
    except asyncio.TimeoutError:
        snapshot = controller.get_rollout_status(app_name)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={
                "code": "InProgress",
                "message": "发布尚未结束",
                "data": snapshot.to_dict()
            }
        )
    return ResponseBase(data=rollout.to_dict())


@router.get("/policies", response_model=ResponseBase)
async def get_policies():
    """发布策略预设"""
    return ResponseBase(data=[p.to_dict() for p in list_policies()])
