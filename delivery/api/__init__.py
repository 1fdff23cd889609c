"""
渐进式发布控制器 - API 路由汇总
"""
from fastapi import APIRouter

from .rollouts import router as rollouts_router

api_router = APIRouter()

api_router.include_router(rollouts_router)
