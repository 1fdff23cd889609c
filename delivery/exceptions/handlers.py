# 渐进式发布控制器 - 异常处理器
"""FastAPI异常处理器注册"""

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from ..core.config import settings
from .exceptions import DeliveryError

logger = structlog.get_logger()


async def delivery_exception_handler(
    request: Request,
    exc: DeliveryError
) -> JSONResponse:
    """
    发布异常处理器

    Args:
        request: 请求对象
        exc: 发布异常

    Returns:
        JSON响应
    """
    logger.warning(
        "delivery_exception",
        path=request.url.path,
        method=request.method,
        code=exc.code,
        message=exc.message,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """请求验证异常处理器"""
    errors = []

    for error in exc.errors():
        field = ".".join(str(loc) for loc in error.get("loc", []))
        errors.append({
            "field": field,
            "message": error.get("msg", "验证失败"),
            "type": error.get("type", "")
        })

    logger.warning(
        "validation_error",
        path=request.url.path,
        errors=errors
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": "ErrValidation",
            "message": "请求参数验证失败",
            "data": None,
            "errors": errors
        }
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """全局异常处理"""
    logger.error("unhandled_exception", error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": "ErrInternal",
            "message": "服务器内部错误",
            "data": str(exc) if settings.DEBUG else None
        }
    )


def register_exception_handlers(app: FastAPI):
    """注册异常处理器"""
    app.add_exception_handler(DeliveryError, delivery_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
