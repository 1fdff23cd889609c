"""
渐进式发布控制器 - 主应用入口
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request

from .api import api_router
from .controller import RolloutController
from .core.config import Settings, get_settings
from .core.logging import setup_logging
from .exceptions.handlers import register_exception_handlers
from .harness import K6Harness
from .health import HTTPHealthSource
from .notify import LoggingSink, Notifier, SlackWebhookSink
from .platform import InMemoryPlatform
from .store import RolloutStore

logger = structlog.get_logger()


def build_controller(settings: Settings) -> RolloutController:
    """按配置组装控制器（默认使用内存平台演练）"""
    sinks = [LoggingSink()]
    if settings.SLACK_WEBHOOK_URL:
        sinks.append(SlackWebhookSink(settings.SLACK_WEBHOOK_URL, channel=settings.SLACK_CHANNEL))

    harness = None
    if settings.K6_SCRIPT:
        harness = K6Harness(
            script=settings.K6_SCRIPT,
            target_url_template=settings.K6_TARGET_URL_TEMPLATE,
            k6_binary=settings.K6_BINARY,
            results_dir=settings.K6_RESULTS_DIR,
        )

    health_source = None
    if settings.HEALTH_URL_TEMPLATE:
        health_source = HTTPHealthSource(settings.HEALTH_URL_TEMPLATE)

    return RolloutController(
        platform=InMemoryPlatform(),
        health_source=health_source,
        harness=harness,
        notifier=Notifier(sinks),
        store=RolloutStore(settings.HISTORY_FILE, settings.HISTORY_LIMIT),
        settings=settings,
    )


def create_app(
    controller: Optional[RolloutController] = None,
    settings: Optional[Settings] = None
) -> FastAPI:
    """创建应用"""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        logger.info("启动发布控制器...", version=settings.APP_VERSION)
        if getattr(app.state, "controller", None) is None:
            app.state.controller = build_controller(settings)

        yield

        await app.state.controller.shutdown()
        logger.info("发布控制器已关闭")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="渐进式发布控制器 - 滚动/蓝绿/金丝雀发布，健康检查与性能门禁，自动回滚",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.controller = controller

    # 请求日志中间件
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """记录请求日志并添加请求ID"""
        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()

        response = await call_next(request)

        process_time = (time.time() - start_time) * 1000

        if request.url.path not in ["/health", "/"]:
            logger.info(
                "request_completed",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                process_time_ms=round(process_time, 2)
            )

        response.headers["X-Process-Time"] = f"{process_time:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app)
    app.include_router(api_router, prefix=settings.API_PREFIX)

    @app.get("/health")
    async def health_check():
        """健康检查接口"""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "service": settings.APP_NAME
        }

    @app.get("/")
    async def root():
        """API根路径"""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health"
        }

    return app


def run():
    """命令行入口"""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        "delivery.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )


app = create_app()


if __name__ == "__main__":
    run()
