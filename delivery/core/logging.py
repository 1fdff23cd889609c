# 渐进式发布控制器 - 日志配置
"""
结构化日志配置

发布相关日志通过 contextvars 自动带上 app_name / rollout_id，
这里只负责渲染方式与服务级字段。
"""

import logging
import sys
from typing import Any, Callable, Dict, Optional

import structlog

from .config import Settings

# 发布执行期间反复出现、对排障价值不大的第三方日志
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def add_service_info(service: str, version: str) -> Callable[..., Dict[str, Any]]:
    """为每条日志补充服务名与版本，已显式给出的字段不覆盖"""
    def processor(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service)
        event_dict.setdefault("service_version", version)
        return event_dict
    return processor


def build_processors(json_format: bool, service: str, version: str) -> list:
    processors = [
        structlog.contextvars.merge_contextvars,
        add_service_info(service, version),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def setup_logging(settings: Settings, log_file: Optional[str] = None):
    """
    按配置初始化日志

    Args:
        settings: 读取 LOG_LEVEL / LOG_FORMAT / LOG_FILE / SERVICE_NAME
        log_file: 覆盖 settings.LOG_FILE
    """
    structlog.configure(
        processors=build_processors(
            settings.LOG_FORMAT == "json",
            settings.SERVICE_NAME,
            settings.APP_VERSION,
        ),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = logging.Formatter("%(message)s")
    handlers = [logging.StreamHandler(sys.stdout)]
    log_file = log_file or settings.LOG_FILE
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
