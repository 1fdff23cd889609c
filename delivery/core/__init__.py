# 渐进式发布控制器 - 核心模块
"""配置与日志"""

from .config import Settings, get_settings, settings
from .logging import setup_logging

__all__ = [
    "Settings",
    "get_settings",
    "settings",
    "setup_logging",
]
