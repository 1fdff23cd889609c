"""
渐进式发布控制器 - 配置模块
"""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置"""

    # 基础配置
    APP_NAME: str = "渐进式发布控制器"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    API_PREFIX: str = "/api/v1"

    # 服务器配置
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # 日志配置
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"
    LOG_FILE: Optional[str] = None
    # 每条日志附带的服务标识，多实例部署时区分来源
    SERVICE_NAME: str = "delivery-controller"

    # 观察窗口（秒）
    BAKE_TIME_SECONDS: float = 60.0
    HEALTH_POLL_INTERVAL: float = 10.0
    # 观察期结束后等待恢复健康的宽限期，默认等于一个观察窗口
    HEALTH_GRACE_SECONDS: Optional[float] = None
    HEALTH_SUCCESS_THRESHOLD: int = 3
    MAX_CONSECUTIVE_FAILURES: int = 3

    # 性能门禁
    GATE_TIMEOUT_MARGIN: float = 120.0
    GATE_TIMEOUT_MIN: float = 300.0
    LOAD_TEST_VIRTUAL_USERS: int = 10
    LOAD_TEST_DURATION: float = 120.0

    # 候选版本就绪等待
    READY_TIMEOUT: float = 300.0

    # 流量适配器重试
    ADAPTER_MAX_RETRIES: int = 3
    ADAPTER_BASE_DELAY: float = 1.0
    ADAPTER_MAX_DELAY: float = 30.0
    WEIGHT_TOLERANCE: int = 1
    WEIGHT_VERIFY_ATTEMPTS: int = 3

    # 旧版本下线前的排空时间（秒）
    SCALE_DOWN_DELAY: float = 60.0

    # 步进计划
    ROLLING_INCREMENT: int = 10
    CANARY_WEIGHTS: List[int] = [10, 50, 100]

    # 发布历史
    HISTORY_FILE: Optional[str] = None
    HISTORY_LIMIT: int = 50

    # 通知
    SLACK_WEBHOOK_URL: Optional[str] = Field(default=None)
    SLACK_CHANNEL: str = "#devops-alerts"

    # k6 压测
    K6_BINARY: str = "k6"
    K6_SCRIPT: Optional[str] = None
    K6_TARGET_URL_TEMPLATE: str = "http://{app_name}-{version}.internal"
    K6_RESULTS_DIR: str = "./performance-results"

    # HTTP 健康检查（为空时使用平台就绪状态）
    HEALTH_URL_TEMPLATE: Optional[str] = None

    class Config:
        env_prefix = "DELIVERY_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()


settings = get_settings()
