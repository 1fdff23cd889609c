# 渐进式发布控制器 - 重试策略
"""指数退避重试，供流量适配器与平台调用统一使用"""

import asyncio
from typing import Any, Callable, Coroutine, Optional, Tuple, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class AsyncRetrier:
    """
    异步重试器

    每个发布按自己的重试预算构建一个实例，流量写入、回读和
    平台调用共用这一预算。
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        retryable_exceptions: Tuple[type, ...] = (Exception,)
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.retryable_exceptions = retryable_exceptions

    @classmethod
    def from_options(cls, options: Any) -> "AsyncRetrier":
        """按单次发布的重试预算构建"""
        return cls(
            max_retries=options.adapter_max_retries,
            base_delay=options.adapter_base_delay,
            max_delay=options.adapter_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次重试前的等待时间（attempt 从0开始）"""
        return min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

    async def execute(
        self,
        fn: Callable[[], Coroutine[Any, Any, T]],
        action: str = "平台调用",
        on_retry: Optional[Callable[[int, Exception], None]] = None
    ) -> T:
        """
        执行 fn，失败按指数退避重试

        Args:
            fn: 无参协程工厂，每次重试重新调用
            action: 日志中的动作名
            on_retry: 每次重试前回调 (第几次重试, 异常)

        Raises:
            重试耗尽后原样抛出最后一次异常
        """
        attempt = 0
        while True:
            try:
                return await fn()
            except self.retryable_exceptions as e:
                if attempt >= self.max_retries:
                    if self.max_retries:
                        logger.error("重试耗尽", action=action, attempts=attempt + 1, error=str(e))
                    raise

                delay = self.delay_for(attempt)
                attempt += 1
                if on_retry:
                    on_retry(attempt, e)

                logger.warning(
                    "调用失败，准备重试",
                    action=action,
                    attempt=attempt,
                    max_retries=self.max_retries,
                    delay=round(delay, 3),
                    error=str(e)
                )
                await asyncio.sleep(delay)
