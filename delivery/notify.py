# 渐进式发布控制器 - 状态通知
"""状态变更通知：异步投递，失败只记录日志，不阻塞状态机"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

import httpx
import structlog

from .models import Rollout, RolloutEvent, RolloutState

logger = structlog.get_logger()


class NotificationSink(ABC):
    """通知通道基类"""

    @abstractmethod
    async def send(self, event: RolloutEvent) -> None:
        """发送通知"""
        pass


class LoggingSink(NotificationSink):
    """写入日志"""

    async def send(self, event: RolloutEvent) -> None:
        logger.info("发布状态变更", **event.to_dict())


# 状态 -> 消息颜色
STATE_COLORS = {
    RolloutState.PENDING: "#439FE0",
    RolloutState.PROGRESSING: "#439FE0",
    RolloutState.ROLLING_BACK: "warning",
    RolloutState.SUCCEEDED: "good",
    RolloutState.ROLLED_BACK: "danger",
    RolloutState.ABORTED: "warning",
}


class SlackWebhookSink(NotificationSink):
    """Slack Incoming Webhook"""

    def __init__(
        self,
        webhook_url: str,
        channel: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.webhook_url = webhook_url
        self.channel = channel
        self.timeout = timeout
        self._client = client

    def build_payload(self, event: RolloutEvent) -> Dict[str, Any]:
        fields = [
            {"title": "应用", "value": event.app_name, "short": True},
            {"title": "状态", "value": event.state.value, "short": True},
            {"title": "候选版本", "value": event.candidate_version or "-", "short": True},
            {"title": "候选流量", "value": f"{event.current_weight}%", "short": True},
        ]
        if event.reason:
            fields.append({"title": "原因", "value": event.reason, "short": False})

        payload: Dict[str, Any] = {
            "text": f"发布 {event.rollout_id} ({event.app_name}) -> {event.state.value}",
            "attachments": [{
                "color": STATE_COLORS.get(event.state, "#439FE0"),
                "fields": fields,
                "ts": int(event.timestamp.timestamp()),
            }],
        }
        if self.channel:
            payload["channel"] = self.channel
        return payload

    async def send(self, event: RolloutEvent) -> None:
        payload = self.build_payload(event)
        if self._client is not None:
            response = await self._client.post(self.webhook_url, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()


class Notifier:
    """
    通知分发器

    publish 立即返回，投递在后台任务中完成；任一通道失败都只记录
    日志。
    """

    def __init__(self, sinks: Optional[List[NotificationSink]] = None):
        self.sinks: List[NotificationSink] = list(sinks or [])
        self._pending: Set[asyncio.Task] = set()

    def add_sink(self, sink: NotificationSink):
        self.sinks.append(sink)

    def publish(self, event: RolloutEvent):
        if not self.sinks:
            return
        task = asyncio.create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def notify(self, rollout: Rollout, reason: Optional[str] = None):
        """按发布当前状态发送通知"""
        self.publish(RolloutEvent.from_rollout(rollout, reason))

    async def _deliver(self, event: RolloutEvent):
        for sink in self.sinks:
            try:
                await sink.send(event)
            except Exception as e:
                logger.warning(
                    "通知发送失败",
                    sink=type(sink).__name__,
                    app_name=event.app_name,
                    state=event.state.value,
                    error=str(e)
                )

    async def drain(self, timeout: float = 5.0):
        """等待未完成的投递（关闭时调用）"""
        if not self._pending:
            return
        done, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in pending:
            task.cancel()
