# 渐进式发布控制器 - 发布记录
"""发布登记表与历史记录，可选 JSON 文件持久化"""

import json
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from .models import Rollout

logger = structlog.get_logger()


class RolloutStore:
    """
    发布记录

    每个应用最多一个进行中的发布；终态发布按应用保留（最新在前），
    配置 history_file 时写入文件并在启动时加载。
    """

    def __init__(self, history_file: Optional[str] = None, history_limit: int = 50):
        self.history_file = Path(history_file) if history_file else None
        self.history_limit = history_limit
        self._active: Dict[str, Rollout] = {}
        self._history: Dict[str, List[Rollout]] = {}
        self._load()

    def _load(self):
        """加载发布历史"""
        if self.history_file is None or not self.history_file.exists():
            return
        try:
            with open(self.history_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            for app_name, items in (data.get("history") or {}).items():
                self._history[app_name] = [Rollout.from_dict(item) for item in items]
            logger.info("加载发布历史", apps=len(self._history), file=str(self.history_file))
        except Exception as e:
            logger.error("加载发布历史失败", error=str(e))

    def _save(self):
        """保存发布历史"""
        if self.history_file is None:
            return
        try:
            self.history_file.parent.mkdir(parents=True, exist_ok=True)
            data = {
                "history": {
                    app_name: [r.to_dict() for r in items]
                    for app_name, items in self._history.items()
                }
            }
            with open(self.history_file, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
        except Exception as e:
            logger.error("保存发布历史失败", error=str(e))

    def add(self, rollout: Rollout):
        """登记新发布"""
        self._active[rollout.app_name] = rollout

    def active(self, app_name: str) -> Optional[Rollout]:
        """进行中的发布"""
        rollout = self._active.get(app_name)
        if rollout is not None and rollout.is_terminal:
            return None
        return rollout

    def latest(self, app_name: str) -> Optional[Rollout]:
        """最近一次发布（进行中优先）"""
        rollout = self._active.get(app_name)
        if rollout is not None:
            return rollout
        items = self._history.get(app_name)
        return items[0] if items else None

    def get(self, rollout_id: str) -> Optional[Rollout]:
        for rollout in self._active.values():
            if rollout.id == rollout_id:
                return rollout
        for items in self._history.values():
            for rollout in items:
                if rollout.id == rollout_id:
                    return rollout
        return None

    def list(self, app_name: Optional[str] = None) -> List[Rollout]:
        """按创建时间倒序列出发布"""
        rollouts = [
            r for r in self._active.values()
            if app_name is None or r.app_name == app_name
        ]
        seen = {r.id for r in rollouts}
        for name, items in self._history.items():
            if app_name is None or name == app_name:
                rollouts.extend(r for r in items if r.id not in seen)
        return sorted(rollouts, key=lambda r: r.created_at, reverse=True)

    def finalize(self, rollout: Rollout):
        """终态发布移入历史"""
        if not rollout.is_terminal:
            raise ValueError(f"发布 {rollout.id} 尚未结束: {rollout.state.value}")

        if self._active.get(rollout.app_name) is rollout:
            del self._active[rollout.app_name]

        items = self._history.setdefault(rollout.app_name, [])
        items[:] = [r for r in items if r.id != rollout.id]
        items.insert(0, rollout)
        del items[self.history_limit:]
        self._save()
