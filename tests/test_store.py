# 渐进式发布控制器 - 发布记录测试
"""store模块测试"""

import json

import pytest

from delivery.models import Rollout, RolloutState, Strategy
from delivery.store import RolloutStore


def finished_rollout(app_name="shop", state=RolloutState.ROLLED_BACK) -> Rollout:
    rollout = Rollout(
        app_name=app_name,
        strategy=Strategy.ROLLING,
        stable_version="v1",
        candidate_version="v2",
    )
    rollout.transition(RolloutState.ROLLING_BACK, "AdapterError")
    rollout.transition(state, "AdapterError")
    return rollout


class TestRolloutStore:
    """发布记录测试"""

    def test_active_and_finalize(self):
        """测试进行中登记与结束归档"""
        store = RolloutStore()
        rollout = Rollout(app_name="shop", strategy=Strategy.ROLLING,
                          stable_version="v1", candidate_version="v2")

        store.add(rollout)
        assert store.active("shop") is rollout

        rollout.transition(RolloutState.ROLLING_BACK, "OperatorAbort")
        rollout.transition(RolloutState.ABORTED, "OperatorAbort")
        store.finalize(rollout)

        assert store.active("shop") is None
        assert store.latest("shop") is rollout
        assert store.get(rollout.id) is rollout

    def test_finalize_requires_terminal(self):
        store = RolloutStore()
        rollout = Rollout(app_name="shop", strategy=Strategy.ROLLING,
                          stable_version="v1", candidate_version="v2")

        with pytest.raises(ValueError):
            store.finalize(rollout)

    def test_list_latest_first(self):
        store = RolloutStore()
        first = finished_rollout()
        second = finished_rollout()
        other = finished_rollout("cart")
        for rollout in (first, second, other):
            store.finalize(rollout)

        assert [r.id for r in store.list("shop")] == [second.id, first.id]
        assert len(store.list()) == 3

    def test_history_limit(self):
        store = RolloutStore(history_limit=2)
        rollouts = [finished_rollout() for _ in range(3)]
        for rollout in rollouts:
            store.finalize(rollout)

        assert [r.id for r in store.list("shop")] == [rollouts[2].id, rollouts[1].id]

    def test_persistence(self, tmp_path):
        """测试历史写入文件并在重启后加载"""
        history_file = tmp_path / "history" / "rollouts.json"
        store = RolloutStore(history_file=str(history_file))
        rollout = finished_rollout()
        store.finalize(rollout)

        data = json.loads(history_file.read_text(encoding="utf-8"))
        assert data["history"]["shop"][0]["id"] == rollout.id

        reloaded = RolloutStore(history_file=str(history_file))
        restored = reloaded.latest("shop")
        assert restored.id == rollout.id
        assert restored.state == RolloutState.ROLLED_BACK
        assert restored.reason == "AdapterError"

    def test_corrupt_history_file(self, tmp_path):
        """测试历史文件损坏时忽略"""
        history_file = tmp_path / "rollouts.json"
        history_file.write_text("{not json", encoding="utf-8")

        store = RolloutStore(history_file=str(history_file))

        assert store.list() == []
