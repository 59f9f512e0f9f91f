"""Unit tests for checkpoint history."""

import pytest
from pydantic import BaseModel

from secure_assessment.recovery.checkpoints import MAX_CHECKPOINTS, CheckpointStore, snapshot


class _Point(BaseModel):
    x: int
    labels: list[str]


class TestSnapshot:
    def test_detached_from_caller(self):
        state = {"steps": ["setup"], "nested": {"count": 1}}

        copied = snapshot(state)
        state["steps"].append("audit")
        state["nested"]["count"] = 2

        assert copied == {"steps": ["setup"], "nested": {"count": 1}}

    def test_models_become_plain_data(self):
        assert snapshot(_Point(x=1, labels=["a"])) == {"x": 1, "labels": ["a"]}

    def test_tuples_and_sets_become_lists(self):
        assert snapshot((1, 2)) == [1, 2]
        assert snapshot({"only"}) == ["only"]


class TestCheckpointStore:
    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            CheckpointStore(0)

    def test_append_and_latest(self):
        store = CheckpointStore()

        store.append("env-1", "creation-start", {"status": "creating"})
        latest = store.append("env-1", "creation-complete", {"status": "ready"}, results={"ok": True})

        assert store.latest("env-1") == latest
        assert latest.step_name == "creation-complete"
        assert latest.results == {"ok": True}
        assert [c.step_name for c in store.history("env-1")] == ["creation-start", "creation-complete"]

    def test_keeps_only_most_recent(self):
        store = CheckpointStore()

        for i in range(MAX_CHECKPOINTS + 1):
            store.append("env-1", f"step-{i}", {"i": i})

        history = store.history("env-1")
        assert len(history) == MAX_CHECKPOINTS
        assert history[0].step_name == "step-1"
        assert history[-1].step_name == f"step-{MAX_CHECKPOINTS}"

    def test_timestamps_non_decreasing(self):
        store = CheckpointStore()

        for i in range(5):
            store.append("env-1", f"step-{i}", None)

        stamps = [c.timestamp for c in store.history("env-1")]
        assert stamps == sorted(stamps)

    def test_stored_state_is_a_copy(self):
        store = CheckpointStore()
        state = {"completed": ["setup"]}

        checkpoint = store.append("env-1", "setup", state)
        state["completed"].append("lint")

        assert checkpoint.state == {"completed": ["setup"]}

    def test_environments_are_isolated(self):
        store = CheckpointStore()
        store.append("env-1", "a", None)
        store.append("env-2", "b", None)

        store.clear("env-1")

        assert store.history("env-1") == []
        assert store.latest("env-1") is None
        assert store.environment_ids() == ["env-2"]
