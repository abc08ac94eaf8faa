import tempfile
from pathlib import Path

import pytest

from ..error_tracker import InvalidTransition
from ..models import NodeState
from ..state_manager import StateManager


class TestStateManager:

    @pytest.fixture
    def manager(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            yield StateManager(state_dir=temp_dir)

    def test_transitions_are_logged_in_order(self, manager):
        manager.write_checkpoint("pagea", NodeState.PENDING, "job_1")
        state = manager.transition("pagea", NodeState.PENDING, NodeState.FETCHING, "job_1")

        assert state == NodeState.FETCHING
        assert manager.latest_state("pagea") == NodeState.FETCHING
        assert [row['job_id'] for row in manager.read_checkpoints("pagea")] == ["job_1", "job_1"]

    def test_invalid_transition_is_rejected(self, manager):
        with pytest.raises(InvalidTransition):
            manager.transition("pagea", NodeState.PENDING, NodeState.REGISTERED)
        assert manager.latest_state("pagea") is None

    def test_interrupted_nodes(self, manager):
        manager.write_checkpoint("pagea", NodeState.PENDING)
        manager.transition("pagea", NodeState.PENDING, NodeState.FETCHING)
        manager.write_checkpoint("pageb", NodeState.PENDING)
        manager.transition("pageb", NodeState.PENDING, NodeState.FAILED)

        assert manager.interrupted() == ["pagea"]

    def test_malformed_lines_are_skipped(self, manager):
        manager.write_checkpoint("pagea", NodeState.PENDING)
        with open(Path(manager.filepath), "a", encoding="utf-8") as f:
            f.write("{not json\n")

        assert len(manager.read_checkpoints()) == 1

    def test_log_is_compacted_on_open(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            first = StateManager(state_dir=temp_dir)
            for external_id in ("pagea", "pageb"):
                first.write_checkpoint(external_id, NodeState.PENDING, "job_1")
                first.transition(external_id, NodeState.PENDING, NodeState.FETCHING, "job_1")
            first.transition("pageb", NodeState.FETCHING, NodeState.CONVERTING, "job_1")
            assert len(first.read_checkpoints()) == 5

            reopened = StateManager(state_dir=temp_dir)

            rows = reopened.read_checkpoints()
            assert [(row['external_id'], row['state']) for row in rows] == [("pagea", "fetching"), ("pageb", "converting")]
            assert reopened.interrupted() == ["pagea", "pageb"]
            assert reopened.latest_state("pageb") == NodeState.CONVERTING

            reopened.transition("pagea", NodeState.FETCHING, NodeState.FAILED, "job_1")
            assert reopened.interrupted() == ["pageb"]
            assert len(reopened.read_checkpoints("pagea")) == 2
