# tests/unit/test_state.py

"""Tests for per-run status bookkeeping."""

import pytest

from testrelay.model import NodeKind, TestNode
from testrelay.runtime.explorer_interface import ExplorerInterface
from testrelay.state import NodeStatus, RunPhase, TestRun


@pytest.fixture
def group() -> TestNode:
    group = TestNode(id="g", label="g", uri="file:///t.py", kind=NodeKind.GROUP)
    group.add_child(TestNode(id="g::a", label="a", uri="file:///t.py", kind=NodeKind.EXAMPLE))
    group.add_child(TestNode(id="g::b", label="b", uri="file:///t.py", kind=NodeKind.EXAMPLE))
    return group


@pytest.fixture
def run(host) -> TestRun:
    return TestRun(explorer=ExplorerInterface(host))


class TestLeafStatuses:
    def test_start_then_pass(self, run: TestRun, group: TestNode, host):
        leaf = group.children["g::a"]
        run.enqueued(leaf)
        run.started(leaf)
        assert run.passed(leaf)

        assert run.status_of(leaf) is NodeStatus.PASSED
        assert run.result_of(leaf).duration is not None
        assert [status for _, status, _ in host.statuses] == [
            NodeStatus.ENQUEUED,
            NodeStatus.STARTED,
            NodeStatus.PASSED,
        ]

    def test_second_terminal_status_is_ignored(self, run: TestRun, group: TestNode):
        leaf = group.children["g::a"]
        run.failed(leaf, "assert 1 == 2")

        assert run.passed(leaf) is False
        assert run.status_of(leaf) is NodeStatus.FAILED
        assert run.messages_of(leaf) == ["assert 1 == 2"]

    def test_start_after_finish_is_ignored(self, run: TestRun, group: TestNode):
        leaf = group.children["g::a"]
        run.skipped(leaf)
        run.started(leaf)
        assert run.status_of(leaf) is NodeStatus.SKIPPED


class TestAggregation:
    def test_group_status_derives_from_leaves(self, run: TestRun, group: TestNode):
        a, b = group.children.values()
        run.enqueued(a)
        run.enqueued(b)
        assert run.status_of(group) is NodeStatus.ENQUEUED

        run.passed(a)
        run.failed(b, "boom")
        assert run.status_of(group) is NodeStatus.FAILED

    def test_all_skipped_group_is_skipped(self, run: TestRun, group: TestNode):
        for leaf in group.children.values():
            run.skipped(leaf)
        assert run.status_of(group) is NodeStatus.SKIPPED

    def test_result_for_a_group_is_kept_as_a_message(self, run: TestRun, group: TestNode, host):
        a, b = group.children.values()
        run.passed(a)

        assert run.errored(group, "fixture failed") is False

        assert run.status_of(a) is NodeStatus.PASSED
        assert run.status_of(b) is None
        assert run.messages_of(group) == ["fixture failed"]
        assert run.messages_of(b) == []
        assert run.status_of(group) is NodeStatus.PASSED
        assert host.statuses[-1] == ("g", NodeStatus.PASSED, "fixture failed")

        # A leaf that finishes later still takes its own status.
        assert run.passed(b)
        assert run.status_of(b) is NodeStatus.PASSED

    def test_counts_include_only_leaves(self, run: TestRun, group: TestNode):
        a, b = group.children.values()
        run.errored(group, "setup")
        run.errored(a, "setup")
        run.passed(b)
        counts = run.counts()
        assert counts[NodeStatus.ERRORED] == 1
        assert counts[NodeStatus.PASSED] == 1


class TestSealing:
    def test_seal_once(self, run: TestRun, group: TestNode, host):
        leaf = group.children["g::a"]
        assert run.seal()
        assert run.seal() is False
        assert run.phase is RunPhase.FINALIZED
        assert host.sealed == [run]

        run.passed(leaf)
        run.append_output("late")
        assert run.status_of(leaf) is None
        assert run.output == []

    def test_phase_is_frozen_after_seal(self, run: TestRun):
        run.set_phase(RunPhase.STREAMING)
        run.seal()
        run.set_phase(RunPhase.DRAINING)
        assert run.phase is RunPhase.FINALIZED

    def test_mark_failed_keeps_first_reason_and_writes_output(self, run: TestRun, host):
        run.mark_failed("Failed to start test process")
        run.mark_failed("second")
        assert run.failure_message == "Failed to start test process"
        assert "Failed to start test process" in "".join(host.output)
