#
# src/testrelay/state.py
#
"""
Defines the per-execution state of a test run: node statuses, messages,
output and coverage, sealed exactly once.
"""

import time
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from attrs import field, mutable

from testrelay.model.node import TestNode

if TYPE_CHECKING:
    from testrelay.runtime.explorer_interface import ExplorerInterface
    from testrelay.selection import RunRequest

log: structlog.stdlib.BoundLogger = structlog.get_logger("state")


class NodeStatus(Enum):
    """Status of a test node within one run."""

    ENQUEUED = "enqueued"  # Selected, waiting for its process to report.
    STARTED = "started"
    PASSED = "passed"
    FAILED = "failed"  # Assertion failure.
    ERRORED = "errored"  # Setup/teardown/infrastructure error, or unresolvable command.
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.PASSED, NodeStatus.FAILED, NodeStatus.ERRORED, NodeStatus.SKIPPED)


STATUS_EMOJI_MAP = {
    NodeStatus.ENQUEUED: "⏳",
    NodeStatus.STARTED: "🏃",
    NodeStatus.PASSED: "✅",
    NodeStatus.FAILED: "❌",
    NodeStatus.ERRORED: "💥",
    NodeStatus.SKIPPED: "⏭️",
}

# Aggregation precedence for nodes with children, most significant first.
_AGGREGATE_ORDER = (
    NodeStatus.ERRORED,
    NodeStatus.FAILED,
    NodeStatus.STARTED,
    NodeStatus.ENQUEUED,
    NodeStatus.PASSED,
    NodeStatus.SKIPPED,
)


class RunPhase(Enum):
    """Lifecycle of one streamed execution."""

    IDLE = "idle"
    BINDING_SOCKET = "binding-socket"
    SPAWNING = "spawning"
    STREAMING = "streaming"
    DRAINING = "draining"
    FINALIZED = "finalized"


@mutable(slots=True)
class NodeResult:
    node: TestNode = field()
    status: NodeStatus = field(default=NodeStatus.ENQUEUED)
    messages: list[str] = field(factory=list)
    started_at: datetime | None = field(default=None)  # Timezone-aware (UTC)
    duration: float | None = field(default=None)  # Seconds
    _started_monotonic: float | None = field(default=None, init=False, repr=False)


@mutable(slots=True)
class TestRun:
    """
    Mutable aggregate for one execution.

    Statuses are only ever written to leaves; a node with children gets its
    status from ``status_of``. A leaf never takes a second terminal status.
    """
    __test__ = False

    request: "RunRequest | None" = field(default=None)
    explorer: "ExplorerInterface | None" = field(default=None, repr=False)
    results: dict[str, NodeResult] = field(factory=dict)
    output: list[str] = field(factory=list, repr=False)
    coverage: dict[str, Any] = field(factory=dict, repr=False)
    failure_message: str | None = field(default=None)
    phase: RunPhase = field(default=RunPhase.IDLE)
    sealed: bool = field(default=False)
    created_at: datetime = field(factory=lambda: datetime.now(UTC))

    def __attrs_post_init__(self):
        log.debug(
            "Created test run",
            mode=self.request.mode.value if self.request else None,
            included=len(self.request.included) if self.request else None,
        )

    # --- Status updates ---

    def enqueued(self, node: TestNode) -> None:
        if self._closed("enqueued", node):
            return
        if node.id in self.results:
            return
        self.results[node.id] = NodeResult(node=node)
        self._post_status(node, NodeStatus.ENQUEUED)

    def started(self, node: TestNode) -> None:
        if self._closed("started", node):
            return
        if not node.is_leaf:
            log.debug("Ignoring start for a node with children", node_id=node.id)
            return
        result = self._result_for(node)
        if result.status.is_terminal:
            log.warning("Ignoring start for a test that already finished", node_id=node.id, status=result.status.value)
            return
        result.status = NodeStatus.STARTED
        result.started_at = datetime.now(UTC)
        result._started_monotonic = time.monotonic()
        self._post_status(node, NodeStatus.STARTED)

    def passed(self, node: TestNode) -> bool:
        return self._finish(node, NodeStatus.PASSED)

    def skipped(self, node: TestNode) -> bool:
        return self._finish(node, NodeStatus.SKIPPED)

    def failed(self, node: TestNode, message: str | None = None) -> bool:
        return self._finish(node, NodeStatus.FAILED, message)

    def errored(self, node: TestNode, message: str | None = None) -> bool:
        return self._finish(node, NodeStatus.ERRORED, message)

    def attach_message(self, node: TestNode, message: str) -> None:
        """Adds a message without touching the status."""
        if self._closed("message", node):
            return
        self._result_for(node).messages.append(message)
        self._post_status(node, self.status_of(node), message)

    # --- Run-level updates ---

    def append_output(self, text: str) -> None:
        if self.sealed or not text:
            return
        self.output.append(text)
        if self.explorer:
            self.explorer.post_output(text)

    def attach_coverage(self, coverage: dict[str, Any]) -> None:
        if self.sealed:
            return
        self.coverage.update(coverage)
        if self.explorer:
            self.explorer.post_coverage(coverage)

    def mark_failed(self, message: str) -> None:
        """Marks the run itself as failed, independent of any node."""
        if self.failure_message is None:
            self.failure_message = message
        log.error("Test run failed", reason=message)
        self.append_output(f"\r\n{message}\r\n")

    def set_phase(self, phase: RunPhase) -> None:
        if self.phase is RunPhase.FINALIZED:
            return
        log.debug("Run phase changed", old_phase=self.phase.value, new_phase=phase.value)
        self.phase = phase

    def seal(self) -> bool:
        """Finalizes the run. Returns False when it was already sealed."""
        if self.sealed:
            log.warning("Attempted to seal a run twice")
            return False
        self.phase = RunPhase.FINALIZED
        self.sealed = True
        log.info("Test run sealed", emoji="🏁", **{status.value: count for status, count in self.counts().items()})
        if self.explorer:
            self.explorer.post_run_sealed(self)
        return True

    # --- Queries ---

    def status_of(self, node: TestNode) -> NodeStatus | None:
        if node.is_leaf:
            result = self.results.get(node.id)
            return result.status if result else None
        statuses = {status for child in node.children.values() if (status := self.status_of(child))}
        for candidate in _AGGREGATE_ORDER:
            if candidate is NodeStatus.SKIPPED:
                return candidate if statuses == {NodeStatus.SKIPPED} else None
            if candidate in statuses:
                return candidate
        return None

    def messages_of(self, node: TestNode) -> list[str]:
        result = self.results.get(node.id)
        return list(result.messages) if result else []

    def result_of(self, node: TestNode) -> NodeResult | None:
        return self.results.get(node.id)

    def counts(self) -> dict[NodeStatus, int]:
        counts = {status: 0 for status in NodeStatus}
        for result in self.results.values():
            if result.node.is_leaf:
                counts[result.status] += 1
        return counts

    def enqueued_nodes(self) -> list[TestNode]:
        return self.unfinished_leaves(NodeStatus.ENQUEUED)

    def unfinished_leaves(self, *statuses: NodeStatus) -> list[TestNode]:
        """Leaves still waiting for a result; ``statuses`` narrows to enqueued or started."""
        wanted = statuses or (NodeStatus.ENQUEUED, NodeStatus.STARTED)
        return [r.node for r in self.results.values() if r.node.is_leaf and r.status in wanted]

    # --- Internals ---

    def _result_for(self, node: TestNode) -> NodeResult:
        result = self.results.get(node.id)
        if result is None or result.node is not node:
            result = NodeResult(node=node, messages=result.messages if result else [])
            self.results[node.id] = result
        return result

    def _finish(self, node: TestNode, status: NodeStatus, message: str | None = None) -> bool:
        if self._closed(status.value, node):
            return False
        if not node.is_leaf:
            # The status of a node with children comes from its children only.
            log.debug("Result for a node with children kept as a message", node_id=node.id, status=status.value)
            if message:
                self.attach_message(node, message)
            return False

        result = self._result_for(node)
        if result.status.is_terminal:
            log.warning(
                "Ignoring second terminal status for test",
                node_id=node.id,
                current=result.status.value,
                ignored=status.value,
            )
            return False

        result.status = status
        if message:
            result.messages.append(message)
        if result._started_monotonic is not None:
            result.duration = time.monotonic() - result._started_monotonic
        self._post_status(node, status, message)
        return True

    def _closed(self, action: str, node: TestNode) -> bool:
        if self.sealed:
            log.debug("Ignoring update on a sealed run", action=action, node_id=node.id)
        return self.sealed

    def _post_status(self, node: TestNode, status: NodeStatus | None, message: str | None = None) -> None:
        if self.explorer and status is not None:
            self.explorer.post_status_changed(node, status, message)


# 🔼⚙️
