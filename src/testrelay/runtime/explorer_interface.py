# src/testrelay/runtime/explorer_interface.py

"""
Provides a safe interface for notifying the test explorer host.
"""

from typing import TYPE_CHECKING, Any

import structlog

from testrelay.model.node import TestNode
from testrelay.telemetry import StructLogger

if TYPE_CHECKING:
    from testrelay.protocols import TestExplorerHost
    from testrelay.state import NodeStatus, TestRun

log: StructLogger = structlog.get_logger("runtime.explorer_interface")


class ExplorerInterface:
    """A bridge to the explorer host; a failing host never breaks the run."""

    def __init__(self, host: "TestExplorerHost | None"):
        self.host = host
        self.is_active = host is not None
        if self.is_active:
            log.debug("Explorer interface initialized and active.")

    def post_node_added(self, node: TestNode) -> None:
        self._post("node_added", node)

    def post_node_removed(self, node: TestNode) -> None:
        self._post("node_removed", node)

    def post_status_changed(self, node: TestNode, status: "NodeStatus", message: str | None = None) -> None:
        self._post("status_changed", node, status, message)

    def post_output(self, text: str) -> None:
        self._post("output_appended", text)

    def post_coverage(self, coverage: dict[str, Any]) -> None:
        self._post("coverage_attached", coverage)

    def post_run_sealed(self, run: "TestRun") -> None:
        self._post("run_sealed", run)

    def _post(self, method: str, *args: Any) -> None:
        if not self.is_active or not self.host:
            return
        try:
            getattr(self.host, method)(*args)
        except Exception as e:
            log.warning("Failed to post update to explorer host", method=method, error=str(e), exc_info=False)
