# src/testrelay/cli/console.py

"""
A TestExplorerHost that renders to the terminal with rich.
"""

from typing import Any

from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from testrelay.model.node import TestNode
from testrelay.state import STATUS_EMOJI_MAP, NodeStatus, TestRun

_STATUS_STYLE = {
    NodeStatus.PASSED: "green",
    NodeStatus.FAILED: "red",
    NodeStatus.ERRORED: "bold red",
    NodeStatus.SKIPPED: "yellow",
}


class ConsoleExplorerHost:
    """Prints finished tests, forwarded output and a summary; node add/remove is silent."""

    def __init__(self, console: Console | None = None, show_output: bool = True):
        self.console = console or Console()
        self.show_output = show_output
        self.runs: list[TestRun] = []

    def node_added(self, node: TestNode) -> None:
        pass

    def node_removed(self, node: TestNode) -> None:
        pass

    def status_changed(self, node: TestNode, status: NodeStatus, message: str | None) -> None:
        if not status.is_terminal:
            return
        style = _STATUS_STYLE.get(status, "")
        self.console.print(f"{STATUS_EMOJI_MAP[status]} [{style}]{node.id}[/]", highlight=False)
        if message and status in (NodeStatus.FAILED, NodeStatus.ERRORED):
            self.console.print(message, style="dim", markup=False, highlight=False)

    def output_appended(self, text: str) -> None:
        if self.show_output:
            self.console.out(text.replace("\r\n", "\n"), end="", highlight=False)

    def coverage_attached(self, coverage: dict[str, Any]) -> None:
        table = Table(title="Coverage")
        table.add_column("File")
        table.add_column("Statements", justify="right")
        table.add_column("Covered", justify="right")
        for uri, file_coverage in sorted(coverage.items()):
            table.add_row(uri, str(len(file_coverage.statements)), f"{file_coverage.percent_covered:.1f}%")
        self.console.print(table)

    def run_sealed(self, run: TestRun) -> None:
        self.runs.append(run)
        self.console.print(summary_table(run))
        if run.failure_message:
            self.console.print(f"[bold red]Run failed:[/] {run.failure_message}")


def summary_table(run: TestRun) -> Table:
    table = Table(title=f"Test run ({run.request.mode.value if run.request else 'run'})")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status, count in run.counts().items():
        if count:
            table.add_row(f"{STATUS_EMOJI_MAP[status]} {status.value}", str(count))
    return table


def hierarchy_tree(roots: list[TestNode], label: str = "Tests") -> Tree:
    tree = Tree(label)

    def add(branch: Tree, node: TestNode) -> None:
        child = branch.add(f"{node.label} [dim]({node.kind.value})[/]")
        for grandchild in node.children.values():
            add(child, grandchild)

    for root in roots:
        add(tree, root)
    return tree
