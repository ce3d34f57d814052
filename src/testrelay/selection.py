#
# src/testrelay/selection.py
#
"""
Run requests and the selection filter that turns (inclusions, exclusions)
into the items sent to the analysis collaborator for command resolution.
"""

from collections.abc import Iterable, Sequence
from enum import Enum
from typing import Any

from attrs import define, field

from testrelay.model.node import TestNode


class RunMode(Enum):
    RUN = "run"
    RUN_IN_TERMINAL = "run-in-terminal"
    DEBUG = "debug"
    COVERAGE = "coverage"

    @property
    def runner_value(self) -> str:
        """Value exported to the test process so the reporter knows whether to measure coverage."""
        return "coverage" if self is RunMode.COVERAGE else "true"


@define(frozen=True, slots=True)
class RunRequest:
    """An immutable snapshot of what to run and how."""
    included: tuple[TestNode, ...] = field(default=(), converter=tuple)
    excluded: tuple[TestNode, ...] = field(default=(), converter=tuple)
    mode: RunMode = field(default=RunMode.RUN)
    continuous: bool = field(default=False)

    @property
    def excluded_ids(self) -> frozenset[str]:
        return frozenset(node.id for node in self.excluded)


def serialize_node(node: TestNode, children: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    """
    Serializes a node in the collaborator's item shape. Without ``children``
    the node's whole subtree is included.
    """
    item: dict[str, Any] = {
        "id": node.id,
        "label": node.label,
        "uri": node.uri,
        "tags": sorted(node.tags),
        "children": children if children is not None else [serialize_node(c) for c in node.children.values()],
    }
    if node.range is not None:
        item["range"] = node.range.to_dict()
    return item


def _recursively_filter(node: TestNode, excluded_ids: frozenset[str]) -> dict[str, Any] | None:
    if node.id in excluded_ids:
        return None

    survivors = [
        filtered
        for child in node.children.values()
        if (filtered := _recursively_filter(child, excluded_ids)) is not None
    ]

    # Sending the parent on its own would run everything under it, exclusions included.
    if node.children and not survivors:
        return None

    if len(survivors) == len(node.children):
        # Nothing was filtered out: the collaborator may run the group as a whole.
        return serialize_node(node, children=[])
    return serialize_node(node, children=survivors)


def build_request_items(
    inclusions: Sequence[TestNode],
    exclusions: Iterable[TestNode] | None = None,
) -> list[dict[str, Any]]:
    excluded_ids = frozenset(node.id for node in exclusions or ())
    if not excluded_ids:
        return [serialize_node(node) for node in inclusions]
    return [item for node in inclusions if (item := _recursively_filter(node, excluded_ids)) is not None]


def selected_leaves(inclusions: Sequence[TestNode], exclusions: Iterable[TestNode] | None = None) -> list[TestNode]:
    """Leaves under the inclusions that are not excluded themselves or through an ancestor."""
    excluded_ids = frozenset(node.id for node in exclusions or ())
    seen: set[int] = set()
    leaves: list[TestNode] = []

    def visit(node: TestNode) -> None:
        if node.id in excluded_ids or id(node) in seen:
            return
        seen.add(id(node))
        if node.is_leaf:
            leaves.append(node)
            return
        for child in node.children.values():
            visit(child)

    for node in inclusions:
        visit(node)
    return leaves
