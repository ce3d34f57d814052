#
# src/testrelay/model/node.py
#
"""
The test item tree: one TestNode per workspace, test directory, file, group
or example.
"""

import itertools
from collections.abc import Iterator
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import structlog
from attrs import define, field

from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("model.node")

TAG_WORKSPACE = "workspace"
TAG_TEST_DIR = "test_dir"
TAG_TEST_FILE = "test_file"
TAG_TEST_GROUP = "test_group"
TAG_DEBUG = "supports-debug"
TAG_DYNAMIC = "dynamic"
FRAMEWORK_TAG_PREFIX = "framework:"

# Monotonic discovery order; later nodes win prefix ties during id lookup.
_SEQUENCE = itertools.count()


class NodeKind(Enum):
    WORKSPACE = "workspace"
    DIRECTORY = "directory"
    FILE = "file"
    GROUP = "group"
    EXAMPLE = "example"

    @property
    def can_have_children(self) -> bool:
        return self is not NodeKind.EXAMPLE


@define(frozen=True, slots=True)
class Position:
    line: int
    character: int = 0


@define(frozen=True, slots=True)
class Range:
    start: Position
    end: Position

    @classmethod
    def at_line(cls, line: int) -> "Range":
        return cls(Position(line, 0), Position(line, 0))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Range":
        start, end = data["start"], data["end"]
        return cls(
            Position(int(start["line"]), int(start.get("character", 0))),
            Position(int(end["line"]), int(end.get("character", 0))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": {"line": self.start.line, "character": self.start.character},
            "end": {"line": self.end.line, "character": self.end.character},
        }


def path_to_uri(path: Path) -> str:
    return path.resolve().as_uri()


def uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme and parsed.scheme != "file":
        raise ValueError(f"Not a file URI: {uri}")
    return Path(unquote(parsed.path if parsed.scheme else uri))


@define(eq=False, slots=True)
class TestNode:
    """
    A node of the test hierarchy.

    Children are owned by their node and kept in insertion order, which is also
    display order. ``parent`` is a back-reference used for tag propagation and
    removal only. Nodes compare by identity.
    """
    __test__ = False

    id: str
    label: str
    uri: str | None
    kind: NodeKind
    range: Range | None = field(default=None)
    tags: set[str] = field(factory=set)
    children: dict[str, "TestNode"] = field(factory=dict, repr=False)
    parent: "TestNode | None" = field(default=None, repr=False)
    # Set once the per-file tier has been asked for this file's children.
    discovered: bool = field(default=False, repr=False)
    sequence: int = field(init=False, factory=lambda: next(_SEQUENCE), repr=False)

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def framework_tag(self) -> str | None:
        for tag in sorted(self.tags):
            if tag.startswith(FRAMEWORK_TAG_PREFIX):
                return tag
        return None

    @property
    def path(self) -> Path | None:
        return uri_to_path(self.uri) if self.uri else None

    def add_child(self, child: "TestNode") -> "TestNode":
        if not self.kind.can_have_children:
            raise ValueError(f"A {self.kind.value} node cannot have children (parent: {self.id})")
        child.parent = self
        self.children[child.id] = child
        return child

    def remove_child(self, child_id: str) -> "TestNode | None":
        child = self.children.pop(child_id, None)
        if child is not None:
            child.parent = None
        return child

    def clear_children(self) -> None:
        for child in self.children.values():
            child.parent = None
        self.children.clear()
        self.discovered = False

    def walk(self) -> Iterator["TestNode"]:
        """Pre-order traversal including this node."""
        yield self
        for child in list(self.children.values()):
            yield from child.walk()

    def leaves(self) -> Iterator["TestNode"]:
        for node in self.walk():
            if node.is_leaf:
                yield node

    def ancestors(self) -> Iterator["TestNode"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def propagate_framework_tag(self, tag: str | None = None) -> None:
        """Adds the framework tag to every ancestor that does not carry one yet."""
        tag = tag or self.framework_tag
        if not tag:
            return
        for ancestor in self.ancestors():
            if ancestor.framework_tag is None:
                ancestor.tags.add(tag)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "TestNode":
        """Builds a subtree from a record returned by the analysis collaborator."""
        raw_children = record.get("children") or []
        kind = NodeKind.GROUP if raw_children else NodeKind.EXAMPLE
        tags = set(record.get("tags") or [])
        tags.add(TAG_DEBUG)
        if kind is NodeKind.GROUP:
            tags.add(TAG_TEST_GROUP)

        raw_range = record.get("range")
        node = cls(
            id=str(record["id"]),
            label=str(record.get("label") or record["id"]),
            uri=record.get("uri"),
            kind=kind,
            range=Range.from_dict(raw_range) if raw_range else None,
            tags=tags,
        )
        for raw_child in raw_children:
            node.add_child(cls.from_record(raw_child))
        return node
