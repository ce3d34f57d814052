#
# src/testrelay/model/__init__.py
#
"""
The test hierarchy: nodes, file-system discovery and id resolution.
"""

from .hierarchy import TestHierarchy
from .node import (
    TAG_DEBUG,
    TAG_DYNAMIC,
    TAG_TEST_DIR,
    TAG_TEST_FILE,
    TAG_TEST_GROUP,
    TAG_WORKSPACE,
    NodeKind,
    Position,
    Range,
    TestNode,
    path_to_uri,
    uri_to_path,
)
from .workspace import WorkspaceFolder

__all__ = [
    "TAG_DEBUG",
    "TAG_DYNAMIC",
    "TAG_TEST_DIR",
    "TAG_TEST_FILE",
    "TAG_TEST_GROUP",
    "TAG_WORKSPACE",
    "NodeKind",
    "Position",
    "Range",
    "TestHierarchy",
    "TestNode",
    "WorkspaceFolder",
    "path_to_uri",
    "uri_to_path",
]
