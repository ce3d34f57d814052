#
# src/testrelay/model/discovery.py
#
"""
File-system tier of test discovery: which files are tests, and where they sit
in the directory levels of the hierarchy.
"""

import fnmatch
import os
from pathlib import Path, PurePath

import structlog
from attrs import define

from testrelay.config import DiscoveryConfig
from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("model.discovery")

# Never descended into while scanning a workspace.
PRUNED_DIRS = frozenset({"__pycache__", "node_modules", "site-packages", "dist-packages"})


@define(frozen=True, slots=True)
class DirectoryLevels:
    """Workspace-relative paths of the grouping levels a test file sits under."""
    first: PurePath
    second: PurePath | None = None


def matches_pattern(name: str, config: DiscoveryConfig) -> bool:
    return any(fnmatch.fnmatch(name, pattern) for pattern in config.file_patterns)


def should_skip(relative: PurePath, config: DiscoveryConfig) -> bool:
    """Helper files and anything under a fixture directory are not tests."""
    if relative.name in config.helper_files:
        return True
    return any(part in config.skip_dirs for part in relative.parts[:-1])


def locate_test_directory(relative: PurePath, config: DiscoveryConfig) -> int | None:
    """
    Index of the first directory segment named like a test directory.

    Test directory names are tried in configured order, so ``test`` wins over
    ``spec`` when a path happens to contain both.
    """
    directories = relative.parts[:-1]
    for name in config.test_dirs:
        if name in directories:
            return directories.index(name)
    return None


def is_test_file(relative: PurePath, config: DiscoveryConfig) -> bool:
    return (
        matches_pattern(relative.name, config)
        and locate_test_directory(relative, config) is not None
        and not should_skip(relative, config)
    )


def directory_levels(relative: PurePath, config: DiscoveryConfig) -> DirectoryLevels | None:
    """
    Computes the grouping levels for a test file. The second level exists
    only when the segment following the test directory is itself a directory.
    """
    position = locate_test_directory(relative, config)
    if position is None:
        return None
    parts = relative.parts
    first = PurePath(*parts[: position + 1])
    # parts[-1] is the file itself
    if position + 1 < len(parts) - 1:
        return DirectoryLevels(first=first, second=PurePath(*parts[: position + 2]))
    return DirectoryLevels(first=first)


def _is_pruned(name: str) -> bool:
    return name.startswith(".") or name in PRUNED_DIRS


def find_test_files(root: Path, config: DiscoveryConfig, limit: int | None = None) -> list[Path]:
    """Returns the test files under ``root``, sorted, optionally stopping after ``limit`` hits."""
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not _is_pruned(d))
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if is_test_file(path.relative_to(root), config):
                found.append(path)
                if limit is not None and len(found) >= limit:
                    return found
    log.debug("Scanned workspace for test files", root=str(root), count=len(found))
    return sorted(found)
