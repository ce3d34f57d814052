#
# src/testrelay/coverage/ingest.py
#
"""
Turns the raw coverage artifact written by the reporter into FileCoverage
records.

Artifact layout, keyed by absolute file path::

    {
      "/ws/lib/calc.py": {
        "lines": [1, 3, null, ...],
        "branches": [
          {"type": "if", "start_line": 4, "start_character": 4, "end_line": 7, "end_character": 0,
           "arms": [{"type": "then", "start_line": 5, ..., "executed": 2}, ...]}
        ],
        "functions": [{"name": "add", "start_line": 0, ..., "executed": 3}]
      }
    }

``lines[i]`` is the execution count of line ``i``; ``null`` marks a line with
no executable code. Branch arms are attached to the statement on which their
conditional starts, not the line the arm itself starts on.
"""

import json
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog

from testrelay.exceptions import CoverageError
from testrelay.model.node import Position, Range, path_to_uri
from testrelay.telemetry import StructLogger

from .models import BranchCoverage, DeclarationCoverage, FileCoverage, StatementCoverage

log: StructLogger = structlog.get_logger("coverage.ingest")


def load_artifact(path: Path) -> dict[str, Any] | None:
    """Reads the artifact; None (with a warning) when it was never written."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        log.warning("Coverage artifact not found, no coverage attached", path=str(path))
        return None
    except OSError as e:
        raise CoverageError(f"Could not read coverage artifact '{path}': {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CoverageError(f"Coverage artifact '{path}' is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise CoverageError(f"Coverage artifact '{path}' must be a JSON object, got {type(data).__name__}")
    return data


def is_vendored(path: Path, vendor_paths: Iterable[str]) -> bool:
    vendor = set(vendor_paths)
    return any(part in vendor for part in path.parts)


def _range(data: dict[str, Any]) -> Range:
    return Range(
        Position(int(data["start_line"]), int(data.get("start_character", 0))),
        Position(int(data["end_line"]), int(data.get("end_character", 0))),
    )


def _branches_by_line(branches: list[dict[str, Any]]) -> dict[int, list[BranchCoverage]]:
    grouped: dict[int, list[BranchCoverage]] = defaultdict(list)
    for conditional in branches:
        grouping_line = int(conditional["start_line"])
        for arm in conditional.get("arms", []):
            grouped[grouping_line].append(
                BranchCoverage(
                    label=f"{conditional['type']} {arm['type']}",
                    executed=int(arm.get("executed", 0)),
                    range=_range(arm),
                )
            )
    return grouped


def convert_file(path: Path, info: dict[str, Any]) -> FileCoverage:
    branches = _branches_by_line(info.get("branches") or [])
    statements = [
        StatementCoverage(line=index, executed=int(count), branches=branches.get(index, ()))
        for index, count in enumerate(info.get("lines") or [])
        if count is not None
    ]
    declarations = [
        DeclarationCoverage(name=function["name"], executed=int(function.get("executed", 0)), range=_range(function))
        for function in info.get("functions") or []
    ]
    return FileCoverage(uri=path_to_uri(path), statements=statements, declarations=declarations)


def ingest(artifact: dict[str, Any], workspace_root: Path, vendor_paths: Iterable[str]) -> dict[str, FileCoverage]:
    """
    Converts every in-workspace, non-vendored file of the artifact.

    A file whose record is malformed raises CoverageError; the whole artifact
    comes from a single writer, so one bad entry means the rest is suspect too.
    """
    root = workspace_root.resolve()
    vendor_paths = tuple(vendor_paths)
    results: dict[str, FileCoverage] = {}
    skipped = 0

    for raw_path, info in artifact.items():
        path = (root / raw_path).resolve()
        if not path.is_relative_to(root) or is_vendored(path.relative_to(root), vendor_paths):
            skipped += 1
            continue
        try:
            file_coverage = convert_file(path, info)
        except (KeyError, TypeError, ValueError) as e:
            raise CoverageError(f"Malformed coverage entry for '{raw_path}': {e}") from e
        results[file_coverage.uri] = file_coverage

    log.info("Ingested coverage", files=len(results), skipped=skipped, emoji="📊")
    return results


# 🔼⚙️
