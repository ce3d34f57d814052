#
# src/testrelay/reporter/coverage.py
#
"""
Measures the test process with coverage.py and writes the artifact the
engine ingests after the run. Everything written is 0-based.
"""

import json
import tempfile
from pathlib import Path
from typing import Any

import coverage
import structlog

from testrelay.config import RunnerConfig
from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("reporter.coverage")

_DEFAULTS = RunnerConfig()


def _conditional_type(source_lines: list[str], line: int) -> str:
    """The keyword opening a 1-based source line, e.g. ``if`` or ``for``."""
    if 0 < line <= len(source_lines):
        stripped = source_lines[line - 1].strip()
        keyword = stripped.split(maxsplit=1)[0].rstrip(":") if stripped else ""
        if keyword.isidentifier():
            return keyword
    return "branch"


def _arm(target: int, executed: bool) -> dict[str, Any]:
    if target < 0:
        return {
            "type": "exit",
            "start_line": -target - 1,
            "start_character": 0,
            "end_line": -target - 1,
            "end_character": 0,
            "executed": int(executed),
        }
    return {
        "type": f"line {target}",
        "start_line": target - 1,
        "start_character": 0,
        "end_line": target - 1,
        "end_character": 0,
        "executed": int(executed),
    }


def convert_file_report(path: Path, report: dict[str, Any]) -> dict[str, Any]:
    """Converts one file's entry of coverage.py's JSON report to the artifact format."""
    executed = set(report.get("executed_lines", []))
    missing = set(report.get("missing_lines", []))
    last_line = max(executed | missing, default=0)
    lines = [1 if n in executed else 0 if n in missing else None for n in range(1, last_line + 1)]

    try:
        source_lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        source_lines = []

    arms_by_source: dict[int, list[dict[str, Any]]] = {}
    for arcs, was_executed in ((report.get("executed_branches", []), True), (report.get("missing_branches", []), False)):
        for source, target in arcs:
            arms_by_source.setdefault(source, []).append(_arm(target, was_executed))
    branches = [
        {
            "type": _conditional_type(source_lines, source),
            "start_line": source - 1,
            "start_character": 0,
            "end_line": source - 1,
            "end_character": 0,
            "arms": arms,
        }
        for source, arms in sorted(arms_by_source.items())
    ]

    functions = []
    for name, function in (report.get("functions") or {}).items():
        if not name:
            # The module body is reported as a function with an empty name.
            continue
        function_lines = function.get("executed_lines", []) + function.get("missing_lines", [])
        if not function_lines:
            continue
        functions.append(
            {
                "name": name,
                "start_line": min(function_lines) - 1,
                "start_character": 0,
                "end_line": max(function_lines) - 1,
                "end_character": 0,
                "executed": int(bool(function.get("executed_lines"))),
            }
        )

    return {"lines": lines, "branches": branches, "functions": functions}


class CoverageRecorder:
    """Wraps a branch-measuring coverage.py session that never touches a data file."""

    def __init__(self, root: Path):
        self.root = root.resolve()
        self._coverage = coverage.Coverage(branch=True, data_file=None)
        self._running = False

    def start(self) -> None:
        self._coverage.start()
        self._running = True

    def stop(self) -> None:
        if self._running:
            self._coverage.stop()
            self._running = False

    def build_artifact(self) -> dict[str, Any]:
        with tempfile.TemporaryDirectory(prefix="testrelay-coverage-") as tmp:
            report_path = Path(tmp) / "report.json"
            try:
                self._coverage.json_report(outfile=str(report_path), ignore_errors=True)
            except coverage.CoverageException as e:
                # Raised when nothing was measured.
                log.warning("No coverage data collected", error=str(e))
                return {}
            report = json.loads(report_path.read_text(encoding="utf-8"))

        artifact = {}
        for name, file_report in report.get("files", {}).items():
            path = (self.root / name).resolve()
            artifact[str(path)] = convert_file_report(path, file_report)
        return artifact

    def write_artifact(self, relative_path: str = _DEFAULTS.coverage_artifact) -> Path:
        artifact_path = self.root / relative_path
        artifact_path.parent.mkdir(parents=True, exist_ok=True)
        artifact_path.write_text(json.dumps(self.build_artifact()), encoding="utf-8")
        log.debug("Wrote coverage artifact", path=str(artifact_path))
        return artifact_path


# 🔼⚙️
