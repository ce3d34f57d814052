# src/testrelay/runtime/port_db.py

"""
A small JSON file in the temp directory mapping workspace paths to the port
the engine is listening on, for reporters that do not see the environment.
"""

import json
import os
import tempfile
from pathlib import Path

import structlog

from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("runtime.port_db")

PORT_DB_DIR = "testrelay"
PORT_DB_NAME = "test_reporter_port_db.json"


def default_port_db_path() -> Path:
    return Path(tempfile.gettempdir()) / PORT_DB_DIR / PORT_DB_NAME


class PortDatabase:
    def __init__(self, path: Path | None = None):
        self.path = path or default_port_db_path()

    def read(self) -> dict[str, int]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            log.warning("Ignoring unreadable port database", path=str(self.path), error=str(e))
            return {}
        if not isinstance(data, dict):
            return {}
        return {key: value for key, value in data.items() if isinstance(value, int)}

    def lookup(self, workspace: Path) -> int | None:
        return self.read().get(str(workspace.resolve()))

    def record(self, workspace: Path, port: int) -> None:
        entries = self.read()
        entries[str(workspace.resolve())] = port
        self._write(entries)
        log.debug("Recorded reporter port", workspace=str(workspace), port=port)

    def forget(self, workspace: Path, port: int) -> None:
        """Drops the entry, unless another run has replaced it in the meantime."""
        entries = self.read()
        key = str(workspace.resolve())
        if entries.get(key) == port:
            del entries[key]
            self._write(entries)

    def _write(self, entries: dict[str, int]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".port_db.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entries, f)
            os.replace(tmp_name, self.path)
        except OSError as e:
            log.warning("Failed to update port database", path=str(self.path), error=str(e))
