#
# src/testrelay/reporter/client.py
#
"""
The reporter side of the event channel. Runs inside the test process and
writes framed notifications to the engine's socket.

Construct one EventReporter per test process and hand it to whatever adapts
the test framework's hooks; it is not a process-wide singleton.
"""

import io
import os
import socket
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog

from testrelay.config import RunnerConfig
from testrelay.protocol import EventKind, encode_message
from testrelay.runtime.port_db import PortDatabase
from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("reporter.client")

_DEFAULTS = RunnerConfig()
CONNECT_TIMEOUT_SECONDS = 5.0


def file_uri(path: str | Path) -> str:
    return Path(path).resolve().as_uri()


def is_coverage_run(environ: Mapping[str, str] | None = None) -> bool:
    environ = os.environ if environ is None else environ
    return environ.get(_DEFAULTS.runner_env_var) == "coverage"


def executed_under_runner(environ: Mapping[str, str] | None = None) -> bool:
    environ = os.environ if environ is None else environ
    return bool(environ.get(_DEFAULTS.runner_env_var))


class EventReporter:
    """
    Writes test lifecycle events to the engine.

    The port comes from the environment, else from the port database entry
    for the working directory. With neither (or when connecting fails) the
    events go to an in-memory buffer so the test run itself is unaffected.
    """

    def __init__(
        self,
        environ: Mapping[str, str] | None = None,
        port_db: PortDatabase | None = None,
        cwd: Path | None = None,
    ):
        self._environ = os.environ if environ is None else environ
        self._port_db = port_db or PortDatabase()
        self._cwd = cwd or Path.cwd()
        self._socket: socket.socket | None = None
        self.buffer: io.BytesIO | None = None
        self._invoked_shutdown = False
        self._open()

    @property
    def connected(self) -> bool:
        return self._socket is not None

    @property
    def coverage_mode(self) -> bool:
        return is_coverage_run(self._environ)

    # --- Events ---

    def start_test(self, id: str, uri: str, line: int | None = None) -> None:
        params: dict[str, Any] = {"id": id, "uri": uri}
        if line is not None:
            params["line"] = line
        self._send(EventKind.START, **params)

    def record_pass(self, id: str, uri: str) -> None:
        self._send(EventKind.PASS, id=id, uri=uri)

    def record_fail(self, id: str, message: str, uri: str) -> None:
        self._send(EventKind.FAIL, id=id, message=message, uri=uri)

    def record_skip(self, id: str, uri: str) -> None:
        self._send(EventKind.SKIP, id=id, uri=uri)

    def record_error(self, id: str, message: str | None, uri: str) -> None:
        self._send(EventKind.ERROR, id=id, message=message, uri=uri)

    def append_output(self, message: str) -> None:
        if message:
            self._send(EventKind.APPEND_OUTPUT, message=message)

    # --- Shutdown ---

    def shutdown(self) -> None:
        """
        Announces the end of the run. In coverage mode this is a no-op: the
        coverage writer calls ``internal_shutdown`` once the artifact exists.
        """
        if self.coverage_mode:
            return
        self.internal_shutdown()

    def internal_shutdown(self) -> None:
        if self._invoked_shutdown:
            return
        self._invoked_shutdown = True
        self._send(EventKind.FINISH)
        self._close()

    def at_exit(self) -> None:
        """Makes sure ``finish`` is sent even when the run died before reaching its normal end."""
        if not self._invoked_shutdown:
            log.debug("Sending finish from exit handler")
            self.internal_shutdown()

    # --- Internals ---

    def _open(self) -> None:
        port = self._environ.get(_DEFAULTS.port_env_var) or self._port_db.lookup(self._cwd)
        if not port:
            self.buffer = io.BytesIO()
            return
        try:
            self._socket = socket.create_connection(("localhost", int(port)), timeout=CONNECT_TIMEOUT_SECONDS)
            self._socket.settimeout(None)
        except (OSError, ValueError) as e:
            log.warning("Could not connect to the test engine, buffering events", port=port, error=str(e))
            self.buffer = io.BytesIO()

    def _send(self, kind: EventKind, **params: Any) -> None:
        frame = encode_message(kind.value, params)
        if self._socket is None:
            if self.buffer is not None and not self.buffer.closed:
                self.buffer.write(frame)
            return
        try:
            self._socket.sendall(frame)
        except OSError as e:
            log.warning("Lost connection to the test engine, buffering remaining events", error=str(e))
            self._close()
            self.buffer = io.BytesIO()
            self.buffer.write(frame)

    def _close(self) -> None:
        if self._socket is not None:
            try:
                self._socket.close()
            finally:
                self._socket = None


# 🔼⚙️
