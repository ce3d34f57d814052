#
# src/testrelay/runtime/engine.py
#
"""
The streaming engine: binds a loopback socket, starts the test command in
the requested mode and maps reporter events onto the test run as they
arrive.

One StreamingRunner handles exactly one command execution. Reading the
socket and applying events are decoupled through a bounded queue, so a slow
hierarchy lookup applies backpressure to the reporter instead of dropping
events. Lookups for the same test id are chained so that a test's start is
always applied before its result.
"""

import asyncio
import os
import shlex
from collections.abc import Awaitable, Callable, Mapping

import structlog

from testrelay.cancellation import LinkedCancellationSource
from testrelay.config import RunnerConfig
from testrelay.exceptions import ProtocolError, SpawnError, UnmatchedIdWarning
from testrelay.model.node import TestNode
from testrelay.model.workspace import WorkspaceFolder
from testrelay.protocol import EventKind, TestEvent, decode_event, read_message
from testrelay.protocols import DebuggerLauncher, Terminal
from testrelay.selection import RunMode
from testrelay.state import RunPhase, TestRun
from testrelay.telemetry import StructLogger

from .port_db import PortDatabase
from .processes import terminate_process_group
from .terminal import INTERRUPT, TerminalManager

log: StructLogger = structlog.get_logger("runtime.engine")

FindTestItem = Callable[[str, str, int | None], Awaitable[TestNode | None]]

CANCELLED_MESSAGE = "\r\nTest run cancelled."

END_FINISH = "finish"
END_CONNECTION_CLOSED = "connection closed"
END_CANCELLED = "cancelled"
END_NO_REPORTER = "session ended without a reporter connection"
# How long to wait for a reporter that may still be in the accept backlog
# after its process has already exited.
LATE_CONNECTION_GRACE_SECONDS = 0.5
OUTPUT_CHUNK = 4096

_CLOSED = object()


class StreamingRunner:
    """Executes one resolved command and streams its reporter's events into a TestRun."""

    def __init__(
        self,
        run: TestRun,
        find_test_item: FindTestItem,
        config: RunnerConfig,
        terminals: TerminalManager | None = None,
        debugger: DebuggerLauncher | None = None,
        port_db: PortDatabase | None = None,
    ):
        self.run = run
        self.find_test_item = find_test_item
        self.config = config
        self.terminals = terminals
        self.debugger = debugger
        self.port_db = port_db

        self.port: int | None = None
        self.exit_code: int | None = None
        self.end_reason: str | None = None

        self._mode: RunMode = RunMode.RUN
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=config.event_queue_size)
        self._stream_done = asyncio.Event()
        self._connected = asyncio.Event()
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task | None = None
        self._processor_task: asyncio.Task | None = None
        self._abort_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None
        self._lookups: dict[str, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()
        self._process: asyncio.subprocess.Process | None = None
        self._pumps: list[asyncio.Task] = []
        self._terminal: Terminal | None = None
        self._cancelled = False
        self._log = log

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def finished(self) -> bool:
        """True when the reporter sent ``finish`` before the stream ended."""
        return self.end_reason == END_FINISH

    async def execute(
        self,
        command: str,
        env_overrides: Mapping[str, str],
        workspace: WorkspaceFolder,
        mode: RunMode,
        scope: LinkedCancellationSource,
    ) -> None:
        """
        Runs ``command`` in ``workspace`` and returns once the stream has
        ended and every received event has been applied.

        Raises SpawnError when the command, terminal or debug session could
        not be started. The socket is closed in every case.
        """
        self._mode = mode
        self._log = log.bind(workspace=workspace.name, mode=mode.value)
        if scope.is_cancellation_requested:
            self._log.info("Run cancelled before execution started")
            self._cancelled = True
            return

        self.run.set_phase(RunPhase.BINDING_SOCKET)
        server = await asyncio.start_server(self._on_connection, host="localhost", port=0)
        self.port = server.sockets[0].getsockname()[1]
        self._log = self._log.bind(port=self.port)
        self._log.info("Listening for reporter events", emoji="👂")
        if self.port_db is not None:
            self.port_db.record(workspace.path, self.port)

        overrides = {**env_overrides, self.config.port_env_var: str(self.port)}
        self._processor_task = asyncio.create_task(self._process_events())
        registration = None
        try:
            self.run.set_phase(RunPhase.SPAWNING)
            if mode is RunMode.RUN_IN_TERMINAL:
                await self._type_into_terminal(command, overrides, workspace)
            elif mode is RunMode.DEBUG:
                await self._launch_debugger(command, overrides, workspace)
            else:
                await self._spawn_process(command, overrides, workspace)

            # Registering after spawning means a cancellation that already
            # happened is applied immediately to the process we now own.
            registration = scope.on_cancellation_requested(self._on_cancel)
            self.run.set_phase(RunPhase.STREAMING)
            await self._stream_done.wait()
            self._log.info("Event stream ended", reason=self.end_reason)
        finally:
            if registration is not None:
                registration.dispose()
            self.run.set_phase(RunPhase.DRAINING)
            await self._drain(server)
            if self.port_db is not None:
                self.port_db.forget(workspace.path, self.port)

    # --- Spawning ---

    async def _spawn_process(self, command: str, overrides: Mapping[str, str], workspace: WorkspaceFolder) -> None:
        try:
            self._process = await asyncio.create_subprocess_shell(
                command,
                env={**os.environ, **overrides},
                cwd=workspace.path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError("Failed to start test process", command=command, details=e) from e
        self._log.info("Started test process", pid=self._process.pid, command=command, emoji="🚀")
        assert self._process.stdout is not None and self._process.stderr is not None
        self._pumps = [
            asyncio.create_task(self._pump_output(self._process.stdout)),
            asyncio.create_task(self._pump_output(self._process.stderr)),
        ]
        self._watch_task = asyncio.create_task(self._watch_session(self._wait_for_process()))

    async def _type_into_terminal(self, command: str, overrides: Mapping[str, str], workspace: WorkspaceFolder) -> None:
        if self.terminals is None:
            raise SpawnError("No terminal available for run-in-terminal mode", command=command)
        try:
            terminal = await self.terminals.get_or_create(f"{workspace.name}: test", workspace.path)
            for name, value in overrides.items():
                terminal.send_text(f"export {name}={shlex.quote(value)}")
            terminal.show()
            terminal.send_text(command)
        except OSError as e:
            raise SpawnError("Failed to open terminal", command=command, details=e) from e
        self._terminal = terminal
        self._log.info("Sent command to terminal", terminal=terminal.name, command=command, emoji="⌨️")

    async def _launch_debugger(self, command: str, overrides: Mapping[str, str], workspace: WorkspaceFolder) -> None:
        if self.debugger is None:
            raise SpawnError("Failed to start debugging session, no debugger is configured", command=command)
        started = await self.debugger.launch(command, {**os.environ, **overrides}, workspace.path)
        if not started:
            raise SpawnError("Failed to start debugging session", command=command)
        self._log.info("Debug session started", emoji="🐞")
        self._watch_task = asyncio.create_task(self._watch_session(self.debugger.wait()))

    async def _wait_for_process(self) -> None:
        assert self._process is not None
        self.exit_code = await self._process.wait()
        self._log.debug("Test process exited", exit_code=self.exit_code)

    async def _watch_session(self, session_ended: Awaitable[None]) -> None:
        """
        Ends the stream when the process or debug session goes away without a
        reporter ever connecting. Once connected, the dropped connection ends
        the stream instead.
        """
        await session_ended
        if self._connected.is_set():
            return
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=LATE_CONNECTION_GRACE_SECONDS)
        except TimeoutError:
            self._end_stream(END_NO_REPORTER)

    async def _pump_output(self, stream: asyncio.StreamReader) -> None:
        while chunk := await stream.read(OUTPUT_CHUNK):
            self.run.append_output(chunk.decode("utf-8", errors="replace"))

    # --- Socket side ---

    async def _on_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._writer is not None or self._stream_done.is_set():
            self._log.warning("Rejecting additional reporter connection", peer=writer.get_extra_info("peername"))
            writer.close()
            return

        self._writer = writer
        self._reader_task = asyncio.current_task()
        self._connected.set()
        self._log.debug("Reporter connected", peer=writer.get_extra_info("peername"))

        while True:
            try:
                message = await read_message(reader)
            except ProtocolError as e:
                self._log.warning("Dropping malformed frame", error=str(e))
                if e.recoverable:
                    continue
                break
            except ConnectionError as e:
                self._log.warning("Reporter connection failed", error=str(e))
                break
            if message is None:
                break
            await self._queue.put(message)

        self._end_stream(END_CONNECTION_CLOSED)

    # --- Event side ---

    async def _process_events(self) -> None:
        while True:
            message = await self._queue.get()
            if message is _CLOSED:
                return
            try:
                event = decode_event(message)
            except ProtocolError as e:
                self._log.warning("Ignoring invalid event", error=str(e), payload=message)
                continue

            if event.kind.targets_test:
                self._schedule_lookup(event)
            elif event.kind is EventKind.FINISH:
                self._end_stream(END_FINISH)
            else:
                self.run.append_output(event.message or "")

    def _schedule_lookup(self, event: TestEvent) -> None:
        assert event.id is not None
        previous = self._lookups.get(event.id)
        task = asyncio.create_task(self._apply(event, previous))
        self._lookups[event.id] = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _apply(self, event: TestEvent, previous: asyncio.Task | None) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        assert event.id is not None and event.uri is not None
        try:
            node = await self.find_test_item(event.id, event.uri, event.line)
        except Exception:
            self._log.exception("Test lookup failed", test_id=event.id, uri=event.uri)
            return
        if node is None:
            warning = UnmatchedIdWarning(event.id, event.uri)
            self._log.warning(str(warning), test_id=event.id, uri=event.uri, kind=event.kind.value)
            return

        if event.kind.is_terminal:
            self._record_result(node, event)
        else:
            self.run.started(node)

    def _record_result(self, node: TestNode, event: TestEvent) -> None:
        if event.kind is EventKind.PASS:
            self.run.passed(node)
        elif event.kind is EventKind.SKIP:
            self.run.skipped(node)
        elif event.kind is EventKind.FAIL:
            self.run.failed(node, event.message)
        else:
            self.run.errored(node, event.message)

    # --- Ending ---

    def _end_stream(self, reason: str) -> None:
        if self._stream_done.is_set():
            return
        self.end_reason = reason
        self._stream_done.set()

    def _on_cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._log.info("Cancelling test execution", emoji="🛑")
        self.run.append_output(CANCELLED_MESSAGE)
        self._end_stream(END_CANCELLED)
        self._abort_task = asyncio.create_task(self._abort())

    async def _abort(self) -> None:
        if self._mode is RunMode.RUN_IN_TERMINAL:
            if self._terminal is not None and self._terminal.is_alive:
                self._terminal.send_text(INTERRUPT, add_new_line=False)
        elif self._mode is RunMode.DEBUG:
            if self.debugger is not None:
                await self.debugger.stop()
        elif self._process is not None:
            await terminate_process_group(self._process, self.config.terminate_grace_seconds)

    async def _drain(self, server: asyncio.Server) -> None:
        """Stops reading, applies what was already received and releases the socket."""
        if self._abort_task is not None:
            await self._abort_task

        if self._process is not None and self._process.returncode is None:
            try:
                await asyncio.wait_for(self._process.wait(), timeout=self.config.terminate_grace_seconds)
            except TimeoutError:
                self._log.warning("Test process still running after its stream ended, terminating it")
                await terminate_process_group(self._process, self.config.terminate_grace_seconds)
        if self._process is not None:
            self.exit_code = self._process.returncode
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)

        if self._watch_task is not None and not self._watch_task.done():
            self._watch_task.cancel()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            await asyncio.wait({self._reader_task})

        if self._processor_task is not None:
            await self._queue.put(_CLOSED)
            await self._processor_task
        while self._inflight:
            await asyncio.wait(set(self._inflight))

        if self._writer is not None:
            self._writer.close()
        server.close()
        await server.wait_closed()
        self._log.debug("Released reporter socket")


# 🔼⚙️
