# tests/unit/test_engine.py

"""
Tests for the streaming engine against real child processes and a real
loopback socket.
"""

import asyncio
from pathlib import Path

import pytest

from testrelay.cancellation import CancellationSource, LinkedCancellationSource
from testrelay.exceptions import SpawnError
from testrelay.model import TAG_DYNAMIC, TestHierarchy, WorkspaceFolder
from testrelay.protocol import encode_message
from testrelay.runtime.engine import CANCELLED_MESSAGE, END_FINISH, StreamingRunner
from testrelay.runtime.explorer_interface import ExplorerInterface
from testrelay.runtime.port_db import PortDatabase
from testrelay.runtime.terminal import INTERRUPT
from testrelay.selection import RunMode
from testrelay.state import NodeStatus, RunPhase, TestRun

ADD_ID = "tests/test_math.py::TestMath::test_add"
SUB_ID = "tests/test_math.py::TestMath::test_sub"

REPORTING_CHILD = """
    import os
    from testrelay.reporter.client import EventReporter

    uri = os.environ["MATH_URI"]
    reporter = EventReporter()
    reporter.append_output("collected 2 items\\n")
    reporter.start_test("{add}", uri, 3)
    reporter.record_pass("{add}", uri)
    reporter.start_test("{sub}", uri, 6)
    reporter.record_fail("{sub}", "assert 1 == 2", uri)
    reporter.record_pass("tests/test_math.py::nope", uri)
    reporter.shutdown()
"""

HANGING_CHILD = """
    import os
    import time
    from testrelay.reporter.client import EventReporter

    reporter = EventReporter()
    reporter.start_test("{add}", os.environ["MATH_URI"])
    time.sleep(30)
"""


class FakeTerminal:
    def __init__(self):
        self.sent: list[str] = []
        self.shown = False

    @property
    def name(self) -> str:
        return "project: test"

    @property
    def is_alive(self) -> bool:
        return True

    def show(self) -> None:
        self.shown = True

    def send_text(self, text: str, add_new_line: bool = True) -> None:
        self.sent.append(text)


class FakeTerminals:
    def __init__(self):
        self.terminal = FakeTerminal()
        self.requested: list[tuple[str, Path]] = []

    async def get_or_create(self, name: str, cwd: Path) -> FakeTerminal:
        self.requested.append((name, cwd))
        return self.terminal


class ShellDebugger:
    """Runs the program as a plain subprocess, standing in for a debug adapter."""

    def __init__(self, start: bool = True):
        self.start = start
        self.process: asyncio.subprocess.Process | None = None
        self.stopped = False

    async def launch(self, program, env, working_directory) -> bool:
        if not self.start:
            return False
        self.process = await asyncio.create_subprocess_shell(program, env=dict(env), cwd=working_directory)
        return True

    async def stop(self) -> None:
        self.stopped = True
        if self.process is not None and self.process.returncode is None:
            self.process.kill()

    async def wait(self) -> None:
        await self.process.wait()


@pytest.fixture
def run(host) -> TestRun:
    return TestRun(explorer=ExplorerInterface(host))


@pytest.fixture
def port_db(runner_config) -> PortDatabase:
    return PortDatabase(runner_config.port_db_path)


@pytest.fixture
def make_runner(run: TestRun, hierarchy: TestHierarchy, runner_config, port_db):
    def make(**kwargs) -> StreamingRunner:
        return StreamingRunner(run, hierarchy.find_test_item, runner_config, port_db=port_db, **kwargs)

    return make


@pytest.fixture
def scope():
    return LinkedCancellationSource(CancellationSource().token)


async def _eventually(predicate, timeout: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
class TestRunMode:
    async def test_events_are_applied_to_the_run(
        self, make_runner, script_command, workspace: WorkspaceFolder, math_file_uri, run, hierarchy, scope
    ):
        runner = make_runner()
        command = script_command(REPORTING_CHILD.format(add=ADD_ID, sub=SUB_ID))

        await runner.execute(command, {"MATH_URI": math_file_uri}, workspace, RunMode.RUN, scope)

        add = hierarchy.find_by_id(ADD_ID)
        sub = hierarchy.find_by_id(SUB_ID)
        assert run.status_of(add) is NodeStatus.PASSED
        assert run.status_of(sub) is NodeStatus.FAILED
        assert run.messages_of(sub) == ["assert 1 == 2"]
        assert run.result_of(add).started_at is not None
        assert run.result_of(sub).started_at is not None
        assert "collected 2 items\n" in run.output
        assert runner.end_reason == "finish"
        assert runner.connected
        assert runner.exit_code == 0
        assert run.phase is RunPhase.DRAINING

    async def test_port_is_recorded_while_running_and_forgotten_after(
        self, make_runner, script_command, workspace: WorkspaceFolder, math_file_uri, port_db, scope
    ):
        command = script_command(
            """
            import json, os, sys
            from pathlib import Path
            print(json.loads(Path(os.environ["PORT_DB"]).read_text()))
            """
        )
        runner = make_runner()

        await runner.execute(command, {"PORT_DB": str(port_db.path)}, workspace, RunMode.RUN, scope)

        assert str(runner.port) in "".join(runner.run.output)
        assert port_db.lookup(workspace.path) is None

    async def test_process_exit_without_reporter_ends_stream(
        self, make_runner, script_command, workspace: WorkspaceFolder, run, scope
    ):
        command = script_command(
            """
            import sys
            print("ImportError: no module named pytest")
            sys.exit(3)
            """
        )
        runner = make_runner()

        await runner.execute(command, {}, workspace, RunMode.RUN, scope)

        assert not runner.connected
        assert runner.exit_code == 3
        assert runner.end_reason == "session ended without a reporter connection"
        assert "no module named pytest" in "".join(run.output)

    async def test_spawn_failure_raises_and_releases_socket(self, make_runner, workspace: WorkspaceFolder, scope, monkeypatch):
        async def refuse(*args, **kwargs):
            raise FileNotFoundError("/bin/sh")

        monkeypatch.setattr(asyncio, "create_subprocess_shell", refuse)
        runner = make_runner()

        with pytest.raises(SpawnError, match="Failed to start test process"):
            await runner.execute("pytest", {}, workspace, RunMode.RUN, scope)

        with pytest.raises(OSError):
            await asyncio.open_connection("localhost", runner.port)


@pytest.mark.asyncio
class TestCancellation:
    async def test_cancel_kills_process_and_keeps_reported_results(
        self, make_runner, script_command, workspace: WorkspaceFolder, math_file_uri, run, hierarchy, host
    ):
        caller = CancellationSource()
        scope = LinkedCancellationSource(caller.token)
        runner = make_runner()
        command = script_command(HANGING_CHILD.format(add=ADD_ID))

        task = asyncio.create_task(runner.execute(command, {"MATH_URI": math_file_uri}, workspace, RunMode.RUN, scope))
        await _eventually(lambda: any(status is NodeStatus.STARTED for _, status, _ in host.statuses))
        caller.cancel()
        await asyncio.wait_for(task, timeout=10)

        assert runner.cancelled
        assert runner.end_reason == "cancelled"
        assert runner.exit_code != 0
        assert CANCELLED_MESSAGE in run.output
        assert run.status_of(hierarchy.find_by_id(ADD_ID)) is NodeStatus.STARTED

    async def test_already_cancelled_scope_does_nothing(self, make_runner, workspace: WorkspaceFolder):
        caller = CancellationSource()
        caller.cancel()
        runner = make_runner()

        await runner.execute("exit 0", {}, workspace, RunMode.RUN, LinkedCancellationSource(caller.token))

        assert runner.cancelled
        assert runner.port is None


@pytest.mark.asyncio
class TestTerminalMode:
    async def test_exports_environment_and_reads_events(
        self, make_runner, workspace: WorkspaceFolder, math_file_uri, run, hierarchy, scope
    ):
        terminals = FakeTerminals()
        runner = make_runner(terminals=terminals)
        task = asyncio.create_task(
            runner.execute("pytest tests", {"PYTEST_ADDOPTS": "-p my plugin"}, workspace, RunMode.RUN_IN_TERMINAL, scope)
        )
        await _eventually(lambda: "pytest tests" in terminals.terminal.sent)

        assert terminals.requested == [("project: test", workspace.path)]
        assert terminals.terminal.shown
        assert "export PYTEST_ADDOPTS='-p my plugin'" in terminals.terminal.sent
        assert f"export TESTRELAY_REPORTER_PORT={runner.port}" in terminals.terminal.sent

        reader, writer = await asyncio.open_connection("localhost", runner.port)
        writer.write(encode_message("start", {"id": ADD_ID, "uri": math_file_uri}))
        writer.write(encode_message("pass", {"id": ADD_ID, "uri": math_file_uri}))
        await writer.drain()

        # A second reporter is turned away while the first one is connected.
        extra_reader, extra_writer = await asyncio.open_connection("localhost", runner.port)
        assert await asyncio.wait_for(extra_reader.read(), timeout=5) == b""
        extra_writer.close()

        writer.write(encode_message("finish"))
        await writer.drain()
        await asyncio.wait_for(task, timeout=10)
        writer.close()

        assert run.status_of(hierarchy.find_by_id(ADD_ID)) is NodeStatus.PASSED
        assert runner.end_reason == "finish"

    async def test_cancel_sends_interrupt(self, make_runner, workspace: WorkspaceFolder, run):
        caller = CancellationSource()
        terminals = FakeTerminals()
        runner = make_runner(terminals=terminals)
        task = asyncio.create_task(
            runner.execute("pytest", {}, workspace, RunMode.RUN_IN_TERMINAL, LinkedCancellationSource(caller.token))
        )
        await _eventually(lambda: "pytest" in terminals.terminal.sent)

        caller.cancel()
        await asyncio.wait_for(task, timeout=10)

        assert terminals.terminal.sent[-1] == INTERRUPT
        assert CANCELLED_MESSAGE in run.output

    async def test_missing_terminal_support_is_a_spawn_error(self, make_runner, workspace: WorkspaceFolder, scope):
        with pytest.raises(SpawnError):
            await make_runner().execute("pytest", {}, workspace, RunMode.RUN_IN_TERMINAL, scope)


@pytest.mark.asyncio
class TestDebugMode:
    async def test_debug_session_streams_events(
        self, make_runner, script_command, workspace: WorkspaceFolder, math_file_uri, run, hierarchy, scope
    ):
        debugger = ShellDebugger()
        runner = make_runner(debugger=debugger)
        command = script_command(REPORTING_CHILD.format(add=ADD_ID, sub=SUB_ID))

        await runner.execute(command, {"MATH_URI": math_file_uri}, workspace, RunMode.DEBUG, scope)

        assert run.status_of(hierarchy.find_by_id(ADD_ID)) is NodeStatus.PASSED
        assert not debugger.stopped

    async def test_debug_session_end_without_reporter_ends_stream(
        self, make_runner, script_command, workspace: WorkspaceFolder, scope
    ):
        runner = make_runner(debugger=ShellDebugger())

        await runner.execute(script_command("pass\n"), {}, workspace, RunMode.DEBUG, scope)

        assert runner.end_reason == "session ended without a reporter connection"

    async def test_debugger_refusing_to_start_is_a_spawn_error(self, make_runner, workspace: WorkspaceFolder, scope):
        runner = make_runner(debugger=ShellDebugger(start=False))
        with pytest.raises(SpawnError, match="Failed to start debugging session"):
            await runner.execute("pytest", {}, workspace, RunMode.DEBUG, scope)


def _frame(method: str, test_id: str | None = None, uri: str | None = None, **params) -> bytes:
    if test_id is not None:
        params = {"id": test_id, "uri": uri, **params}
    return encode_message(method, params)


async def _stream_frames(make_runner, workspace: WorkspaceFolder, scope, *frames: bytes) -> StreamingRunner:
    """Plays raw frames to a runner in terminal mode, where the test owns the reporter side of the socket."""
    terminals = FakeTerminals()
    runner = make_runner(terminals=terminals)
    task = asyncio.create_task(runner.execute("pytest", {}, workspace, RunMode.RUN_IN_TERMINAL, scope))
    await _eventually(lambda: "pytest" in terminals.terminal.sent)

    _, writer = await asyncio.open_connection("localhost", runner.port)
    writer.write(b"".join(frames))
    await writer.drain()
    await asyncio.wait_for(task, timeout=10)
    writer.close()
    return runner


@pytest.mark.asyncio
class TestEventStream:
    async def test_interleaved_results_are_matched_to_their_tests(
        self, make_runner, workspace: WorkspaceFolder, math_file_uri, run, hierarchy, scope
    ):
        runner = await _stream_frames(
            make_runner,
            workspace,
            scope,
            _frame("start", ADD_ID, math_file_uri),
            _frame("start", SUB_ID, math_file_uri),
            _frame("fail", ADD_ID, math_file_uri, message="boom"),
            _frame("pass", SUB_ID, math_file_uri),
            _frame("finish"),
        )

        add, sub = hierarchy.find_by_id(ADD_ID), hierarchy.find_by_id(SUB_ID)
        assert run.status_of(add) is NodeStatus.FAILED
        assert run.messages_of(add) == ["boom"]
        assert run.status_of(sub) is NodeStatus.PASSED
        assert run.result_of(add).started_at is not None
        assert run.result_of(sub).started_at is not None
        assert runner.finished

    async def test_dynamic_test_is_synthesized_once(
        self, make_runner, workspace: WorkspaceFolder, math_file_uri, run, hierarchy, host, scope
    ):
        param_id = "tests/test_math.py::TestMath::test_param[1-2]"
        replay = [_frame("start", param_id, math_file_uri, line=4), _frame("pass", param_id, math_file_uri)]

        await _stream_frames(make_runner, workspace, scope, *replay, *replay, _frame("finish"))

        group = hierarchy.find_by_id("tests/test_math.py::TestMath")
        node = hierarchy.find_by_id(param_id)
        assert list(group.children) == [ADD_ID, SUB_ID, param_id]
        assert TAG_DYNAMIC in node.tags
        assert node.label == "test_param[1-2]"
        assert node.range.start.line == 4
        assert run.status_of(node) is NodeStatus.PASSED
        assert [added.id for added in host.added].count(param_id) == 1

    async def test_dynamic_child_of_a_failed_test_keeps_its_own_result(
        self, make_runner, workspace: WorkspaceFolder, math_file_uri, run, hierarchy, scope
    ):
        child_id = f"{ADD_ID}[x-1]"
        child_events = [_frame("start", child_id, math_file_uri, line=7), _frame("pass", child_id, math_file_uri)]

        await _stream_frames(
            make_runner,
            workspace,
            scope,
            _frame("start", ADD_ID, math_file_uri),
            _frame("start", SUB_ID, math_file_uri),
            _frame("fail", ADD_ID, math_file_uri, message="boom"),
            _frame("pass", SUB_ID, math_file_uri),
            *child_events,
            *child_events,
            _frame("finish"),
        )

        add, child = hierarchy.find_by_id(ADD_ID), hierarchy.find_by_id(child_id)
        assert list(add.children) == [child_id]
        assert run.status_of(child) is NodeStatus.PASSED
        assert run.messages_of(child) == []
        assert "boom" in run.messages_of(add)
        assert run.status_of(hierarchy.find_by_id(SUB_ID)) is NodeStatus.PASSED

    async def test_bad_frames_and_unknown_ids_do_not_stop_the_stream(
        self, make_runner, workspace: WorkspaceFolder, math_file_uri, run, hierarchy, scope
    ):
        runner = await _stream_frames(
            make_runner,
            workspace,
            scope,
            _frame("start", ADD_ID, math_file_uri),
            b"Content-Length: 9\r\n\r\n{not json",
            _frame("explode", ADD_ID, math_file_uri),
            _frame("fail", ADD_ID, math_file_uri),
            _frame("pass", "tests/test_math.py::TestMissing::test_gone", math_file_uri),
            _frame("pass", ADD_ID, math_file_uri),
            _frame("start", SUB_ID, math_file_uri),
            _frame("skip", SUB_ID, math_file_uri),
            _frame("finish"),
        )

        assert run.status_of(hierarchy.find_by_id(ADD_ID)) is NodeStatus.PASSED
        assert run.status_of(hierarchy.find_by_id(SUB_ID)) is NodeStatus.SKIPPED
        assert hierarchy.find_by_id("tests/test_math.py::TestMissing::test_gone") is None
        assert runner.finished
        assert runner.end_reason == END_FINISH
