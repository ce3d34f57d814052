# tests/unit/test_controller.py

import asyncio
import json
from pathlib import Path

import pytest

from testrelay.cancellation import CancellationSource
from testrelay.config import RunnerConfig, TestRelayConfig
from testrelay.model import TestHierarchy, WorkspaceFolder, path_to_uri
from testrelay.protocols import ResolvedCommand, ResolveResponse
from testrelay.runtime import controller as controller_module
from testrelay.runtime.controller import RESOLUTION_FAILED_MESSAGE, TestController
from testrelay.runtime.explorer_interface import ExplorerInterface
from testrelay.runtime.port_db import PortDatabase
from testrelay.runtime.watcher import ChangeKind, FileChange
from testrelay.selection import RunMode, RunRequest
from testrelay.state import NodeStatus

GROUP_ID = "tests/test_math.py::TestMath"
ADD_ID = "tests/test_math.py::TestMath::test_add"
SUB_ID = "tests/test_math.py::TestMath::test_sub"

PASSING_CHILD = """
    import os
    from testrelay.reporter.client import EventReporter

    uri = os.environ["MATH_URI"]
    reporter = EventReporter()
    for test_id in ("{add}", "{sub}"):
        reporter.start_test(test_id, uri)
        reporter.record_pass(test_id, uri)
    reporter.shutdown()
"""

CRASHING_CHILD = """
    import os
    from testrelay.reporter.client import EventReporter

    uri = os.environ["MATH_URI"]
    reporter = EventReporter()
    reporter.start_test("{add}", uri)
    reporter.record_pass("{add}", uri)
    reporter.start_test("{sub}", uri)
    os._exit(1)
"""

STALLING_CHILD = """
    import os
    import time
    from testrelay.reporter.client import EventReporter

    uri = os.environ["MATH_URI"]
    reporter = EventReporter()
    reporter.start_test("{add}", uri)
    reporter.record_pass("{add}", uri)
    time.sleep(30)
"""


class FakeWatcher:
    """Stands in for the watchdog-backed watcher; tests push changes directly."""

    instances: list["FakeWatcher"] = []

    def __init__(self, folders, config):
        self.folders = folders
        self.changes: asyncio.Queue[FileChange] = asyncio.Queue()
        self.started = False
        self.stopped = False
        FakeWatcher.instances.append(self)

    def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def controller_for(relay_config: TestRelayConfig, workspace: WorkspaceFolder, hierarchy: TestHierarchy, host):
    def make(**kwargs) -> TestController:
        return TestController(
            relay_config,
            hierarchy.registry,
            hierarchy,
            explorer=ExplorerInterface(host),
            port_db=PortDatabase(relay_config.runner.port_db_path),
            **kwargs,
        )

    return make


@pytest.fixture
def math_group(hierarchy: TestHierarchy, math_file_uri):
    async def resolve():
        await hierarchy.refresh()
        await hierarchy.resolve(hierarchy.find_by_id(math_file_uri))
        return hierarchy.find_by_id(GROUP_ID)

    return resolve


@pytest.fixture(autouse=True)
def math_uri_env(monkeypatch, math_file_uri):
    monkeypatch.setenv("MATH_URI", math_file_uri)
    monkeypatch.delenv("PYTEST_ADDOPTS", raising=False)


@pytest.mark.asyncio
class TestRunTests:
    async def test_resolved_command_runs_and_reports(
        self, controller_for, analysis_client, math_group, script_command, hierarchy, host
    ):
        group = await math_group()
        analysis_client.response = ResolveResponse(
            commands=[ResolvedCommand(command_line=script_command(PASSING_CHILD.format(add=ADD_ID, sub=SUB_ID)))]
        )

        run = await controller_for().run_tests(RunRequest(included=[group]), CancellationSource().token)

        assert run.sealed
        assert host.sealed == [run]
        assert run.status_of(group) is NodeStatus.PASSED
        assert [item["id"] for item in analysis_client.resolve_calls[0]] == [GROUP_ID]
        assert run.counts()[NodeStatus.PASSED] == 2

    async def test_resolution_failure_errors_every_selected_leaf(self, controller_for, analysis_client, math_group):
        group = await math_group()
        analysis_client.response = None

        run = await controller_for().run_tests(RunRequest(included=[group]), CancellationSource().token)

        for leaf in group.children.values():
            assert run.status_of(leaf) is NodeStatus.ERRORED
            assert run.messages_of(leaf) == [RESOLUTION_FAILED_MESSAGE]
        assert run.sealed

    async def test_exclusions_are_not_enqueued(self, controller_for, analysis_client, math_group, script_command):
        group = await math_group()
        sub = group.children[SUB_ID]
        analysis_client.response = ResolveResponse(commands=[ResolvedCommand(command_line=script_command("pass\n"))])

        run = await controller_for().run_tests(
            RunRequest(included=[group], excluded=[sub]), CancellationSource().token
        )

        assert run.status_of(sub) is None
        assert [item["children"] for item in analysis_client.resolve_calls[0]] == [
            [{"id": ADD_ID, "label": "test_add", "uri": group.uri, "tags": ["supports-debug"], "children": []}]
        ]

    async def test_spawn_failure_fails_the_run_and_cancels_the_scope(
        self, controller_for, analysis_client, math_group, monkeypatch
    ):
        group = await math_group()
        analysis_client.response = ResolveResponse(commands=[ResolvedCommand("pytest -x"), ResolvedCommand("pytest -k other")])

        async def refuse(*args, **kwargs):
            raise PermissionError("denied")

        monkeypatch.setattr(asyncio, "create_subprocess_shell", refuse)
        caller = CancellationSource()

        run = await controller_for().run_tests(RunRequest(included=[group]), caller.token)

        assert run.failure_message == "Failed to start test process (Command: 'pytest -x')"
        for leaf in group.children.values():
            assert run.status_of(leaf) is NodeStatus.ENQUEUED
            assert run.messages_of(leaf) == [run.failure_message]
        assert not caller.is_cancellation_requested

    async def test_silent_process_exit_is_explained(self, controller_for, analysis_client, math_group, script_command):
        group = await math_group()
        analysis_client.response = ResolveResponse(
            commands=[ResolvedCommand(command_line=script_command("import sys\nsys.exit(4)\n"))]
        )

        run = await controller_for().run_tests(RunRequest(included=[group]), CancellationSource().token)

        for leaf in group.children.values():
            assert run.status_of(leaf) is NodeStatus.ENQUEUED
            assert run.messages_of(leaf) == ["Test process exited with code 4 before reporting any results"]

    async def test_dropped_connection_explains_unreported_tests(
        self, controller_for, analysis_client, math_group, script_command
    ):
        group = await math_group()
        analysis_client.response = ResolveResponse(
            commands=[ResolvedCommand(command_line=script_command(CRASHING_CHILD.format(add=ADD_ID, sub=SUB_ID)))]
        )

        run = await controller_for().run_tests(RunRequest(included=[group]), CancellationSource().token)

        add, sub = group.children[ADD_ID], group.children[SUB_ID]
        assert run.status_of(add) is NodeStatus.PASSED
        assert run.messages_of(add) == []
        assert run.status_of(sub) is NodeStatus.STARTED
        assert run.messages_of(sub) == [
            "Test process stopped reporting before it finished (connection closed); it exited with code 1"
        ]

    async def test_cancelled_run_explains_unreported_tests(
        self, controller_for, analysis_client, math_group, script_command, host
    ):
        group = await math_group()
        analysis_client.response = ResolveResponse(
            commands=[
                ResolvedCommand(command_line=script_command(STALLING_CHILD.format(add=ADD_ID))),
                ResolvedCommand(command_line=script_command("pass\n")),
            ]
        )
        caller = CancellationSource()

        task = asyncio.create_task(controller_for().run_tests(RunRequest(included=[group]), caller.token))
        deadline = asyncio.get_running_loop().time() + 10
        while (ADD_ID, NodeStatus.PASSED, None) not in host.statuses:
            assert asyncio.get_running_loop().time() < deadline, "test_add was never reported"
            await asyncio.sleep(0.02)
        caller.cancel()
        run = await asyncio.wait_for(task, timeout=10)

        add, sub = group.children[ADD_ID], group.children[SUB_ID]
        assert run.status_of(add) is NodeStatus.PASSED
        assert run.messages_of(add) == []
        assert run.status_of(sub) is NodeStatus.ENQUEUED
        assert run.messages_of(sub) == ["Test run cancelled."]
        assert run.sealed

    async def test_no_inclusions_runs_every_root(self, controller_for, analysis_client, script_command):
        analysis_client.response = ResolveResponse(commands=[ResolvedCommand(command_line=script_command("pass\n"))])

        await controller_for().run_tests(RunRequest(), CancellationSource().token)

        assert [item["label"] for item in analysis_client.resolve_calls[0]] == ["tests"]


@pytest.mark.asyncio
class TestCoverage:
    async def test_artifact_is_ingested_after_the_run(
        self, controller_for, analysis_client, math_group, script_command, workspace_dir: Path, host
    ):
        group = await math_group()
        child = script_command(
            """
            import json, os
            from pathlib import Path

            assert os.environ["TESTRELAY_TEST_RUNNER"] == "coverage"
            artifact = Path(".testrelay/coverage_result.json")
            artifact.parent.mkdir(exist_ok=True)
            artifact.write_text(json.dumps({
                "lib/calc.py": {"lines": [1, 1], "branches": [], "functions": []},
                ".venv/lib/site.py": {"lines": [1]},
            }))
            """
        )
        analysis_client.response = ResolveResponse(commands=[ResolvedCommand(command_line=child)])

        run = await controller_for().run_tests(
            RunRequest(included=[group], mode=RunMode.COVERAGE), CancellationSource().token
        )

        calc_uri = path_to_uri(workspace_dir / "lib" / "calc.py")
        assert list(run.coverage) == [calc_uri]
        assert run.coverage[calc_uri].percent_covered == 100.0
        assert host.coverage and calc_uri in host.coverage[0]

    async def test_stale_artifact_is_removed_before_running(
        self, controller_for, analysis_client, math_group, script_command, workspace_dir: Path
    ):
        group = await math_group()
        stale = workspace_dir / ".testrelay" / "coverage_result.json"
        stale.parent.mkdir()
        stale.write_text(json.dumps({"lib/calc.py": {"lines": [0, 0]}}))
        analysis_client.response = ResolveResponse(commands=[ResolvedCommand(command_line=script_command("pass\n"))])

        run = await controller_for().run_tests(
            RunRequest(included=[group], mode=RunMode.COVERAGE), CancellationSource().token
        )

        assert run.coverage == {}
        assert not stale.exists()


class TestEnvironment:
    def test_command_reporter_paths_win_and_extend_existing_options(self, controller_for, monkeypatch):
        monkeypatch.setenv("PYTEST_ADDOPTS", "-x")
        response = ResolveResponse(
            commands=[ResolvedCommand("pytest", reporter_paths=["my.plugin"])], reporter_paths=["other.plugin"]
        )

        env = controller_for().build_environment(response, response.commands[0], RunMode.COVERAGE)

        assert env == {"PYTEST_ADDOPTS": "-x -p my.plugin", "TESTRELAY_TEST_RUNNER": "coverage"}

    def test_falls_back_to_response_then_default_paths(self, controller_for):
        controller = controller_for()
        with_response_paths = ResolveResponse(commands=[ResolvedCommand("pytest")], reporter_paths=["shared.plugin"])
        bare = ResolveResponse(commands=[ResolvedCommand("pytest")])

        assert controller.build_environment(
            with_response_paths, with_response_paths.commands[0], RunMode.RUN
        )["PYTEST_ADDOPTS"] == "-p shared.plugin"
        assert controller.build_environment(bare, bare.commands[0], RunMode.DEBUG) == {
            "PYTEST_ADDOPTS": f"-p {RunnerConfig().default_reporter_paths[0]}",
            "TESTRELAY_TEST_RUNNER": "true",
        }


@pytest.mark.asyncio
class TestContinuousMode:
    async def test_change_triggers_one_debounced_rerun_until_cancelled(
        self,
        controller_for,
        analysis_client,
        math_group,
        script_command,
        workspace: WorkspaceFolder,
        workspace_dir: Path,
        host,
        monkeypatch,
    ):
        FakeWatcher.instances.clear()
        monkeypatch.setattr(controller_module, "TestFileWatcher", FakeWatcher)
        group = await math_group()
        analysis_client.response = ResolveResponse(
            commands=[ResolvedCommand(command_line=script_command(PASSING_CHILD.format(add=ADD_ID, sub=SUB_ID)))]
        )
        caller = CancellationSource()

        task = asyncio.create_task(
            controller_for().run_tests(RunRequest(included=[group], continuous=True), caller.token)
        )
        await _eventually(lambda: FakeWatcher.instances and FakeWatcher.instances[0].started)
        watcher = FakeWatcher.instances[0]
        assert len(host.sealed) == 1

        changed = FileChange(ChangeKind.CHANGED, workspace_dir / "tests" / "test_math.py", workspace)
        watcher.changes.put_nowait(changed)
        watcher.changes.put_nowait(changed)
        await _eventually(lambda: len(host.sealed) == 2)
        await asyncio.sleep(0.5)

        caller.cancel()
        first_run = await asyncio.wait_for(task, timeout=10)

        assert len(host.sealed) == 2
        assert first_run is host.sealed[0]
        rerun = host.sealed[1]
        assert rerun.request.continuous is False
        assert rerun.request.included[0] is not group
        assert rerun.request.included[0].id == GROUP_ID
        assert rerun.counts()[NodeStatus.PASSED] == 2
        assert watcher.stopped


async def _eventually(predicate, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)
