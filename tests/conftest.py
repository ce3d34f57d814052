import itertools
import sys
import textwrap
from pathlib import Path
from typing import Any

import pytest

from testrelay.config import DiscoveryConfig, RunnerConfig, TestRelayConfig, WorkspaceConfig
from testrelay.model import TestHierarchy, WorkspaceFolder, path_to_uri
from testrelay.protocols import AnalysisClient, ResolvedCommand, ResolveResponse
from testrelay.runtime.explorer_interface import ExplorerInterface
from testrelay.runtime.workspaces import WorkspaceRegistry

pytest_plugins = ["pytester"]


class FakeAnalysisClient(AnalysisClient):
    """Serves canned discovery records and resolve responses, recording every call."""

    def __init__(
        self,
        records: dict[str, list[dict[str, Any]]] | None = None,
        response: ResolveResponse | None = None,
    ):
        self.records = records or {}
        self.response = response
        self.discover_calls: list[str] = []
        self.resolve_calls: list[list[dict[str, Any]]] = []

    async def discover(self, uri: str) -> list[dict[str, Any]]:
        self.discover_calls.append(uri)
        return self.records.get(uri, [])

    async def resolve_commands(self, items: list[dict[str, Any]]) -> ResolveResponse | None:
        self.resolve_calls.append(items)
        return self.response


class RecordingHost:
    """Explorer host that keeps every notification."""

    def __init__(self):
        self.added: list[Any] = []
        self.removed: list[Any] = []
        self.statuses: list[tuple[str, Any, str | None]] = []
        self.output: list[str] = []
        self.coverage: list[dict[str, Any]] = []
        self.sealed: list[Any] = []

    def node_added(self, node):
        self.added.append(node)

    def node_removed(self, node):
        self.removed.append(node)

    def status_changed(self, node, status, message):
        self.statuses.append((node.id, status, message))

    def output_appended(self, text):
        self.output.append(text)

    def coverage_attached(self, coverage):
        self.coverage.append(coverage)

    def run_sealed(self, run):
        self.sealed.append(run)


def registry_for(*folders: WorkspaceFolder, client: AnalysisClient) -> WorkspaceRegistry:
    async def factory(folder: WorkspaceFolder) -> AnalysisClient:
        return client

    return WorkspaceRegistry(folders, factory)


@pytest.fixture
def discovery_config() -> DiscoveryConfig:
    return DiscoveryConfig()


@pytest.fixture
def runner_config(tmp_path: Path) -> RunnerConfig:
    return RunnerConfig(terminate_grace_seconds=0.5, port_db_path=tmp_path / "port_db.json")


@pytest.fixture
def workspace_dir(tmp_path: Path) -> Path:
    """
    A workspace with::

        tests/test_math.py
        tests/unit/test_calc.py
        tests/conftest.py             (helper, not a test)
        tests/fixtures/test_data.py   (fixture dir, not a test)
        lib/calc.py
    """
    root = tmp_path / "project"
    (root / "tests" / "unit").mkdir(parents=True)
    (root / "tests" / "fixtures").mkdir()
    (root / "lib").mkdir()
    (root / "tests" / "test_math.py").write_text("def test_add():\n    assert 1 + 1 == 2\n")
    (root / "tests" / "unit" / "test_calc.py").write_text("def test_mul():\n    assert 2 * 2 == 4\n")
    (root / "tests" / "conftest.py").write_text("")
    (root / "tests" / "fixtures" / "test_data.py").write_text("")
    (root / "lib" / "calc.py").write_text("def add(a, b):\n    return a + b\n")
    return root


@pytest.fixture
def workspace(workspace_dir: Path) -> WorkspaceFolder:
    return WorkspaceFolder(name="project", path=workspace_dir)


@pytest.fixture
def math_file_uri(workspace_dir: Path) -> str:
    return path_to_uri(workspace_dir / "tests" / "test_math.py")


@pytest.fixture
def math_records(math_file_uri: str) -> list[dict[str, Any]]:
    """A class group with two examples plus one module-level example."""
    return [
        {
            "id": "tests/test_math.py::TestMath",
            "label": "TestMath",
            "uri": math_file_uri,
            "range": {"start": {"line": 3, "character": 0}, "end": {"line": 9, "character": 0}},
            "tags": ["framework:pytest"],
            "children": [
                {"id": "tests/test_math.py::TestMath::test_add", "label": "test_add", "uri": math_file_uri},
                {"id": "tests/test_math.py::TestMath::test_sub", "label": "test_sub", "uri": math_file_uri},
            ],
        },
        {"id": "tests/test_math.py::test_module_level", "label": "test_module_level", "uri": math_file_uri},
    ]


@pytest.fixture
def analysis_client(math_file_uri: str, math_records: list[dict[str, Any]]) -> FakeAnalysisClient:
    return FakeAnalysisClient(records={math_file_uri: math_records})


@pytest.fixture
def host() -> RecordingHost:
    return RecordingHost()


@pytest.fixture
def hierarchy(
    workspace: WorkspaceFolder,
    analysis_client: FakeAnalysisClient,
    discovery_config: DiscoveryConfig,
    host: RecordingHost,
) -> TestHierarchy:
    return TestHierarchy(registry_for(workspace, client=analysis_client), discovery_config, ExplorerInterface(host))


@pytest.fixture
def relay_config(workspace_dir: Path, runner_config: RunnerConfig) -> TestRelayConfig:
    return TestRelayConfig(
        workspaces={"project": WorkspaceConfig(path=workspace_dir, name="project")},
        runner=runner_config,
    )


def command_response(*command_lines: str) -> ResolveResponse:
    return ResolveResponse(commands=[ResolvedCommand(command_line=line) for line in command_lines])


@pytest.fixture
def make_client():
    return FakeAnalysisClient


@pytest.fixture
def make_registry():
    return registry_for


@pytest.fixture
def script_command(tmp_path: Path):
    """Writes a Python script and returns the shell command running it with this interpreter."""
    counter = itertools.count()

    def make(source: str) -> str:
        script = tmp_path / f"child_{next(counter)}.py"
        script.write_text(textwrap.dedent(source))
        return f'"{sys.executable}" "{script}"'

    return make


@pytest.fixture
def make_response():
    return command_response
