#
# src/testrelay/protocols.py
#
"""
Defines protocols and data structures for the collaborators testrelay talks to:
the analysis service, the debugger, interactive terminals and the test explorer.
"""
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from attrs import define, field

if TYPE_CHECKING:
    from testrelay.model.node import TestNode
    from testrelay.state import NodeStatus, TestRun


@define(frozen=True, slots=True)
class ResolvedCommand:
    """
    A shell command that runs one distinguishable group of the selection,
    plus any reporter modules it needs loaded.
    """
    command_line: str
    reporter_paths: tuple[str, ...] = field(factory=tuple, converter=tuple)


@define(frozen=True, slots=True)
class ResolveResponse:
    commands: tuple[ResolvedCommand, ...] = field(factory=tuple, converter=tuple)
    reporter_paths: tuple[str, ...] = field(factory=tuple, converter=tuple)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResolveResponse":
        commands = []
        for raw in data.get("commands") or []:
            if isinstance(raw, str):
                commands.append(ResolvedCommand(command_line=raw))
            else:
                commands.append(
                    ResolvedCommand(
                        command_line=raw["command_line"],
                        reporter_paths=raw.get("reporter_paths") or (),
                    )
                )
        return cls(commands=commands, reporter_paths=data.get("reporter_paths") or ())


@runtime_checkable
class AnalysisClient(Protocol):
    """
    Protocol for the language-analysis collaborator that parses test files
    and turns selections into commands.
    """
    async def discover(self, uri: str) -> list[dict[str, Any]]:
        """
        Returns the test records declared in one file.

        Each record has ``id``, ``label``, ``uri``, ``range``, ``tags`` and
        ``children`` (records of the same shape).
        """
        ...

    async def resolve_commands(self, items: list[dict[str, Any]]) -> ResolveResponse | None:
        """
        Resolves serialized selection items into runnable commands.

        Returns None when the collaborator has no answer for the selection.
        """
        ...


@runtime_checkable
class DebuggerLauncher(Protocol):
    """Protocol for starting a debug session that runs a test command as its program."""

    async def launch(self, program: str, env: Mapping[str, str], working_directory: Path) -> bool:
        ...

    async def stop(self) -> None:
        ...

    async def wait(self) -> None:
        """Returns once the session has terminated."""
        ...


@runtime_checkable
class Terminal(Protocol):
    """Protocol for an interactive terminal that commands are typed into."""

    @property
    def name(self) -> str:
        ...

    @property
    def is_alive(self) -> bool:
        ...

    def show(self) -> None:
        ...

    def send_text(self, text: str, add_new_line: bool = True) -> None:
        ...


class TestExplorerHost(Protocol):
    """
    Receives one-directional notifications about the hierarchy and runs.
    Implementations are never called back into.
    """
    __test__ = False

    def node_added(self, node: "TestNode") -> None: ...

    def node_removed(self, node: "TestNode") -> None: ...

    def status_changed(self, node: "TestNode", status: "NodeStatus", message: str | None) -> None: ...

    def output_appended(self, text: str) -> None: ...

    def coverage_attached(self, coverage: dict[str, Any]) -> None: ...

    def run_sealed(self, run: "TestRun") -> None: ...

# 🔼⚙️
