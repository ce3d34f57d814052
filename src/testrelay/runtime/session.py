# src/testrelay/runtime/session.py

"""
Wires the runtime components for one configuration: workspace registry,
hierarchy, controller and the terminal, debugger and port database they share.
"""

from pathlib import Path

import structlog

from testrelay.cancellation import CancellationToken
from testrelay.config import TestRelayConfig
from testrelay.model.hierarchy import TestHierarchy
from testrelay.model.node import TestNode, path_to_uri
from testrelay.protocols import TestExplorerHost
from testrelay.selection import RunRequest
from testrelay.state import TestRun
from testrelay.telemetry import StructLogger

from .controller import TestController
from .debugger import SubprocessDebugLauncher
from .explorer_interface import ExplorerInterface
from .port_db import PortDatabase
from .terminal import TerminalManager
from .workspaces import ClientFactory, WorkspaceRegistry, folders_from_config, language_server_factory

log: StructLogger = structlog.get_logger("runtime.session")


class TestSession:
    """Owns every long-lived runtime object; use as an async context manager."""
    __test__ = False

    def __init__(
        self,
        config: TestRelayConfig,
        host: TestExplorerHost | None = None,
        client_factory: ClientFactory | None = None,
        terminals: TerminalManager | None = None,
    ):
        self.config = config
        self.explorer = ExplorerInterface(host)
        self.registry = WorkspaceRegistry(folders_from_config(config), client_factory or language_server_factory(config))
        self.hierarchy = TestHierarchy(self.registry, config.discovery, self.explorer)
        self.terminals = terminals or TerminalManager()
        self.port_db = PortDatabase(config.runner.port_db_path)
        self.controller = TestController(
            config,
            self.registry,
            self.hierarchy,
            explorer=self.explorer,
            terminals=self.terminals,
            debugger=SubprocessDebugLauncher(config.debugger),
            port_db=self.port_db,
        )

    async def __aenter__(self) -> "TestSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.terminals.close_all()
        await self.registry.close()
        log.debug("Test session closed")

    async def run(self, request: RunRequest, token: CancellationToken) -> TestRun:
        return await self.controller.run_tests(request, token)

    async def select(self, selectors: list[str]) -> tuple[list[TestNode], list[str]]:
        """
        Maps command-line selectors onto nodes. A selector is either a path
        (test file or directory) or a node id; ``<file>::<rest>`` ids have
        their file discovered first. Returns the nodes and the selectors
        that matched nothing.
        """
        if not self.hierarchy.roots:
            await self.hierarchy.refresh()

        nodes: list[TestNode] = []
        unmatched: list[str] = []
        for selector in selectors:
            node = await self._select_one(selector)
            if node is None:
                unmatched.append(selector)
            else:
                nodes.append(node)
        return nodes, unmatched

    async def _select_one(self, selector: str) -> TestNode | None:
        path = Path(selector)
        if path.exists():
            return await self._node_for_path(path)

        if node := self.hierarchy.find_by_id(selector):
            return node
        file_part, sep, _ = selector.partition("::")
        if sep and (file_node := await self._node_for_path(Path(file_part))) is not None:
            await self.hierarchy.resolve(file_node)
            return self.hierarchy.find_by_id(selector)
        return None

    async def _node_for_path(self, path: Path) -> TestNode | None:
        if not path.exists():
            return None
        folder = self.registry.folder_for(path)
        if folder is None:
            return None
        if workspace_node := self.hierarchy.roots.get(folder.uri):
            if not workspace_node.discovered:
                await self.hierarchy.resolve(workspace_node)
        uri = path_to_uri(path)
        return next((node for node in self.hierarchy.iter_nodes() if node.uri == uri and node.id == uri), None)


# 🔼⚙️
