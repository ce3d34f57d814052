# src/testrelay/runtime/workspaces.py

"""
Registry of workspace folders and their (lazily activated) analysis clients.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path

import structlog

from testrelay.analysis import LanguageServerClient
from testrelay.config import TestRelayConfig
from testrelay.exceptions import AnalysisError
from testrelay.model.workspace import WorkspaceFolder
from testrelay.protocols import AnalysisClient
from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("runtime.workspaces")

ClientFactory = Callable[[WorkspaceFolder], Awaitable[AnalysisClient]]


class WorkspaceRegistry:
    """Maps paths to workspace folders and activates one analysis client per folder on demand."""

    def __init__(self, folders: Iterable[WorkspaceFolder], client_factory: ClientFactory):
        self._folders = list(folders)
        self._client_factory = client_factory
        self._clients: dict[str, AnalysisClient] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def folders(self) -> list[WorkspaceFolder]:
        return list(self._folders)

    def folder_for(self, path: Path) -> WorkspaceFolder | None:
        """The innermost folder containing ``path``."""
        matches = [folder for folder in self._folders if folder.contains(path)]
        if not matches:
            return None
        return max(matches, key=lambda folder: len(folder.path.parts))

    async def get_client(self, folder: WorkspaceFolder) -> AnalysisClient:
        if client := self._clients.get(folder.uri):
            return client
        lock = self._locks.setdefault(folder.uri, asyncio.Lock())
        async with lock:
            if folder.uri not in self._clients:
                log.debug("Activating analysis client for workspace", workspace=folder.name)
                self._clients[folder.uri] = await self._client_factory(folder)
        return self._clients[folder.uri]

    async def close(self) -> None:
        for uri, client in list(self._clients.items()):
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                log.warning("Failed to close analysis client", workspace=uri, error=str(e))
        self._clients.clear()


def folders_from_config(config: TestRelayConfig) -> list[WorkspaceFolder]:
    return [
        WorkspaceFolder(name=workspace.display_name, path=workspace.path)
        for workspace in config.enabled_workspaces.values()
    ]


def language_server_factory(config: TestRelayConfig) -> ClientFactory:
    """Client factory that starts the configured language server in the workspace root."""

    async def factory(folder: WorkspaceFolder) -> AnalysisClient:
        if not config.analysis.command:
            raise AnalysisError("No analysis command configured; set [analysis].command")
        client = LanguageServerClient(config.analysis.command, folder.path, config.analysis)
        await client.start()
        return client

    return factory
