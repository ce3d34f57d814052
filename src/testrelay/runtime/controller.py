# src/testrelay/runtime/controller.py

"""
Drives a RunRequest end to end: groups the selection by workspace, resolves
commands through the analysis collaborator, executes them one at a time with
the streaming engine and, in continuous mode, re-runs on test file changes.
"""

import asyncio
import os
from pathlib import Path

import structlog

from testrelay.cancellation import CancellationToken, LinkedCancellationSource
from testrelay.config import TestRelayConfig
from testrelay.coverage import ingest, load_artifact
from testrelay.exceptions import AnalysisError, CoverageError, ResolutionError, RunTimeoutError, SpawnError
from testrelay.model.hierarchy import TestHierarchy
from testrelay.model.node import TAG_WORKSPACE, TestNode
from testrelay.model.workspace import WorkspaceFolder
from testrelay.protocols import DebuggerLauncher, ResolvedCommand, ResolveResponse
from testrelay.selection import RunMode, RunRequest, build_request_items, selected_leaves
from testrelay.state import NodeStatus, TestRun
from testrelay.telemetry import StructLogger

from .engine import CANCELLED_MESSAGE, StreamingRunner
from .explorer_interface import ExplorerInterface
from .port_db import PortDatabase
from .terminal import TerminalManager
from .watcher import ChangeKind, FileChange, TestFileWatcher
from .workspaces import WorkspaceRegistry

log: StructLogger = structlog.get_logger("runtime.controller")

RESOLUTION_FAILED_MESSAGE = "Could not resolve test command to run selected tests"
CANCELLED_TEST_MESSAGE = CANCELLED_MESSAGE.strip()


class TestController:
    """Entry point for running tests; one instance serves every run of a session."""
    __test__ = False

    def __init__(
        self,
        config: TestRelayConfig,
        registry: WorkspaceRegistry,
        hierarchy: TestHierarchy,
        explorer: ExplorerInterface | None = None,
        terminals: TerminalManager | None = None,
        debugger: DebuggerLauncher | None = None,
        port_db: PortDatabase | None = None,
    ):
        self.config = config
        self.registry = registry
        self.hierarchy = hierarchy
        self.explorer = explorer
        self.terminals = terminals
        self.debugger = debugger
        self.port_db = port_db
        self._debounce_handles: dict[Path, asyncio.TimerHandle] = {}
        log.debug("TestController initialized", workspaces=len(registry.folders))

    async def run_tests(self, request: RunRequest, token: CancellationToken) -> TestRun:
        """
        Executes ``request`` and returns its sealed run. In continuous mode
        this keeps re-running on changes until ``token`` is cancelled; the
        re-runs are separate runs posted to the explorer.
        """
        scope = LinkedCancellationSource(token)
        try:
            run = await self._execute_request(request, scope)
            if request.continuous and not scope.is_cancellation_requested:
                await self._watch_continuously(request, scope)
            return run
        finally:
            scope.dispose()

    def build_environment(self, response: ResolveResponse, command: ResolvedCommand, mode: RunMode) -> dict[str, str]:
        """The variables exported on top of the inherited environment for one command."""
        runner = self.config.runner
        reporter_paths = command.reporter_paths or response.reporter_paths or runner.default_reporter_paths
        flags = " ".join(runner.injection_template.format(path=path) for path in reporter_paths)
        existing = os.environ.get(runner.injection_env_var, "")
        return {
            runner.injection_env_var: f"{existing} {flags}".strip(),
            runner.runner_env_var: mode.runner_value,
        }

    # --- One request ---

    async def _execute_request(self, request: RunRequest, scope: LinkedCancellationSource) -> TestRun:
        run = TestRun(request=request, explorer=self.explorer)
        run_log = log.bind(mode=request.mode.value)
        inclusions = list(request.included) or await self._default_inclusions()
        run_log.info("Starting test run", included=len(inclusions), excluded=len(request.excluded), emoji="▶️")

        for folder, nodes in (await self._group_by_workspace(inclusions)).items():
            if scope.is_cancellation_requested:
                run_log.info("Run cancelled, skipping remaining workspaces", workspace=folder.name)
                break
            exclusions = [node for node in request.excluded if self.hierarchy.folder_of(node) == folder]
            if not await self._execute_workspace(folder, nodes, exclusions, request.mode, run, scope):
                break

        run.seal()
        return run

    async def _execute_workspace(
        self,
        folder: WorkspaceFolder,
        nodes: list[TestNode],
        exclusions: list[TestNode],
        mode: RunMode,
        run: TestRun,
        scope: LinkedCancellationSource,
    ) -> bool:
        """Returns False when the remaining work must be abandoned."""
        ws_log = log.bind(workspace=folder.name)
        leaves = selected_leaves(nodes, exclusions)
        items = build_request_items(nodes, exclusions)

        try:
            response = await self._resolve_commands(folder, items)
        except ResolutionError as e:
            ws_log.warning("Command resolution failed", error=str(e))
            for leaf in leaves:
                run.errored(leaf, RESOLUTION_FAILED_MESSAGE)
            return True

        for leaf in leaves:
            run.enqueued(leaf)

        artifact = folder.path / self.config.runner.coverage_artifact
        if mode is RunMode.COVERAGE:
            artifact.unlink(missing_ok=True)

        for command in response.commands:
            if scope.is_cancellation_requested:
                self._explain_unfinished(run, leaves, CANCELLED_TEST_MESSAGE)
                break
            runner = StreamingRunner(
                run,
                self.hierarchy.find_test_item,
                self.config.runner,
                terminals=self.terminals,
                debugger=self.debugger,
                port_db=self.port_db,
            )
            try:
                await runner.execute(
                    command.command_line,
                    self.build_environment(response, command, mode),
                    folder,
                    mode,
                    scope,
                )
            except SpawnError as e:
                ws_log.error("Failed to start tests", error=str(e), command=e.command)
                run.mark_failed(str(e))
                for node in run.enqueued_nodes():
                    run.attach_message(node, str(e))
                scope.cancel()
                return False

            if message := self._unfinished_message(runner):
                ws_log.warning(message, command=command.command_line)
                self._explain_unfinished(run, leaves, message)
            if runner.cancelled:
                break

        if mode is RunMode.COVERAGE and not scope.is_cancellation_requested:
            await self._attach_coverage(folder, artifact, run)
        return True

    @staticmethod
    def _unfinished_message(runner: StreamingRunner) -> str | None:
        """Why tests may be left without a result after ``runner`` drained, or None after a clean finish."""
        if runner.cancelled:
            return CANCELLED_TEST_MESSAGE
        if runner.finished:
            return None
        exited = f" with code {runner.exit_code}" if runner.exit_code is not None else ""
        if not runner.connected:
            return f"Test process exited{exited} before reporting any results"
        return f"Test process stopped reporting before it finished ({runner.end_reason}); it exited{exited}"

    @staticmethod
    def _explain_unfinished(run: TestRun, leaves: list[TestNode], message: str) -> None:
        for leaf in leaves:
            if run.status_of(leaf) in (NodeStatus.ENQUEUED, NodeStatus.STARTED):
                run.attach_message(leaf, message)

    async def _resolve_commands(self, folder: WorkspaceFolder, items: list[dict]) -> ResolveResponse:
        try:
            client = await self.registry.get_client(folder)
            response = await client.resolve_commands(items)
        except (AnalysisError, RunTimeoutError, SpawnError) as e:
            raise ResolutionError(str(e), workspace=folder.name) from e
        if response is None or not response.commands:
            raise ResolutionError("Analysis collaborator returned no commands", workspace=folder.name)
        log.debug("Resolved test commands", workspace=folder.name, commands=len(response.commands))
        return response

    async def _attach_coverage(self, folder: WorkspaceFolder, artifact: Path, run: TestRun) -> None:
        try:
            data = await asyncio.to_thread(load_artifact, artifact)
            if data is None:
                return
            run.attach_coverage(ingest(data, folder.path, self.config.runner.vendor_paths))
        except CoverageError as e:
            log.error("Failed to ingest coverage", workspace=folder.name, error=str(e))

    async def _default_inclusions(self) -> list[TestNode]:
        if not self.hierarchy.roots:
            await self.hierarchy.refresh()
        return list(self.hierarchy.roots.values())

    async def _group_by_workspace(self, nodes: list[TestNode]) -> dict[WorkspaceFolder, list[TestNode]]:
        grouped: dict[WorkspaceFolder, list[TestNode]] = {}
        for node in nodes:
            folder = self.hierarchy.folder_of(node)
            if folder is None:
                log.warning("Selected test is outside every workspace, skipping it", node_id=node.id)
                continue
            if TAG_WORKSPACE in node.tags and not node.discovered:
                await self.hierarchy.resolve(node)
            grouped.setdefault(folder, []).append(node)
        return grouped

    # --- Continuous mode ---

    async def _watch_continuously(self, request: RunRequest, scope: LinkedCancellationSource) -> None:
        watcher = TestFileWatcher(self.registry.folders, self.config.discovery)
        reruns: asyncio.Queue[FileChange] = asyncio.Queue()
        watcher.start()
        log.info("Continuous mode active, waiting for test file changes", emoji="🔁")

        consumer = asyncio.create_task(self._consume_changes(watcher, reruns))
        try:
            while not scope.is_cancellation_requested:
                change_task = asyncio.create_task(reruns.get())
                cancel_task = asyncio.create_task(scope.token.wait())
                done, _ = await asyncio.wait({change_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
                if cancel_task in done:
                    change_task.cancel()
                    break
                cancel_task.cancel()
                change = change_task.result()
                rerun = self._rerun_request(request)
                if request.included and not rerun.included:
                    log.warning("None of the selected tests exist anymore, skipping re-run", path=str(change.path))
                    continue
                log.info("Re-running tests after change", path=str(change.path), kind=change.kind.value)
                await self._execute_request(rerun, scope)
        finally:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)
            for handle in self._debounce_handles.values():
                handle.cancel()
            self._debounce_handles.clear()
            await watcher.stop()
            log.info("Continuous mode stopped", discarded_reruns=reruns.qsize())

    async def _consume_changes(self, watcher: TestFileWatcher, reruns: asyncio.Queue[FileChange]) -> None:
        loop = asyncio.get_running_loop()
        while True:
            change = await watcher.changes.get()
            if change.kind is ChangeKind.DELETED:
                await self.hierarchy.handle_file_deleted(change.path)
            elif change.kind is ChangeKind.CREATED:
                await self.hierarchy.handle_file_created(change.path)
            else:
                await self.hierarchy.handle_file_changed(change.path)

            if handle := self._debounce_handles.pop(change.path, None):
                handle.cancel()
            self._debounce_handles[change.path] = loop.call_later(
                self.config.runner.continuous_debounce_seconds, self._enqueue_rerun, reruns, change
            )

    def _enqueue_rerun(self, reruns: asyncio.Queue[FileChange], change: FileChange) -> None:
        self._debounce_handles.pop(change.path, None)
        reruns.put_nowait(change)

    def _rerun_request(self, request: RunRequest) -> RunRequest:
        """The same selection, pointed at the current nodes since rediscovery replaces them."""
        return RunRequest(
            included=self._current_nodes(request.included),
            excluded=self._current_nodes(request.excluded),
            mode=request.mode,
            continuous=False,
        )

    def _current_nodes(self, nodes: tuple[TestNode, ...]) -> list[TestNode]:
        current = []
        for node in nodes:
            replacement = self.hierarchy.find_by_id(node.id)
            if replacement is not None:
                current.append(replacement)
            else:
                log.debug("Selected test no longer exists, dropping it from the re-run", node_id=node.id)
        return current
