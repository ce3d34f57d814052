#
# src/testrelay/model/hierarchy.py
#
"""
Builds and maintains the test hierarchy and resolves reporter ids against it.

The tree has two tiers. The file-system tier (workspaces, test directories and
test files) comes from scanning disk. The per-file tier (groups and examples)
comes from the analysis collaborator and is fetched lazily, the first time a
file is expanded or an event refers to it.

Every mutation goes through ``_lock`` so lookups running for concurrent events
never observe a half-built subtree.
"""

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from testrelay.config import DiscoveryConfig
from testrelay.exceptions import AnalysisError, RunTimeoutError, SpawnError
from testrelay.telemetry import StructLogger

from .discovery import directory_levels, find_test_files, is_test_file
from .node import (
    TAG_DEBUG,
    TAG_DYNAMIC,
    TAG_TEST_DIR,
    TAG_TEST_FILE,
    TAG_TEST_GROUP,
    TAG_WORKSPACE,
    NodeKind,
    Range,
    TestNode,
    path_to_uri,
    uri_to_path,
)
from .workspace import WorkspaceFolder

if TYPE_CHECKING:
    from testrelay.runtime.explorer_interface import ExplorerInterface
    from testrelay.runtime.workspaces import WorkspaceRegistry

log: StructLogger = structlog.get_logger("model.hierarchy")


class TestHierarchy:
    """Owns the root nodes of the test tree."""
    __test__ = False

    def __init__(
        self,
        registry: "WorkspaceRegistry",
        config: DiscoveryConfig,
        explorer: "ExplorerInterface | None" = None,
    ):
        self.registry = registry
        self.config = config
        self.explorer = explorer
        self.roots: dict[str, TestNode] = {}
        self._lock = asyncio.Lock()
        self._loaded = False
        self._capped_parents: set[str] = set()

    @property
    def multi_workspace(self) -> bool:
        return len(self.registry.folders) > 1

    # --- Public API ---

    async def refresh(self) -> list[TestNode]:
        """Rebuilds the file-system tier from scratch."""
        async with self._lock:
            await self._refresh()
        return list(self.roots.values())

    async def resolve(self, node: TestNode) -> bool:
        """
        Expands one node: gathers a workspace's test files, or asks the
        analysis collaborator for a file's groups and examples. Groups and
        examples are already complete and are left alone.
        """
        async with self._lock:
            return await self._resolve(node)

    async def find_test_item(self, test_id: str, uri: str, line: int | None = None) -> TestNode | None:
        """
        Maps a reporter id onto a node, discovering the file's children first
        if they were never loaded and synthesizing a dynamic leaf when the id
        is unknown but a line is given.
        """
        async with self._lock:
            if not self._loaded:
                await self._refresh()

            try:
                path = uri_to_path(uri)
            except ValueError:
                log.warning("Event uri is not a file uri", test_id=test_id, uri=uri)
                return None

            parent = await self._get_parent_item(path)
            if parent is None:
                return None
            if parent.id == test_id:
                return parent

            file_node = parent.children.get(path_to_uri(path))
            if file_node is None:
                return None
            if file_node.id == test_id:
                return file_node

            if not file_node.discovered:
                await self._discover_file(file_node)

            exact = file_node.children.get(test_id)
            if exact is not None:
                return exact

            deepest, match = self._find_in_groups(test_id, file_node)
            if match is not None:
                return match
            if line is None:
                return None
            return self._synthesize(test_id, uri, line, deepest)

    async def handle_file_changed(self, path: Path) -> TestNode | None:
        """Drops a changed file's children and discovers them again."""
        async with self._lock:
            parent = await self._get_parent_item(path)
            file_node = parent.children.get(path_to_uri(path)) if parent else None
            if file_node is None:
                return await self._insert_file(path)

            for child in list(file_node.children.values()):
                self._post_removed(child)
            file_node.clear_children()
            self._capped_parents.difference_update(node.id for node in file_node.walk())
            await self._discover_file(file_node)
            log.debug("Rediscovered changed test file", path=str(path), children=len(file_node.children))
            return file_node

    async def handle_file_created(self, path: Path) -> TestNode | None:
        async with self._lock:
            return await self._insert_file(path)

    async def handle_file_deleted(self, path: Path) -> TestNode | None:
        async with self._lock:
            parent = await self._get_parent_item(path)
            if parent is None:
                return None
            removed = parent.remove_child(path_to_uri(path))
            if removed is not None:
                log.debug("Removed deleted test file", path=str(path))
                self._post_removed(removed)
            return removed

    def find_by_id(self, node_id: str) -> TestNode | None:
        for root in self.roots.values():
            for node in root.walk():
                if node.id == node_id:
                    return node
        return None

    def iter_nodes(self):
        for root in list(self.roots.values()):
            yield from root.walk()

    def add_discovered_items(self, records: list[dict[str, Any]], parent: TestNode) -> list[TestNode]:
        """Imports analysis records as children of ``parent``."""
        added: list[TestNode] = []
        for record in records:
            try:
                node = TestNode.from_record(record)
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Skipping malformed test record", parent=parent.id, error=str(e))
                continue
            parent.add_child(node)
            added.append(node)
            self._post_added(node)

        first_tagged = next(
            (descendant for node in added for descendant in node.walk() if descendant.framework_tag),
            None,
        )
        if first_tagged is not None:
            first_tagged.propagate_framework_tag()
        return added

    # --- File-system tier ---

    async def _refresh(self) -> None:
        for root in list(self.roots.values()):
            self._post_removed(root)
        self.roots.clear()
        self._capped_parents.clear()

        folders = self.registry.folders
        if len(folders) == 1:
            await self._gather_workspace_tests(folders[0], None)
        else:
            for folder in folders:
                # A workspace without a single test file is not shown at all.
                if not await asyncio.to_thread(find_test_files, folder.path, self.config, 1):
                    continue
                node = TestNode(
                    id=folder.uri,
                    label=folder.name,
                    uri=folder.uri,
                    kind=NodeKind.WORKSPACE,
                    tags={TAG_WORKSPACE, TAG_DEBUG},
                )
                self.roots[node.id] = node
                self._post_added(node)
        self._loaded = True
        log.info("Test hierarchy refreshed", roots=len(self.roots), workspaces=len(folders), emoji="🌳")

    async def _resolve(self, node: TestNode) -> bool:
        if TAG_WORKSPACE in node.tags:
            folder = self.folder_of(node)
            if folder is None:
                return False
            await self._gather_workspace_tests(folder, node)
            return True
        if node.kind is NodeKind.FILE:
            return await self._discover_file(node)
        return False

    async def _gather_workspace_tests(self, folder: WorkspaceFolder, workspace_node: TestNode | None) -> None:
        files = await asyncio.to_thread(find_test_files, folder.path, self.config)
        for path in files:
            self._place_file(folder, workspace_node, path)
        if workspace_node is not None:
            workspace_node.discovered = True
        log.debug("Gathered workspace tests", workspace=folder.name, files=len(files))

    def _collection_for(self, workspace_node: TestNode | None) -> dict[str, TestNode]:
        return workspace_node.children if workspace_node is not None else self.roots

    def _place_file(self, folder: WorkspaceFolder, workspace_node: TestNode | None, path: Path) -> TestNode | None:
        relative = folder.relative(path)
        levels = directory_levels(relative, self.config)
        if levels is None:
            return None

        first_uri = path_to_uri(folder.path / levels.first)
        collection = self._collection_for(workspace_node)
        first = collection.get(first_uri)
        if first is None:
            first = TestNode(
                id=first_uri,
                label=str(levels.first),
                uri=first_uri,
                kind=NodeKind.DIRECTORY,
                tags={TAG_TEST_DIR, TAG_DEBUG},
            )
            if workspace_node is not None:
                workspace_node.add_child(first)
            else:
                self.roots[first.id] = first
            self._post_added(first)

        container = first
        if levels.second is not None:
            second_uri = path_to_uri(folder.path / levels.second)
            second = first.children.get(second_uri)
            if second is None:
                second = first.add_child(
                    TestNode(
                        id=second_uri,
                        label=levels.second.name,
                        uri=second_uri,
                        kind=NodeKind.DIRECTORY,
                        tags={TAG_TEST_DIR, TAG_DEBUG},
                    )
                )
                self._post_added(second)
            container = second

        file_uri = path_to_uri(path)
        existing = container.children.get(file_uri)
        if existing is not None:
            return existing
        file_node = container.add_child(
            TestNode(
                id=file_uri,
                label=path.name,
                uri=file_uri,
                kind=NodeKind.FILE,
                tags={TAG_TEST_FILE, TAG_DEBUG},
            )
        )
        self._post_added(file_node)
        return file_node

    async def _insert_file(self, path: Path) -> TestNode | None:
        folder = self.registry.folder_for(path)
        if folder is None or not is_test_file(folder.relative(path), self.config):
            return None

        workspace_node = None
        if self.multi_workspace:
            workspace_node = self.roots.get(folder.uri)
            if workspace_node is None:
                workspace_node = TestNode(
                    id=folder.uri,
                    label=folder.name,
                    uri=folder.uri,
                    kind=NodeKind.WORKSPACE,
                    tags={TAG_WORKSPACE, TAG_DEBUG},
                )
                self.roots[workspace_node.id] = workspace_node
                self._post_added(workspace_node)
            if not workspace_node.discovered:
                # Gathered lazily; the new file will be picked up then.
                return None
        return self._place_file(folder, workspace_node, path)

    async def _get_parent_item(self, path: Path) -> TestNode | None:
        """The directory node a test file hangs off: second level if there is one, else first."""
        folder = self.registry.folder_for(path)
        if folder is None:
            return None

        workspace_node = None
        if self.multi_workspace:
            workspace_node = self.roots.get(folder.uri)
            if workspace_node is None:
                return None
            if not workspace_node.discovered:
                await self._gather_workspace_tests(folder, workspace_node)

        levels = directory_levels(folder.relative(path), self.config)
        if levels is None:
            return None
        item = self._collection_for(workspace_node).get(path_to_uri(folder.path / levels.first))
        if item is not None and levels.second is not None:
            item = item.children.get(path_to_uri(folder.path / levels.second))
        return item

    def folder_of(self, node: TestNode) -> WorkspaceFolder | None:
        path = node.path
        return self.registry.folder_for(path) if path else None

    # --- Per-file tier ---

    async def _discover_file(self, file_node: TestNode) -> bool:
        folder = self.folder_of(file_node)
        if folder is None:
            return False
        try:
            client = await self.registry.get_client(folder)
            records = await client.discover(file_node.uri)
        except (AnalysisError, RunTimeoutError, SpawnError) as e:
            log.warning("Test discovery failed for file", uri=file_node.uri, error=str(e))
            return False
        file_node.discovered = True
        self.add_discovered_items(records or [], file_node)
        log.debug("Discovered tests in file", uri=file_node.uri, count=len(file_node.children))
        return True

    # --- Id resolution ---

    def _is_prefix(self, prefix: str, test_id: str) -> bool:
        return any(
            test_id.startswith(prefix + separator) and len(test_id) > len(prefix) + len(separator)
            for separator in self.config.id_separators
        )

    def _longest_prefix_child(self, test_id: str, node: TestNode) -> TestNode | None:
        best: TestNode | None = None
        for child in node.children.values():
            if not self._is_prefix(child.id, test_id):
                continue
            if best is None or (len(child.id), child.sequence) > (len(best.id), best.sequence):
                best = child
        return best

    def _find_in_groups(self, test_id: str, start: TestNode) -> tuple[TestNode, TestNode | None]:
        """Returns the deepest prefix match and, if found, the node with exactly ``test_id``."""
        deepest = start
        while (child := self._longest_prefix_child(test_id, deepest)) is not None:
            deepest = child
            exact = child.children.get(test_id)
            if exact is not None:
                return deepest, exact
        return deepest, None

    def _dynamic_label(self, test_id: str, parent: TestNode) -> str:
        if self._is_prefix(parent.id, test_id):
            suffix = test_id[len(parent.id):]
        else:
            cuts = [test_id.find(sep) for sep in self.config.id_separators if sep in test_id]
            suffix = test_id[min(cuts):] if cuts else test_id
        for separator in self.config.id_separators:
            # Bracketed parameters keep their opening bracket: "[1]" reads better than "1]".
            if separator != "[" and suffix.startswith(separator):
                return suffix[len(separator):]
        return suffix

    def _synthesize(self, test_id: str, uri: str, line: int, parent: TestNode) -> TestNode | None:
        dynamic_count = sum(1 for child in parent.children.values() if TAG_DYNAMIC in child.tags)
        if dynamic_count >= self.config.max_dynamic_children:
            if parent.id not in self._capped_parents:
                self._capped_parents.add(parent.id)
                log.warning(
                    "Dynamic test limit reached, dropping further dynamic tests for this parent",
                    parent=parent.id,
                    limit=self.config.max_dynamic_children,
                )
            return None

        if parent.kind is NodeKind.EXAMPLE:
            # A statically known test that turns out to be parameterized becomes a group.
            parent.kind = NodeKind.GROUP
            parent.tags.add(TAG_TEST_GROUP)

        node = parent.add_child(
            TestNode(
                id=test_id,
                label=self._dynamic_label(test_id, parent),
                uri=uri,
                kind=NodeKind.EXAMPLE,
                range=Range.at_line(line),
                tags={TAG_DYNAMIC, TAG_DEBUG},
            )
        )
        framework_tag = next((n.framework_tag for n in (parent, *parent.ancestors()) if n.framework_tag), None)
        if framework_tag:
            node.tags.add(framework_tag)
        self._post_added(node)
        log.debug("Synthesized dynamic test", test_id=test_id, parent=parent.id, line=line)
        return node

    # --- Explorer notifications ---

    def _post_added(self, node: TestNode) -> None:
        if self.explorer:
            self.explorer.post_node_added(node)

    def _post_removed(self, node: TestNode) -> None:
        if self.explorer:
            self.explorer.post_node_removed(node)
