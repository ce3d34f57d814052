# src/testrelay/runtime/watcher.py

"""
Watches workspace folders for test file changes and hands them to the event
loop as FileChange records.
"""

import asyncio
from enum import Enum
from pathlib import Path

import structlog
from attrs import define
from watchdog.events import FileSystemEvent, FileSystemEventHandler, FileSystemMovedEvent
from watchdog.observers import Observer

from testrelay.config import DiscoveryConfig
from testrelay.model.discovery import is_test_file
from testrelay.model.workspace import WorkspaceFolder
from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("runtime.watcher")


class ChangeKind(Enum):
    CREATED = "created"
    CHANGED = "changed"
    DELETED = "deleted"


@define(frozen=True, slots=True)
class FileChange:
    kind: ChangeKind
    path: Path
    folder: WorkspaceFolder


class _TestFileEventHandler(FileSystemEventHandler):
    """Runs on the observer thread; only filters and forwards."""

    def __init__(self, watcher: "TestFileWatcher", folder: WorkspaceFolder):
        self._watcher = watcher
        self._folder = folder

    def on_created(self, event: FileSystemEvent):
        self._forward(ChangeKind.CREATED, event.src_path, event)

    def on_modified(self, event: FileSystemEvent):
        self._forward(ChangeKind.CHANGED, event.src_path, event)

    def on_deleted(self, event: FileSystemEvent):
        self._forward(ChangeKind.DELETED, event.src_path, event)

    def on_moved(self, event: FileSystemMovedEvent):
        self._forward(ChangeKind.DELETED, event.src_path, event)
        self._forward(ChangeKind.CREATED, event.dest_path, event)

    def _forward(self, kind: ChangeKind, raw_path: str | bytes, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = Path(raw_path.decode() if isinstance(raw_path, bytes) else raw_path)
        if not self._folder.contains(path):
            return
        if not is_test_file(self._folder.relative(path), self._watcher.config):
            return
        self._watcher.submit(FileChange(kind=kind, path=path, folder=self._folder))


class TestFileWatcher:
    """One watchdog observer covering every workspace folder."""
    __test__ = False

    def __init__(self, folders: list[WorkspaceFolder], config: DiscoveryConfig):
        self.folders = folders
        self.config = config
        self.changes: asyncio.Queue[FileChange] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer: Observer | None = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        observer = Observer()
        for folder in self.folders:
            observer.schedule(_TestFileEventHandler(self, folder), str(folder.path), recursive=True)
            log.debug("Watching workspace folder", workspace=folder.name, path=str(folder.path))
        observer.start()
        self._observer = observer
        log.info("Test file watcher started", folders=len(self.folders), emoji="👀")

    def submit(self, change: FileChange) -> None:
        """Thread-safe: queues a change from the observer thread."""
        if self._loop is None or self._loop.is_closed():
            return
        log.debug("Test file change detected", kind=change.kind.value, path=str(change.path))
        self._loop.call_soon_threadsafe(self.changes.put_nowait, change)

    async def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        await asyncio.to_thread(observer.join)
        log.info("Test file watcher stopped")
