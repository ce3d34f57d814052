# src/testrelay/runtime/terminal.py

"""
Interactive terminals backed by a pseudo-terminal running the user's shell.

Commands are typed into the shell rather than spawned, so the engine owns no
process handle for them; an interrupt keystroke is the only way to stop one.
"""

import asyncio
import os
import pty
import sys
from collections.abc import Callable
from pathlib import Path

import structlog

from testrelay.protocols import Terminal
from testrelay.telemetry import StructLogger

from .processes import terminate_process_group

log: StructLogger = structlog.get_logger("runtime.terminal")

INTERRUPT = "\x03"
READ_CHUNK = 8192


def _echo_to_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class PtyTerminal(Terminal):
    """Implements the Terminal protocol with ``pty.openpty`` and a login shell."""

    def __init__(
        self,
        name: str,
        cwd: Path,
        shell: str | None = None,
        sink: Callable[[str], None] | None = None,
    ):
        self._name = name
        self.cwd = cwd
        self.shell = shell or os.environ.get("SHELL", "/bin/sh")
        self._sink = sink or _echo_to_stdout
        self._visible = False
        self._master_fd: int | None = None
        self._process: asyncio.subprocess.Process | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None and self._master_fd is not None

    async def open(self) -> None:
        master_fd, slave_fd = pty.openpty()
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.shell,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.cwd,
                start_new_session=True,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        self._master_fd = master_fd
        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)
        log.info("Opened terminal", name=self._name, shell=self.shell, pid=self._process.pid)

    def show(self) -> None:
        self._visible = True

    def send_text(self, text: str, add_new_line: bool = True) -> None:
        if self._master_fd is None:
            raise RuntimeError(f"Terminal '{self._name}' is not open")
        payload = text + ("\n" if add_new_line else "")
        os.write(self._master_fd, payload.encode("utf-8"))

    async def close(self, grace_seconds: float = 1.0) -> None:
        self._detach()
        if self._process is not None:
            await terminate_process_group(self._process, grace_seconds)
        log.debug("Closed terminal", name=self._name)

    def _on_readable(self) -> None:
        assert self._master_fd is not None
        try:
            chunk = os.read(self._master_fd, READ_CHUNK)
        except OSError:
            chunk = b""
        if not chunk:
            self._detach()
            return
        if self._visible:
            self._sink(chunk.decode("utf-8", errors="replace"))

    def _detach(self) -> None:
        if self._master_fd is None:
            return
        try:
            asyncio.get_running_loop().remove_reader(self._master_fd)
        except RuntimeError:
            pass
        os.close(self._master_fd)
        self._master_fd = None


class TerminalManager:
    """Keeps one terminal per name, reopening it when the previous shell has gone away."""

    def __init__(self, factory: Callable[[str, Path], PtyTerminal] | None = None):
        self._factory = factory or (lambda name, cwd: PtyTerminal(name, cwd))
        self._terminals: dict[str, PtyTerminal] = {}

    async def get_or_create(self, name: str, cwd: Path) -> Terminal:
        terminal = self._terminals.get(name)
        if terminal is not None and terminal.is_alive:
            log.debug("Reusing terminal", name=name)
            return terminal
        terminal = self._factory(name, cwd)
        await terminal.open()
        self._terminals[name] = terminal
        return terminal

    async def close_all(self) -> None:
        for terminal in self._terminals.values():
            await terminal.close()
        self._terminals.clear()
