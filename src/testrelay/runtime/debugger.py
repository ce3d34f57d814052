# src/testrelay/runtime/debugger.py

"""
A DebuggerLauncher that wraps the test command in a debug server process.
"""

import asyncio
import shlex
from collections.abc import Mapping
from pathlib import Path

import structlog

from testrelay.config import DebuggerConfig
from testrelay.protocols import DebuggerLauncher
from testrelay.telemetry import StructLogger

from .processes import terminate_process_group

log: StructLogger = structlog.get_logger("runtime.debugger")

STOP_GRACE_SECONDS = 2.0


def strip_interpreter(program: str) -> str:
    """``python -m pytest -x`` -> ``-m pytest -x``; commands not starting with Python are kept."""
    try:
        tokens = shlex.split(program)
    except ValueError:
        return program
    if tokens and Path(tokens[0]).name.startswith("python"):
        return shlex.join(tokens[1:])
    return program


class SubprocessDebugLauncher(DebuggerLauncher):
    """Launches ``command_template`` through the shell and tracks the session as a process group."""

    def __init__(self, config: DebuggerConfig):
        self.config = config
        self._process: asyncio.subprocess.Process | None = None

    def build_command(self, program: str) -> str:
        return self.config.command_template.format(program=program, program_args=strip_interpreter(program))

    async def launch(self, program: str, env: Mapping[str, str], working_directory: Path) -> bool:
        command = self.build_command(program)
        launch_log = log.bind(command=command, working_directory=str(working_directory))
        try:
            self._process = await asyncio.create_subprocess_shell(
                command,
                env=dict(env),
                cwd=working_directory,
                start_new_session=True,
            )
        except OSError as e:
            launch_log.error("Failed to launch debug session", error=str(e))
            return False
        launch_log.info("Debug session launched", pid=self._process.pid, emoji="🐞")
        return True

    async def stop(self) -> None:
        if self._process is not None:
            log.info("Stopping debug session", pid=self._process.pid)
            await terminate_process_group(self._process, STOP_GRACE_SECONDS)

    async def wait(self) -> None:
        if self._process is not None:
            await self._process.wait()
