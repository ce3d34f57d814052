# src/testrelay/runtime/processes.py

"""
Process-group helpers shared by the engine and the debug launcher.
"""

import asyncio
import os
import signal

import structlog

from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("runtime.processes")


def _signal_group(pid: int, sig: signal.Signals) -> bool:
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        return False
    except OSError as e:
        log.warning("Failed to signal process group", pid=pid, signal=sig.name, error=str(e))
        return False
    return True


async def terminate_process_group(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """
    SIGTERM the process group led by ``process``, then SIGKILL it if it is
    still alive after ``grace_seconds``. The process must have been started
    with ``start_new_session=True``.
    """
    if process.returncode is not None:
        return
    if not _signal_group(process.pid, signal.SIGTERM):
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        log.warning("Process group ignored SIGTERM, killing it", pid=process.pid, grace_seconds=grace_seconds)
        _signal_group(process.pid, signal.SIGKILL)
        await process.wait()
