# tests/unit/test_debugger.py

import asyncio
from pathlib import Path

import pytest

from testrelay.config import DebuggerConfig
from testrelay.runtime.debugger import SubprocessDebugLauncher, strip_interpreter


@pytest.mark.parametrize(
    "program, expected",
    [
        ("python -m pytest -x", "-m pytest -x"),
        ("/usr/bin/python3.12 -m pytest 'tests/test a.py'", "-m pytest 'tests/test a.py'"),
        ("pytest -x", "pytest -x"),
        ("python 'unterminated", "python 'unterminated"),
    ],
)
def test_strip_interpreter(program: str, expected: str):
    assert strip_interpreter(program) == expected


def test_default_template_runs_debugpy():
    launcher = SubprocessDebugLauncher(DebuggerConfig())
    assert launcher.build_command("python -m pytest -x") == (
        "python -m debugpy --listen localhost:5678 --wait-for-client -m pytest -x"
    )


@pytest.mark.asyncio
async def test_launch_and_stop(tmp_path: Path):
    launcher = SubprocessDebugLauncher(DebuggerConfig(command_template="sleep 30 # {program}"))

    assert await launcher.launch("pytest -x", {"PATH": "/usr/bin:/bin"}, tmp_path)
    await launcher.stop()
    await asyncio.wait_for(launcher.wait(), timeout=5)


@pytest.mark.asyncio
async def test_launch_reports_a_missing_working_directory(tmp_path: Path):
    launcher = SubprocessDebugLauncher(DebuggerConfig(command_template="{program}"))
    assert not await launcher.launch("true", {}, tmp_path / "gone")
