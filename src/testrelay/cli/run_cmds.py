# src/testrelay/cli/run_cmds.py

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click
import structlog

from testrelay.cancellation import CancellationSource
from testrelay.cli.console import ConsoleExplorerHost
from testrelay.cli.utils import config_path_option, load_config_or_default, logging_options, setup_logging_from_context
from testrelay.exceptions import ConfigurationError
from testrelay.runtime.session import TestSession
from testrelay.selection import RunMode, RunRequest
from testrelay.state import NodeStatus, TestRun
from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("cli.run")

EXIT_OK = 0
EXIT_TESTS_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def exit_code_for(run: TestRun, cancelled: bool) -> int:
    if cancelled:
        return EXIT_INTERRUPTED
    counts = run.counts()
    if run.failure_message or counts[NodeStatus.FAILED] or counts[NodeStatus.ERRORED]:
        return EXIT_TESTS_FAILED
    return EXIT_OK


async def _run_session(
    session: TestSession,
    includes: tuple[str, ...],
    excludes: tuple[str, ...],
    mode: RunMode,
    continuous: bool,
) -> int:
    caller = CancellationSource()
    loop = asyncio.get_running_loop()
    # Ctrl-C stops the run the same way an explorer "stop" button would.
    loop.add_signal_handler(signal.SIGINT, caller.cancel)
    try:
        async with session:
            included, unmatched = await session.select(list(includes))
            excluded, unmatched_excludes = await session.select(list(excludes))
            if unmatched or unmatched_excludes:
                for selector in unmatched + unmatched_excludes:
                    click.echo(f"Error: No test matches '{selector}'", err=True)
                return EXIT_USAGE

            request = RunRequest(included=included, excluded=excluded, mode=mode, continuous=continuous)
            run = await session.run(request, caller.token)
            return exit_code_for(run, caller.is_cancellation_requested)
    finally:
        loop.remove_signal_handler(signal.SIGINT)


@click.command(name="run")
@config_path_option
@click.option(
    "-m",
    "--mode",
    type=click.Choice([mode.value for mode in RunMode]),
    default=RunMode.RUN.value,
    show_default=True,
    help="How to execute the resolved commands.",
)
@click.option("-i", "--include", "includes", multiple=True, help="Test id or path to run (repeatable; default: all).")
@click.option("-x", "--exclude", "excludes", multiple=True, help="Test id or path to leave out (repeatable).")
@click.option("--continuous", is_flag=True, default=False, help="Re-run whenever a test file changes, until Ctrl-C.")
@click.option("--quiet-output", is_flag=True, default=False, help="Do not echo the test process output.")
@logging_options
@click.pass_context
def run_cli(
    ctx: click.Context,
    config_path: Path,
    mode: str,
    includes: tuple[str, ...],
    excludes: tuple[str, ...],
    continuous: bool,
    quiet_output: bool,
    **kwargs,
):
    """Resolve, execute and report the selected tests."""
    setup_logging_from_context(ctx, kwargs)
    try:
        config = load_config_or_default(config_path)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_USAGE)

    host = ConsoleExplorerHost(show_output=not quiet_output)
    session = TestSession(config, host=host)
    log.info("Starting 'run' command", mode=mode, includes=len(includes), excludes=len(excludes))

    try:
        exit_code = asyncio.run(_run_session(session, includes, excludes, RunMode(mode), continuous))
    except KeyboardInterrupt:
        log.warning("Run interrupted by KeyboardInterrupt (CTRL-C).")
        exit_code = EXIT_INTERRUPTED
    finally:
        logging.shutdown()

    if exit_code != EXIT_OK:
        sys.exit(exit_code)


# 🔼⚙️
