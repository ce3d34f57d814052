# src/testrelay/cli/main.py

"""
Main CLI entry point for testrelay using Click.
Handles global options like logging level.
"""

from importlib.metadata import PackageNotFoundError, version

import click
import structlog

from testrelay.cli.config_cmds import config_cli
from testrelay.cli.discover_cmds import discover_cli
from testrelay.cli.run_cmds import run_cli
from testrelay.cli.utils import logging_options, setup_logging_from_context
from testrelay.telemetry import StructLogger

try:
    __version__ = version("testrelay")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

log: StructLogger = structlog.get_logger("cli.main")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-V", "--version", package_name="testrelay")
@logging_options
@click.pass_context
def cli(
    ctx: click.Context,
    log_level: str | None,
    log_file: str | None,
    json_logs: bool | None,
):
    """
    testrelay: discover tests and stream their results live.

    Resolves test selections into commands through a language-analysis server,
    runs them (plainly, in a terminal or under a debugger) and reports every
    test as the reporter inside the test process announces it.
    """
    ctx.ensure_object(dict).update(LOG_LEVEL=log_level, LOG_FILE=log_file, JSON_LOGS=bool(json_logs))
    setup_logging_from_context(ctx)
    log.debug("CLI group initialized", subcommand=ctx.invoked_subcommand)


cli.add_command(config_cli)
cli.add_command(discover_cli)
cli.add_command(run_cli)

if __name__ == "__main__":
    cli()

# 🖥️⚙️
