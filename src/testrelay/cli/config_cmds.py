# src/testrelay/cli/config_cmds.py

from pathlib import Path

import click
import structlog
from rich.pretty import pretty_repr

from testrelay.cli.utils import config_path_option, logging_options, setup_logging_from_context
from testrelay.config import load_config
from testrelay.exceptions import ConfigurationError
from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("cli.config")


@click.group(name="config")
def config_cli():
    """Commands for inspecting and validating configuration."""


@config_cli.command(name="show")
@config_path_option(must_exist=True)
@logging_options
@click.pass_context
def show_config(ctx: click.Context, config_path: Path, **kwargs):
    """Load, validate and print the configuration, with defaults filled in."""
    setup_logging_from_context(ctx, kwargs)
    log.info("Executing 'config show' command", config_path=str(config_path))

    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        log.error("Failed to load or validate configuration", error=str(e), exc_info=True)
        click.echo(f"Error: Configuration problem in '{config_path}':\n{e}", err=True)
        ctx.exit(1)

    click.echo(pretty_repr(config, expand_all=True))

    disabled = sorted(workspace_id for workspace_id in config.workspaces if workspace_id not in config.enabled_workspaces)
    if disabled:
        log.warning("Some workspace paths are invalid and were disabled", workspaces=disabled)
    else:
        log.info("All workspace paths validated successfully.")


# 🔼⚙️
