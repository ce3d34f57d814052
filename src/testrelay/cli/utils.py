# src/testrelay/cli/utils.py

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
import structlog

from testrelay.config import DEFAULT_CONFIG_NAME, TestRelayConfig, default_config, load_config
from testrelay.telemetry.logger import setup_logging as core_setup_logging

log = structlog.get_logger("cli.utils")

LOG_LEVEL_NAMES = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def logging_options(f):
    """Adds ``--log-level``, ``--log-file`` and ``--json-logs`` to a command."""
    options = [
        click.option(
            "-l",
            "--log-level",
            type=click.Choice(LOG_LEVEL_NAMES, case_sensitive=False),
            default=None,
            envvar="TESTRELAY_LOG_LEVEL",
            help="Logging level (overrides the config file).",
        ),
        click.option(
            "--log-file",
            type=click.Path(dir_okay=False, writable=True, resolve_path=True),
            default=None,
            envvar="TESTRELAY_LOG_FILE",
            help="Also write JSON logs to this file.",
        ),
        click.option(
            "--json-logs",
            is_flag=True,
            default=None,
            envvar="TESTRELAY_JSON_LOGS",
            help="Render console logs as JSON.",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def config_path_option(f: Callable | None = None, *, must_exist: bool = False):
    """``-c/--config-path``; usable bare or as ``config_path_option(must_exist=True)``."""

    def decorate(func: Callable) -> Callable:
        return click.option(
            "-c",
            "--config-path",
            type=click.Path(exists=must_exist, dir_okay=False, readable=True, path_type=Path),
            default=Path(DEFAULT_CONFIG_NAME),
            show_default=True,
            envvar="TESTRELAY_CONF",
            show_envvar=True,
            help="Path to the testrelay configuration file.",
        )(func)

    return decorate(f) if f is not None else decorate


def setup_logging_from_context(
    ctx: click.Context,
    overrides: dict[str, Any] | None = None,
    default_log_level: str = "WARNING",
) -> None:
    """
    Configures logging from the group's options, letting a sub-command's own
    ``--log-level``/``--log-file``/``--json-logs`` win when given.
    """
    ctx.ensure_object(dict)
    overrides = overrides or {}
    level_name = (overrides.get("log_level") or ctx.obj.get("LOG_LEVEL") or default_log_level).upper()
    log_file = overrides.get("log_file") or ctx.obj.get("LOG_FILE")
    json_logs = overrides.get("json_logs")
    if json_logs is None:
        json_logs = ctx.obj.get("JSON_LOGS", False)

    core_setup_logging(
        level=logging.getLevelNamesMapping().get(level_name, logging.INFO),
        json_logs=json_logs,
        log_file=log_file,
        headless_mode=True,
    )
    log.debug("CLI logging initialized", level=level_name, file=log_file or "console", json=json_logs)


def load_config_or_default(config_path: Path) -> TestRelayConfig:
    """The configured workspaces, or the current directory when no file exists."""
    if config_path.exists():
        return load_config(config_path)
    log.debug("No configuration file, using the current directory as the workspace", config_path=str(config_path))
    return default_config(Path.cwd())


# ⚙️🛠️
