# src/testrelay/cli/discover_cmds.py

import asyncio
from pathlib import Path

import click
import structlog
from rich.console import Console

from testrelay.cli.console import hierarchy_tree
from testrelay.cli.utils import config_path_option, load_config_or_default, logging_options, setup_logging_from_context
from testrelay.exceptions import ConfigurationError
from testrelay.model.node import NodeKind, TestNode
from testrelay.runtime.session import TestSession
from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("cli.discover")


async def _discover(session: TestSession, deep: bool) -> list[TestNode]:
    async with session:
        roots = await session.hierarchy.refresh()
        for root in roots:
            await session.hierarchy.resolve(root)
        if deep:
            files = [node for node in session.hierarchy.iter_nodes() if node.kind is NodeKind.FILE]
            for file_node in files:
                await session.hierarchy.resolve(file_node)
        return list(session.hierarchy.roots.values())


@click.command(name="discover")
@config_path_option
@click.option(
    "--deep/--files-only",
    default=True,
    show_default=True,
    help="Ask the analysis server for the tests inside each file, or only list the files.",
)
@logging_options
@click.pass_context
def discover_cli(ctx: click.Context, config_path: Path, deep: bool, **kwargs):
    """Show the test hierarchy of the configured workspaces."""
    setup_logging_from_context(ctx, kwargs)
    try:
        config = load_config_or_default(config_path)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    roots = asyncio.run(_discover(TestSession(config), deep))
    log.debug("Discovery finished", roots=len(roots))
    Console().print(hierarchy_tree(roots))


# 🔼⚙️
