"""Main CLI entry point for mcp-relay.

Defines the CLI group and registers all subcommands.

Commands:
    connect - Bridge this process's stdio to the shared daemon
    daemon  - Daemon commands (run, status, stop, clear-lock)

Subcommand help:
    mcp-relay COMMAND -h         Show help for a specific command
"""

from __future__ import annotations

__all__ = ["cli"]

import sys

import click

from mcp_relay import __version__
from mcp_relay.constants import APP_NAME

from .commands.connect import connect
from .commands.daemon import daemon


class ReorderedGroup(click.Group):
    """Group that prints usage examples after the command list."""

    def format_epilog(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        formatter.write(
            """
Example (MCP host configuration):
  "command": "mcp-relay",
  "args": ["connect", "--", "npx", "-y", "@modelcontextprotocol/server-filesystem", "/tmp"]

  The first client starts a shared daemon for the server command; later
  clients reuse it. Set MCP_RELAY_DISABLE_DAEMON=1 to run the server directly.
"""
        )


@click.group(
    cls=ReorderedGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """mcp-relay: share one MCP server process between many stdio clients."""
    if version:
        click.echo(f"{APP_NAME} {__version__}")
        sys.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# Register commands
cli.add_command(connect)
cli.add_command(daemon)


def main() -> None:
    """CLI entry point."""
    cli()
