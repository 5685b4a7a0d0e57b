"""Command-line interface for mcp-relay.

Provides commands for connecting a stdio MCP host to the shared daemon and
for inspecting or controlling that daemon.
"""

from .main import cli, main

__all__ = ["cli", "main"]
