"""mcp-relay: share one long-running MCP server between many stdio clients."""

__version__ = "0.1.0"
