"""Allows `python -m mcp_relay.cli` (used by auto-start when not on PATH)."""

from .main import main

main()
