"""Connect command for mcp-relay CLI.

This is the command an MCP host launches. It decides the mode, starting the
shared daemon if none is running, then relays stdin/stdout to the daemon
until the host closes stdin.
"""

from __future__ import annotations

__all__ = ["connect"]

import asyncio
import sys
from pathlib import Path

import click

from mcp_relay import __version__
from mcp_relay.config import ProxySettings, configure_logging, load_config
from mcp_relay.daemon.bootstrap import determine_mode, ensure_daemon_running, run_standalone
from mcp_relay.daemon.lock import LockManager
from mcp_relay.daemon.protocol import HandshakeAck
from mcp_relay.daemon.stdio_proxy import StdioProxyClient
from mcp_relay.daemon.transport import UnixSocketTransport
from mcp_relay.exceptions import DaemonConnectionError, HandshakeError
from mcp_relay.telemetry.system_logger import get_system_logger

from ..styling import style_error

_logger = get_system_logger()


async def _run_proxy(address: str, settings: ProxySettings) -> None:
    """Relay this process's stdin/stdout to the daemon at address."""
    loop = asyncio.get_running_loop()
    stdin = asyncio.StreamReader(limit=settings.max_input_buffer_bytes)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(stdin), sys.stdin.buffer)

    proxy = StdioProxyClient(
        UnixSocketTransport(settings.connect_timeout_seconds),
        address,
        __version__,
        settings,
        stdin=stdin,
    )

    def on_upgrade(ack: HandshakeAck) -> None:
        _logger.warning(
            {
                "event": "upgrade_available",
                "message": (
                    f"Daemon is version {ack.daemon_version}, client is {__version__}; "
                    "consider upgrading so both match"
                ),
            }
        )

    proxy.subscribe("upgrade_available", on_upgrade)
    await proxy.run()


@click.command(context_settings={"ignore_unknown_options": True})
@click.option(
    "--socket",
    "socket_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Socket for an auto-started daemon (default: <data dir>/daemon.sock)",
)
@click.option(
    "--no-autostart",
    is_flag=True,
    help="Fail instead of starting a daemon when none is running",
)
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def connect(
    socket_path: Path | None,
    no_autostart: bool,
    command: str,
    args: tuple[str, ...],
) -> None:
    """Relay stdio to the shared daemon running COMMAND.

    \b
    Example:
      mcp-relay connect -- npx -y @modelcontextprotocol/server-filesystem /tmp
    """
    config = load_config()
    configure_logging(config)

    lock_manager = LockManager()
    result = determine_mode(lock_manager)

    if result.mode == "standalone":
        try:
            run_standalone(command, args)
        except OSError as e:
            click.echo(style_error(f"Cannot run {command}: {e}"), err=True)
            sys.exit(1)

    if result.mode == "proxy":
        lock = result.existing_daemon
    elif no_autostart:
        click.echo(style_error(f"No daemon running ({result.reason})"), err=True)
        click.echo("  Start one with: mcp-relay daemon run -- COMMAND [ARGS...]", err=True)
        sys.exit(1)
    else:
        lock = ensure_daemon_running(
            lock_manager,
            command,
            args,
            socket_path=str(socket_path) if socket_path is not None else None,
        )

    if lock is None:
        click.echo(style_error("Daemon did not start; check the system log"), err=True)
        sys.exit(1)

    try:
        asyncio.run(_run_proxy(lock.socket_path, config.proxy))
    except (DaemonConnectionError, HandshakeError) as e:
        click.echo(style_error(str(e)), err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(0)
