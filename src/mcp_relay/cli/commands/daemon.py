"""Daemon command group for mcp-relay CLI.

Provides commands to control the shared daemon:
- run: Run the daemon in the foreground (also used by auto-start)
- status: Show the lock file and whether its owner is verified
- stop: Send SIGTERM to the verified daemon
- clear-lock: Delete the lock file
"""

from __future__ import annotations

__all__ = ["daemon"]

import asyncio
import json
import os
import signal
import sys
from pathlib import Path

import click

from mcp_relay.config import configure_logging, load_config_strict
from mcp_relay.daemon.lock import LockManager
from mcp_relay.daemon.server import run_daemon
from mcp_relay.daemon.transport import wait_for_condition
from mcp_relay.exceptions import ConfigurationError, DaemonAlreadyRunningError, RelayError

from ..styling import style_dim, style_error, style_label, style_success, style_warning

# Timeout for the daemon to release its lock after SIGTERM (seconds)
DAEMON_STOP_TIMEOUT_SECONDS = 10.0


@click.group()
def daemon() -> None:
    """Shared daemon commands.

    The daemon owns the backend MCP server. It is normally auto-started
    by the first `mcp-relay connect` and exits when idle.
    """
    pass


@daemon.command("run", context_settings={"ignore_unknown_options": True})
@click.option(
    "--socket",
    "socket_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Socket to listen on (default: <data dir>/daemon.sock)",
)
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def run(socket_path: Path | None, command: str, args: tuple[str, ...]) -> None:
    """Run the daemon in the foreground, sharing COMMAND between clients."""
    try:
        config = load_config_strict()
    except ConfigurationError as e:
        click.echo(style_error(str(e)), err=True)
        sys.exit(1)
    configure_logging(config)

    try:
        asyncio.run(run_daemon(command, args, socket_path=socket_path, settings=config.daemon))
    except DaemonAlreadyRunningError as e:
        click.echo(style_warning(str(e)), err=True)
        sys.exit(1)
    except RelayError as e:
        click.echo(style_error(f"Daemon error: {e}"), err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(0)


@daemon.command("status")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(as_json: bool) -> None:
    """Show daemon lock status."""
    lock_status = LockManager().get_status()

    if as_json:
        click.echo(json.dumps(lock_status.model_dump(mode="json"), indent=2))
        return

    info = lock_status.lock_info
    click.echo()
    if info is not None and lock_status.is_valid:
        click.echo(style_success("Daemon: Running") + f" (pid: {info.pid})")
        click.echo(f"  {style_label('Version')} {info.version}")
        click.echo(f"  {style_label('Clients')} {info.client_count}")
        click.echo(f"  {style_label('Socket')} {info.socket_path}")
        if info.instance_id:
            click.echo(f"  {style_label('Instance')} {info.instance_id}")
    elif lock_status.lock_exists:
        reason = lock_status.verification.reason if lock_status.verification else "unreadable"
        click.echo(style_warning(f"Daemon: Stale lock ({reason})"))
        click.echo(f"  Lock: {lock_status.lock_path}")
        click.echo("  Cleared automatically by the next daemon, or: mcp-relay daemon clear-lock")
    else:
        click.echo(style_warning("Daemon: Not running"))
        click.echo(style_dim("  Started automatically by: mcp-relay connect -- COMMAND"))
    click.echo()


@daemon.command("stop")
def stop() -> None:
    """Stop the running daemon."""
    lock_manager = LockManager()
    lock = lock_manager.read_lock()
    if lock is None or not lock_manager.verify_instance(lock).valid:
        click.echo(style_warning("Daemon is not running"))
        sys.exit(0)

    pid = lock.pid
    click.echo(f"Stopping daemon (pid: {pid})...")
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        click.echo(style_warning("Daemon exited before it could be signalled"))
        sys.exit(0)
    except PermissionError as e:
        click.echo(style_error(f"Failed to stop daemon: {e}"), err=True)
        sys.exit(1)

    if wait_for_condition(
        lambda: lock_manager.read_lock() is None or not lock_manager.is_pid_alive(pid),
        DAEMON_STOP_TIMEOUT_SECONDS,
    ):
        click.echo(style_success("Daemon stopped"))
        sys.exit(0)

    click.echo(style_warning("Stop signal sent but daemon still running"))
    click.echo(f"  You may need to kill it manually: kill {pid}")
    sys.exit(1)


@daemon.command("clear-lock")
@click.option("--yes", "-y", is_flag=True, help="Don't ask when the lock looks valid")
def clear_lock(yes: bool) -> None:
    """Delete the daemon lock file.

    Use this only when a crashed daemon left a lock behind that is not
    reclaimed automatically.
    """
    lock_manager = LockManager()
    lock_status = lock_manager.get_status()

    if not lock_status.lock_exists:
        click.echo(style_dim("No lock file to clear."))
        return

    if lock_status.is_valid and not yes:
        pid = lock_status.lock_info.pid if lock_status.lock_info else "?"
        click.echo(style_warning(f"Lock belongs to a running daemon (pid: {pid})"))
        click.confirm("Clear it anyway?", abort=True)

    if lock_manager.force_clear_lock():
        click.echo(style_success(f"Lock cleared: {lock_status.lock_path}"))
    else:
        click.echo(style_error("Failed to clear lock"), err=True)
        sys.exit(1)
