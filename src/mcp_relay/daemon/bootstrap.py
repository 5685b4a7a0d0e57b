"""Decide how this process should run and start the daemon when needed.

Modes:
- standalone: daemon disabled via MCP_RELAY_DISABLE_DAEMON; run the backend directly
- daemon: no valid daemon exists; this process (or a spawned one) becomes it
- proxy: a verified daemon is running; relay stdio to it

ensure_daemon_running() spawns `mcp-relay daemon run` detached and waits for
the new daemon to hold a verified lock. A file lock serializes competing
starters so only one of them spawns.
"""

from __future__ import annotations

__all__ = [
    "BootstrapMode",
    "BootstrapResult",
    "determine_mode",
    "ensure_daemon_running",
    "is_daemon_disabled",
    "run_standalone",
]

import fcntl
import os
import shutil
import subprocess
import sys
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Literal, NoReturn

from pydantic import BaseModel

from mcp_relay.constants import (
    APP_NAME,
    DAEMON_POLL_INTERVAL_SECONDS,
    DAEMON_STARTUP_TIMEOUT_SECONDS,
    DISABLE_DAEMON_ENV_VAR,
)
from mcp_relay.daemon.lock import LockInfo, LockManager
from mcp_relay.daemon.transport import wait_for_condition
from mcp_relay.telemetry.system_logger import get_system_logger

_logger = get_system_logger()

# Serializes auto-start between competing clients (separate from daemon.lock)
SPAWN_LOCK_FILENAME = "spawn.lock"

BootstrapMode = Literal["standalone", "daemon", "proxy"]


class BootstrapResult(BaseModel):
    mode: BootstrapMode
    reason: str
    existing_daemon: LockInfo | None = None


def is_daemon_disabled() -> bool:
    """True when MCP_RELAY_DISABLE_DAEMON is "1" or "true"."""
    return os.environ.get(DISABLE_DAEMON_ENV_VAR, "").strip().lower() in ("1", "true")


def determine_mode(lock_manager: LockManager) -> BootstrapResult:
    """Pick standalone, daemon, or proxy mode for this process.

    Args:
        lock_manager: Lock manager for the daemon's data dir.

    Returns:
        BootstrapResult; existing_daemon is set in proxy mode.
    """
    if is_daemon_disabled():
        return BootstrapResult(mode="standalone", reason=f"{DISABLE_DAEMON_ENV_VAR} is set")

    lock = lock_manager.read_lock()
    if lock is None:
        return BootstrapResult(mode="daemon", reason="no daemon lock")

    verification = lock_manager.verify_instance(lock)
    if not verification.valid:
        return BootstrapResult(mode="daemon", reason=f"stale lock ({verification.reason})")

    return BootstrapResult(
        mode="proxy",
        reason=f"daemon running ({verification.reason})",
        existing_daemon=lock,
    )


@contextmanager
def _file_lock(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive flock on lock_path for the duration of the block.

    Raises:
        OSError: If the lock file cannot be opened or locked.
    """
    lock_file = open(lock_path, "w")
    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        yield
    finally:
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError:
            pass
        lock_file.close()


def _relay_command() -> list[str]:
    executable = shutil.which(APP_NAME)
    if executable is None:
        return [sys.executable, "-m", "mcp_relay.cli"]
    return [executable]


def _spawn_daemon(command: str, args: Sequence[str], socket_path: str | None) -> bool:
    """Spawn `mcp-relay daemon run` as a detached process.

    Returns:
        True if the process was spawned.
    """
    argv = _relay_command() + ["daemon", "run"]
    if socket_path is not None:
        argv += ["--socket", socket_path]
    argv += ["--", command, *args]

    try:
        subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        _logger.warning(
            {
                "event": "daemon_spawn_error",
                "message": f"Failed to spawn daemon: {e}",
                "error_type": type(e).__name__,
                "error_message": str(e),
            }
        )
        return False
    return True


def ensure_daemon_running(
    lock_manager: LockManager,
    command: str,
    args: Sequence[str] = (),
    *,
    socket_path: str | None = None,
    timeout_seconds: float = DAEMON_STARTUP_TIMEOUT_SECONDS,
) -> LockInfo | None:
    """Return the running daemon's lock record, starting a daemon if needed.

    Args:
        lock_manager: Lock manager for the daemon's data dir.
        command: Backend executable the daemon should run.
        args: Backend arguments.
        socket_path: Socket path for a newly spawned daemon.
        timeout_seconds: How long to wait for the spawned daemon.

    Returns:
        The verified LockInfo, or None if no daemon could be started.
    """
    if lock_manager.is_lock_valid_strict():
        return lock_manager.read_lock()

    try:
        lock_manager.lock_dir.mkdir(parents=True, exist_ok=True)
        with _file_lock(lock_manager.lock_dir / SPAWN_LOCK_FILENAME):
            # Another client may have started it while we waited
            if lock_manager.is_lock_valid_strict():
                return lock_manager.read_lock()

            if not _spawn_daemon(command, args, socket_path):
                return None

            ready = wait_for_condition(
                lock_manager.is_lock_valid_strict,
                timeout_seconds=timeout_seconds,
                poll_interval=DAEMON_POLL_INTERVAL_SECONDS,
            )
    except OSError as e:
        _logger.warning(
            {
                "event": "spawn_lock_failed",
                "message": f"Failed to acquire spawn lock: {e}",
                "error_type": type(e).__name__,
                "error_message": str(e),
            }
        )
        return None

    if not ready:
        _logger.warning(
            {
                "event": "daemon_not_ready",
                "message": "Daemon did not become ready in time",
                "details": {"timeout_seconds": timeout_seconds},
            }
        )
        return None
    return lock_manager.read_lock()


def run_standalone(command: str, args: Sequence[str] = ()) -> NoReturn:
    """Replace this process with the backend command (no daemon, no proxy).

    The parent's stdin/stdout are inherited, so the backend talks to the
    parent directly.

    Raises:
        OSError: If the command cannot be executed.
    """
    _logger.info(
        {
            "event": "standalone_mode",
            "message": f"Daemon disabled, running backend directly: {command}",
            "details": {"args": list(args)},
        }
    )
    for handler in _logger.handlers:
        handler.flush()
    os.execvp(command, [command, *args])
