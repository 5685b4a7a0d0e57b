"""Application-wide constants for mcp-relay.

Constants that define application behavior.
For user-configurable settings, see config.py.
"""

import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    # Application identity
    "APP_NAME",
    # Directories
    "CONFIG_DIR",
    "DATA_DIR",
    "LOG_DIR",
    "DATA_DIR_ENV_VAR",
    "get_data_dir",
    # Daemon files
    "LOCK_FILENAME",
    "SOCKET_FILENAME",
    "get_lock_path",
    "get_socket_path",
    # Wire protocol
    "PROTOCOL_VERSION",
    "MAX_VERSION_LENGTH",
    "MAX_VERSION_COMPONENT",
    # Lock manager
    "INSTANCE_PROBE_TIMEOUT_SECONDS",
    # Proxy defaults
    "DEFAULT_MAX_RECONNECT_ATTEMPTS",
    "DEFAULT_RECONNECT_DELAY_SECONDS",
    "DEFAULT_HEARTBEAT_INTERVAL_SECONDS",
    "DEFAULT_HANDSHAKE_TIMEOUT_SECONDS",
    "DEFAULT_CONNECT_TIMEOUT_SECONDS",
    "DEFAULT_MAX_BUFFERED_REQUESTS",
    "DEFAULT_MAX_BUFFER_BYTES",
    "DEFAULT_MAX_RECEIVE_BUFFER_BYTES",
    "DEFAULT_MAX_INPUT_BUFFER_BYTES",
    # Daemon defaults
    "DEFAULT_SHUTDOWN_GRACE_PERIOD_MS",
    "DEFAULT_IDLE_TIMEOUT_SECONDS",
    "DAEMON_STARTUP_TIMEOUT_SECONDS",
    "DAEMON_POLL_INTERVAL_SECONDS",
    "SOCKET_CONNECT_TIMEOUT_SECONDS",
    # Bootstrap
    "DISABLE_DAEMON_ENV_VAR",
]

# ============================================================================
# Application Identity
# ============================================================================

APP_NAME = "mcp-relay"

# ============================================================================
# Directories
# ============================================================================

# Override for the directory holding the lock file and daemon socket.
# Lets tests and multi-user setups isolate daemons from each other.
DATA_DIR_ENV_VAR = "MCP_RELAY_DATA_DIR"

CONFIG_DIR: Path = Path(user_config_dir(APP_NAME))
DATA_DIR: Path = Path(user_data_dir(APP_NAME))
LOG_DIR: Path = Path(user_log_dir(APP_NAME))


def get_data_dir() -> Path:
    """Get the directory that holds the daemon lock file and socket.

    Returns:
        Path from MCP_RELAY_DATA_DIR if set, otherwise the platform data dir.
    """
    override = os.environ.get(DATA_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return DATA_DIR


# ============================================================================
# Daemon Files
# ============================================================================

LOCK_FILENAME = "daemon.lock"
SOCKET_FILENAME = "daemon.sock"


def get_lock_path() -> Path:
    """Get the daemon lock file path (<data_dir>/daemon.lock)."""
    return get_data_dir() / LOCK_FILENAME


def get_socket_path() -> Path:
    """Get the daemon socket path (<data_dir>/daemon.sock)."""
    return get_data_dir() / SOCKET_FILENAME


# ============================================================================
# Wire Protocol
# ============================================================================

# Bumped on any incompatible change to message shapes.
# Client and daemon must agree exactly.
PROTOCOL_VERSION = 1

# Upper bounds when parsing semver strings received from peers
MAX_VERSION_LENGTH = 256
MAX_VERSION_COMPONENT = 999_999

# ============================================================================
# Lock Manager
# ============================================================================

# Timeout for the verify_instance round trip against a live pid
INSTANCE_PROBE_TIMEOUT_SECONDS: float = 2.0

# ============================================================================
# Stdio Proxy Defaults
# ============================================================================

DEFAULT_MAX_RECONNECT_ATTEMPTS = 5

# Base delay for exponential backoff: delay(k) = base * 2**(k-1)
DEFAULT_RECONNECT_DELAY_SECONDS: float = 1.0

DEFAULT_HEARTBEAT_INTERVAL_SECONDS: float = 30.0
DEFAULT_HANDSHAKE_TIMEOUT_SECONDS: float = 5.0
DEFAULT_CONNECT_TIMEOUT_SECONDS: float = 5.0

# Outbound buffer used while the daemon is unreachable
DEFAULT_MAX_BUFFERED_REQUESTS = 1000
DEFAULT_MAX_BUFFER_BYTES = 10 * 1024 * 1024

# Unterminated-line limits for the two frame decoders
DEFAULT_MAX_RECEIVE_BUFFER_BYTES = 10 * 1024 * 1024
DEFAULT_MAX_INPUT_BUFFER_BYTES = 10 * 1024 * 1024

# ============================================================================
# Daemon
# ============================================================================

# Grace period announced to clients in the shutdown message
DEFAULT_SHUTDOWN_GRACE_PERIOD_MS = 5000

# Daemon exits after this long with no connected clients (0 disables)
DEFAULT_IDLE_TIMEOUT_SECONDS: float = 300.0

# Auto-start waits this long for the spawned daemon to hold a valid lock
DAEMON_STARTUP_TIMEOUT_SECONDS: float = 10.0
DAEMON_POLL_INTERVAL_SECONDS: float = 0.1

# Timeout for synchronous socket connectability checks
SOCKET_CONNECT_TIMEOUT_SECONDS: float = 1.0

# ============================================================================
# Bootstrap
# ============================================================================

# Set to "1" or "true" to bypass the daemon and run the backend directly
DISABLE_DAEMON_ENV_VAR = "MCP_RELAY_DISABLE_DAEMON"
