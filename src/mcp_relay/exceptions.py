"""Custom exceptions for mcp-relay.

Exceptions are organized into three categories:

Configuration:
    - ConfigurationError: Config file is missing or invalid

Connection Errors (proxy attempts recovery):
    - DaemonConnectionError: Transport to the daemon failed
    - BackendUnavailableError: The daemon's shared backend is not running

Fatal to the caller (surfaced, never retried):
    - HandshakeError: Daemon rejected the client during negotiation
    - ProxyAlreadyStartedError: start() called on a running proxy
    - DaemonAlreadyRunningError: Another valid daemon holds the lock

Lock contention and stale locks are NOT exceptions. They are reported through
result objects (see daemon/lock.py).

Usage:
    from mcp_relay.exceptions import HandshakeError, DaemonConnectionError
"""

from __future__ import annotations

__all__ = [
    "BackendUnavailableError",
    "ConfigurationError",
    "DAEMON_UNAVAILABLE_CODE",
    "DaemonAlreadyRunningError",
    "DaemonConnectionError",
    "HandshakeError",
    "ProxyAlreadyStartedError",
    "RelayError",
    "jsonrpc_error_response",
]

from typing import TYPE_CHECKING, Any

from mcp.types import ErrorData

if TYPE_CHECKING:
    from mcp_relay.daemon.lock import LockInfo


# Custom JSON-RPC error code for synthetic replies written by the proxy
# In the reserved range -32000 to -32099 for server-defined errors
DAEMON_UNAVAILABLE_CODE = -32000


def jsonrpc_error_response(
    request_id: Any,
    code: int,
    message: str,
    data: Any | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC 2.0 error response.

    Args:
        request_id: Id of the request being answered (None if unknown).
        code: JSON-RPC error code.
        message: Human-readable error message.
        data: Optional structured error data.

    Returns:
        Dict ready to be serialized as one output line.
    """
    error = ErrorData(code=code, message=message, data=data)
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": error.model_dump(exclude_none=True),
    }


class RelayError(Exception):
    """Base class for all mcp-relay errors."""


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(RelayError):
    """Raised when configuration is missing or invalid."""


# =============================================================================
# Connection Errors
# =============================================================================


class DaemonConnectionError(RelayError):
    """Raised when the transport to the daemon fails.

    During normal operation this triggers reconnection. During start()
    it is surfaced to the caller.
    """


class BackendUnavailableError(RelayError):
    """Raised when the shared backend server is not running or exited."""


# =============================================================================
# Fatal to the caller
# =============================================================================


class HandshakeError(RelayError):
    """Raised when the daemon rejects the handshake or never acknowledges it.

    Attributes:
        reason: Failure reason reported by the daemon (or a local reason
            such as a timeout).
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Handshake failed: {reason}")


class ProxyAlreadyStartedError(RelayError):
    """Raised when start() is called on a proxy that is not idle."""

    def __init__(self, state: str) -> None:
        self.state = state
        super().__init__(f"Proxy already started (state: {state})")


class DaemonAlreadyRunningError(RelayError):
    """Raised when a daemon starts while another valid daemon holds the lock.

    Attributes:
        existing: Lock record of the running daemon, if readable.
    """

    def __init__(self, existing: LockInfo | None = None) -> None:
        self.existing = existing
        detail = f" (pid {existing.pid})" if existing is not None else ""
        super().__init__(f"Another daemon is already running{detail}")
