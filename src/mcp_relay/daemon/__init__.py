"""Shared daemon and the stdio proxy that connects to it.

- lock.py: single-instance lock file with instance verification
- protocol.py: NDJSON wire messages and framing
- versioning.py: client/daemon version negotiation
- transport.py: Transport seam (Unix socket implementation)
- stdio_proxy.py: client-side stdio <-> daemon bridge
- server.py: the daemon (socket server around a shared backend)
- backend.py: shared stdio MCP server subprocess
- bootstrap.py: standalone / daemon / proxy mode selection and auto-start
"""

from __future__ import annotations

from .bootstrap import BootstrapResult, determine_mode, ensure_daemon_running, is_daemon_disabled
from .lock import LockInfo, LockManager
from .server import DaemonServer, run_daemon
from .stdio_proxy import ProxyState, StdioProxyClient
from .transport import UnixSocketTransport

__all__ = [
    "BootstrapResult",
    "DaemonServer",
    "LockInfo",
    "LockManager",
    "ProxyState",
    "StdioProxyClient",
    "UnixSocketTransport",
    "determine_mode",
    "ensure_daemon_running",
    "is_daemon_disabled",
    "run_daemon",
]
