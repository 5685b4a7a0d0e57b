"""Transport seam between the stdio proxy and the daemon.

The proxy only depends on the Transport and Connection protocols below, so
tests can substitute an in-memory transport. UnixSocketTransport is the
concrete implementation over a Unix Domain Socket.

Also provides the synchronous helpers used outside the event loop:
- probe_instance: verify_instance round trip used by the lock manager
- check_socket_connection / wait_for_condition: used by bootstrap and CLI
"""

from __future__ import annotations

__all__ = [
    "Connection",
    "InstanceProbe",
    "StreamConnection",
    "Transport",
    "UnixSocketTransport",
    "check_socket_connection",
    "probe_instance",
    "wait_for_condition",
]

import asyncio
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from mcp_relay.constants import (
    DEFAULT_CONNECT_TIMEOUT_SECONDS,
    INSTANCE_PROBE_TIMEOUT_SECONDS,
    SOCKET_CONNECT_TIMEOUT_SECONDS,
)
from mcp_relay.daemon.protocol import VerifyInstance, VerifyInstanceAck, decode_message, encode_message
from mcp_relay.exceptions import DaemonConnectionError

# Bytes requested per read from the daemon socket
READ_CHUNK_SIZE = 64 * 1024

# Default poll interval for condition waiting (seconds)
DEFAULT_POLL_INTERVAL_SECONDS = 0.2

# Largest verify_instance_ack accepted by the probe
_MAX_PROBE_REPLY_BYTES = 4096


class Connection(Protocol):
    """Byte-duplex stream to the daemon."""

    async def read(self, n: int) -> bytes:
        """Read up to n bytes. Returns b"" at end of stream."""
        ...

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...


class Transport(Protocol):
    """Opens connections to a daemon address."""

    async def connect(self, address: str) -> Connection:
        """Connect to the daemon.

        Raises:
            DaemonConnectionError: If the connection cannot be established.
        """
        ...


class StreamConnection:
    """Connection backed by an asyncio StreamReader/StreamWriter pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    async def read(self, n: int) -> bytes:
        return await self._reader.read(n)

    def write(self, data: bytes) -> None:
        self._writer.write(data)

    async def drain(self) -> None:
        await self._writer.drain()

    def close(self) -> None:
        if not self._writer.is_closing():
            self._writer.close()


class UnixSocketTransport:
    """Transport over a Unix Domain Socket.

    Args:
        connect_timeout: Seconds to wait for the socket connect.
    """

    def __init__(self, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS) -> None:
        self.connect_timeout = connect_timeout

    async def connect(self, address: str) -> Connection:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(address),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise DaemonConnectionError(f"Timed out connecting to daemon at {address}") from e
        except OSError as e:
            raise DaemonConnectionError(f"Cannot connect to daemon at {address}: {e}") from e
        return StreamConnection(reader, writer)


# =============================================================================
# Synchronous helpers
# =============================================================================


@dataclass(frozen=True)
class InstanceProbe:
    """Result of a verify_instance round trip.

    Attributes:
        reachable: True if the daemon answered with a well-formed ack.
        instance_id: Instance id the daemon reported (None if unreachable
            or if the daemon did not report one).
    """

    reachable: bool
    instance_id: str | None = None


def probe_instance(
    socket_path: str,
    timeout: float = INSTANCE_PROBE_TIMEOUT_SECONDS,
) -> InstanceProbe:
    """Ask the daemon listening on socket_path for its instance id.

    Sends verify_instance and reads one verify_instance_ack line. Connect
    failures, timeouts, early close, and unparseable replies all report
    reachable=False.

    Args:
        socket_path: Path to the daemon's Unix socket.
        timeout: Overall timeout in seconds for connect and reply.

    Returns:
        InstanceProbe describing what the daemon reported.
    """
    deadline = time.monotonic() + timeout
    reply = bytearray()

    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            sock.connect(socket_path)
            sock.sendall(encode_message(VerifyInstance()))
            while b"\n" not in reply and len(reply) < _MAX_PROBE_REPLY_BYTES:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return InstanceProbe(reachable=False)
                sock.settimeout(remaining)
                chunk = sock.recv(_MAX_PROBE_REPLY_BYTES)
                if not chunk:
                    break
                reply.extend(chunk)
    except OSError:
        # Includes socket.timeout, ConnectionRefusedError, FileNotFoundError
        return InstanceProbe(reachable=False)

    line, sep, _ = bytes(reply).partition(b"\n")
    if not sep:
        return InstanceProbe(reachable=False)

    msg = decode_message(line)
    if not isinstance(msg, VerifyInstanceAck):
        return InstanceProbe(reachable=False)
    return InstanceProbe(reachable=True, instance_id=msg.instance_id)


def check_socket_connection(socket_path: Path) -> bool:
    """Test if a Unix socket is accepting connections.

    Args:
        socket_path: Path to the Unix socket.

    Returns:
        True if socket accepts connection, False otherwise.
    """
    if not socket_path.exists():
        return False

    try:
        with socket.socket(socket.AF_UNIX) as sock:
            sock.settimeout(SOCKET_CONNECT_TIMEOUT_SECONDS)
            sock.connect(str(socket_path))
        return True
    except OSError:
        return False


def wait_for_condition(
    condition_fn: Callable[[], bool],
    timeout_seconds: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> bool:
    """Wait for a condition to become true.

    Polls the condition function until it returns True or timeout is reached.

    Args:
        condition_fn: Function that returns True when condition is met.
        timeout_seconds: Maximum time to wait.
        poll_interval: Time between condition checks.

    Returns:
        True if condition was met within timeout, False otherwise.
    """
    start_time = time.monotonic()
    while time.monotonic() - start_time < timeout_seconds:
        if condition_fn():
            return True
        time.sleep(poll_interval)
    return False
