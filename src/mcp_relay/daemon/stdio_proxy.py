"""Stdio proxy client: bridges a parent's stdin/stdout to the daemon.

The parent (an MCP host) talks newline-delimited JSON-RPC over our stdin and
stdout. Each parent line is wrapped in an McpRequest envelope with a local,
monotonic request id and sent to the daemon. The payload of each McpResponse
is written back to stdout in daemon-arrival order.

State machine:
    disconnected -> connecting -> handshaking -> connected <-> reconnecting
    any state -> stopped (terminal until start() is called again)

While the daemon is unreachable, parent requests are held in a bounded
buffer and flushed in order once a reconnect succeeds. Reconnects use
exponential backoff (base * 2**(attempt-1)) up to max_reconnect_attempts;
after that the proxy stays disconnected and answers requests with errors.

Every timer is an owned asyncio task (receive, heartbeat, reconnect, input)
that is cancelled before a new one for the same purpose is created.

Events (subscribe() per instance):
    connected          HandshakeAck
    disconnected       reason string
    error              ProxyError
    shutdown           Shutdown message from the daemon
    upgrade_available  HandshakeAck with upgrade_recommended=True
    reconnect_failed   number of attempts made
"""

from __future__ import annotations

__all__ = [
    "PendingRequest",
    "ProxyError",
    "ProxyEvent",
    "ProxyState",
    "ProxyStats",
    "StdioProxyClient",
]

import asyncio
import itertools
import json
import logging
import os
import sys
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO, Literal

from mcp.types import PARSE_ERROR
from pydantic import BaseModel

from mcp_relay.config import ProxySettings
from mcp_relay.constants import PROTOCOL_VERSION
from mcp_relay.daemon.protocol import (
    Disconnect,
    ErrorMessage,
    FrameDecoder,
    FrameOverflow,
    Handshake,
    HandshakeAck,
    Heartbeat,
    MalformedMessage,
    McpRequest,
    McpResponse,
    Shutdown,
    decode_message,
    encode_message,
)
from mcp_relay.daemon.transport import READ_CHUNK_SIZE, Connection, Transport
from mcp_relay.exceptions import (
    DAEMON_UNAVAILABLE_CODE,
    DaemonConnectionError,
    HandshakeError,
    ProxyAlreadyStartedError,
    jsonrpc_error_response,
)
from mcp_relay.telemetry.models import SystemEvent
from mcp_relay.telemetry.system_logger import get_system_logger, log_event

_logger = get_system_logger()

ProxyEvent = Literal[
    "connected",
    "disconnected",
    "error",
    "shutdown",
    "upgrade_available",
    "reconnect_failed",
]

EventCallback = Callable[[Any], None]

# States in which parent requests are buffered rather than forwarded
_BUFFERING_STATES = frozenset({"connecting", "handshaking", "reconnecting"})


class ProxyState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass
class PendingRequest:
    """A request written to the daemon and not yet answered."""

    request_id: str
    jsonrpc_id: Any
    sent_at: float = field(default_factory=time.monotonic)


@dataclass
class _BufferedRequest:
    request_id: str
    payload: Any
    jsonrpc_id: Any
    size: int


@dataclass(frozen=True)
class ProxyError:
    """Payload of the "error" event.

    Attributes:
        kind: "receive_buffer_overflow" or "daemon_error".
        message: Human-readable description.
        details: Extra structured context.
    """

    kind: str
    message: str
    details: dict[str, Any] | None = None


class ProxyStats(BaseModel):
    """Observational counters. connection_uptime is 0 when not connected."""

    requests_forwarded: int
    reconnects: int
    buffered_messages: int
    buffer_size_bytes: int
    pending_requests: int
    connection_uptime: float


def _has_jsonrpc_id(payload: Any) -> bool:
    return isinstance(payload, dict) and "id" in payload


class StdioProxyClient:
    """Relays a parent's JSON-RPC stdio stream to the shared daemon.

    Args:
        transport: Opens connections to the daemon.
        address: Daemon address (socket path for UnixSocketTransport).
        client_version: Version declared in the handshake.
        settings: Timeouts, backoff, and buffer limits.
        stdin: Parent input stream. If None, input is only accepted via
            feed_input().
        stdout: Binary writer for parent output (defaults to sys.stdout.buffer).
        capabilities: Capabilities declared in the handshake.
    """

    def __init__(
        self,
        transport: Transport,
        address: str,
        client_version: str,
        settings: ProxySettings | None = None,
        *,
        stdin: asyncio.StreamReader | None = None,
        stdout: BinaryIO | None = None,
        capabilities: list[str] | None = None,
    ) -> None:
        self._transport = transport
        self._address = address
        self._client_version = client_version
        self._settings = settings or ProxySettings()
        self._stdin = stdin
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._capabilities = capabilities or []

        self._state = ProxyState.DISCONNECTED
        self._connection: Connection | None = None
        self._client_id: str | None = None
        self._connected_at: float | None = None

        self._request_counter = itertools.count(1)
        self._pending: dict[str, PendingRequest] = {}
        self._buffer: deque[_BufferedRequest] = deque()
        self._buffer_bytes = 0

        self._receive_decoder = FrameDecoder(self._settings.max_receive_buffer_bytes)
        self._input_decoder = FrameDecoder(self._settings.max_input_buffer_bytes)

        self._requests_forwarded = 0
        self._reconnects = 0

        self._receive_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._input_task: asyncio.Task[None] | None = None

        self._listeners: dict[str, list[EventCallback]] = {}
        self._stopped = asyncio.Event()

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def state(self) -> ProxyState:
        return self._state

    @property
    def client_id(self) -> str | None:
        return self._client_id

    def subscribe(self, event: ProxyEvent, callback: EventCallback) -> None:
        """Register a callback for an event on this proxy instance."""
        self._listeners.setdefault(event, []).append(callback)

    def unsubscribe(self, event: ProxyEvent, callback: EventCallback) -> None:
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def start(self) -> None:
        """Connect, handshake, and begin relaying.

        Raises:
            ProxyAlreadyStartedError: If the proxy is not disconnected or stopped.
            DaemonConnectionError: If the daemon cannot be reached.
            HandshakeError: If the daemon rejects the handshake or never answers.
        """
        if self._state not in (ProxyState.DISCONNECTED, ProxyState.STOPPED):
            raise ProxyAlreadyStartedError(self._state.value)

        self._stopped.clear()
        self._cancel_task(self._reconnect_task)
        self._reconnect_task = None

        try:
            ack, leftover = await self._open_session()
        except (DaemonConnectionError, HandshakeError):
            self._state = ProxyState.DISCONNECTED
            raise

        await self._activate_session(ack, leftover)

        if self._stdin is not None and (self._input_task is None or self._input_task.done()):
            self._input_task = asyncio.create_task(self._input_loop())

    async def run(self) -> None:
        """Start and block until the proxy is stopped."""
        await self.start()
        await self.wait_stopped()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def stop(self) -> None:
        """Stop relaying and release every resource. Idempotent."""
        if self._state is ProxyState.STOPPED:
            self._stopped.set()
            return

        was_connected = self._state is ProxyState.CONNECTED
        self._state = ProxyState.STOPPED

        if was_connected and self._connection is not None and self._client_id:
            try:
                self._connection.write(encode_message(Disconnect(client_id=self._client_id)))
            except OSError:
                pass  # Connection already gone, nothing to announce

        tasks = [self._receive_task, self._heartbeat_task, self._reconnect_task, self._input_task]
        self._receive_task = self._heartbeat_task = self._reconnect_task = self._input_task = None
        for task in tasks:
            await self._cancel_and_wait(task)

        self._close_connection()
        self._pending.clear()
        self._buffer.clear()
        self._buffer_bytes = 0
        self._receive_decoder.reset()
        self._input_decoder.reset()

        log_event(
            logging.INFO,
            SystemEvent(event="proxy_stopped", message="Stdio proxy stopped", client_id=self._client_id),
        )
        self._stopped.set()

    def get_stats(self) -> ProxyStats:
        uptime = 0.0
        if self._state is ProxyState.CONNECTED and self._connected_at is not None:
            uptime = time.monotonic() - self._connected_at
        return ProxyStats(
            requests_forwarded=self._requests_forwarded,
            reconnects=self._reconnects,
            buffered_messages=len(self._buffer),
            buffer_size_bytes=self._buffer_bytes,
            pending_requests=len(self._pending),
            connection_uptime=uptime,
        )

    async def feed_input(self, data: bytes) -> None:
        """Process raw bytes from the parent's input stream.

        Complete lines are handled as requests. An unterminated line longer
        than max_input_buffer_bytes is discarded and answered with a
        JSON-RPC parse error (id null).
        """
        for frame in self._input_decoder.feed(data):
            if isinstance(frame, FrameOverflow):
                log_event(
                    logging.ERROR,
                    SystemEvent(
                        event="input_buffer_overflow",
                        message="Parent input exceeded buffer limit without newline, discarded",
                        details={"discarded_bytes": frame.discarded_bytes, "limit": frame.limit},
                    ),
                )
                self._write_output(
                    jsonrpc_error_response(
                        None,
                        PARSE_ERROR,
                        f"Input line exceeded {frame.limit} bytes without a newline and was discarded",
                    )
                )
                continue
            await self._handle_input_line(frame)

    # =========================================================================
    # Session setup
    # =========================================================================

    async def _open_session(self) -> tuple[HandshakeAck, list[bytes | FrameOverflow]]:
        """Connect and complete the handshake.

        Returns:
            The accepted HandshakeAck and any frames that arrived after it.

        Raises:
            DaemonConnectionError: On connect failure or early close.
            HandshakeError: On rejection, unexpected reply, or timeout.
        """
        self._state = ProxyState.CONNECTING
        try:
            connection = await asyncio.wait_for(
                self._transport.connect(self._address),
                timeout=self._settings.connect_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise DaemonConnectionError(f"Timed out connecting to {self._address}") from e
        except OSError as e:
            raise DaemonConnectionError(f"Cannot connect to {self._address}: {e}") from e

        self._state = ProxyState.HANDSHAKING
        self._receive_decoder.reset()
        handshake = Handshake(
            client_version=self._client_version,
            protocol_version=PROTOCOL_VERSION,
            capabilities=self._capabilities,
            pid=os.getpid(),
        )
        try:
            connection.write(encode_message(handshake))
            await connection.drain()
            ack, leftover = await asyncio.wait_for(
                self._read_handshake_ack(connection),
                timeout=self._settings.handshake_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            connection.close()
            raise HandshakeError("timed out waiting for handshake_ack") from e
        except OSError as e:
            connection.close()
            raise DaemonConnectionError(f"Connection lost during handshake: {e}") from e
        except (HandshakeError, DaemonConnectionError, asyncio.CancelledError):
            connection.close()
            raise

        if not ack.success:
            connection.close()
            raise HandshakeError(ack.failure_reason or "rejected by daemon")

        self._connection = connection
        self._client_id = ack.client_id
        return ack, leftover

    async def _read_handshake_ack(
        self, connection: Connection
    ) -> tuple[HandshakeAck, list[bytes | FrameOverflow]]:
        # Bytes after the ack stay in the receive decoder or come back as leftover
        while True:
            chunk = await connection.read(READ_CHUNK_SIZE)
            if not chunk:
                raise DaemonConnectionError("Daemon closed connection during handshake")
            frames = self._receive_decoder.feed(chunk)
            for index, frame in enumerate(frames):
                if isinstance(frame, FrameOverflow):
                    raise HandshakeError("handshake_ack exceeded receive buffer limit")
                msg = decode_message(frame)
                if isinstance(msg, HandshakeAck):
                    return msg, frames[index + 1 :]
                if isinstance(msg, MalformedMessage):
                    raise HandshakeError(f"malformed reply to handshake: {msg.reason}")
                if isinstance(msg, ErrorMessage):
                    raise HandshakeError(msg.message)
                raise HandshakeError(f"unexpected {msg.type} message during handshake")

    async def _activate_session(
        self,
        ack: HandshakeAck,
        leftover: list[bytes | FrameOverflow],
    ) -> None:
        connection = self._connection
        assert connection is not None

        self._state = ProxyState.CONNECTED
        self._connected_at = time.monotonic()

        # Buffered requests go out before anything else can be forwarded
        flushed = 0
        while self._buffer and self._state is ProxyState.CONNECTED:
            item = self._buffer.popleft()
            self._buffer_bytes -= item.size
            if not self._write_request(item.request_id, item.payload, item.jsonrpc_id, item.size):
                break
            flushed += 1

        for frame in leftover:
            self._dispatch_frame(frame)

        # A failed flush write already handed the rest of the buffer to a new reconnect
        if self._state is not ProxyState.CONNECTED:
            return

        self._receive_task = asyncio.create_task(self._receive_loop(connection))
        self._restart_heartbeat()

        log_event(
            logging.INFO,
            SystemEvent(
                event="proxy_connected",
                message=f"Connected to daemon {ack.daemon_version}",
                client_id=ack.client_id,
                socket_path=self._address,
                details={"flushed_requests": flushed} if flushed else None,
            ),
        )
        self._emit("connected", ack)
        if ack.upgrade_recommended:
            self._emit("upgrade_available", ack)

        if flushed:
            await self._drain(connection)

    # =========================================================================
    # Parent -> daemon
    # =========================================================================

    async def _input_loop(self) -> None:
        assert self._stdin is not None
        while True:
            chunk = await self._stdin.read(READ_CHUNK_SIZE)
            if not chunk:
                _logger.info({"event": "stdin_closed", "message": "Parent closed stdin, stopping proxy"})
                await self.stop()
                return
            await self.feed_input(chunk)

    async def _handle_input_line(self, line: bytes) -> None:
        try:
            payload = json.loads(line)
        except ValueError as e:
            _logger.warning(
                {
                    "event": "malformed_input",
                    "message": "Discarding unparsable line from parent",
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                    "details": {"preview": line[:200].decode("utf-8", errors="replace")},
                }
            )
            return

        request_id = str(next(self._request_counter))
        jsonrpc_id = payload.get("id") if isinstance(payload, dict) else None

        if self._state is ProxyState.CONNECTED and self._connection is not None:
            connection = self._connection
            if self._write_request(request_id, payload, jsonrpc_id, len(line)):
                await self._drain(connection)
            return

        if self._state.value in _BUFFERING_STATES:
            self._buffer_request(request_id, payload, jsonrpc_id, len(line))
            return

        # disconnected after exhausting reconnects, or stopped
        if _has_jsonrpc_id(payload):
            self._write_output(
                jsonrpc_error_response(
                    jsonrpc_id,
                    DAEMON_UNAVAILABLE_CODE,
                    "Daemon unavailable",
                )
            )

    def _write_request(self, request_id: str, payload: Any, jsonrpc_id: Any, size: int) -> bool:
        """Write one McpRequest and record it as pending.

        On a write failure the request goes back to the front of the buffer
        and the session is treated as disconnected.
        """
        assert self._connection is not None
        msg = McpRequest(request_id=request_id, client_id=self._client_id or "", payload=payload)
        data = encode_message(msg)
        self._pending[request_id] = PendingRequest(request_id=request_id, jsonrpc_id=jsonrpc_id)
        try:
            self._connection.write(data)
        except OSError as e:
            del self._pending[request_id]
            self._buffer.appendleft(_BufferedRequest(request_id, payload, jsonrpc_id, size))
            self._buffer_bytes += size
            self._handle_disconnect(f"write failed: {e}")
            return False
        self._requests_forwarded += 1
        return True

    def _buffer_request(self, request_id: str, payload: Any, jsonrpc_id: Any, size: int) -> None:
        if (
            len(self._buffer) + 1 > self._settings.max_buffered_requests
            or self._buffer_bytes + size > self._settings.max_buffer_bytes
        ):
            log_event(
                logging.WARNING,
                SystemEvent(
                    event="buffer_full",
                    message="Daemon disconnected and message buffer full, rejecting request",
                    request_id=request_id,
                    details={
                        "buffered_messages": len(self._buffer),
                        "buffer_size_bytes": self._buffer_bytes,
                    },
                ),
            )
            if _has_jsonrpc_id(payload):
                self._write_output(
                    jsonrpc_error_response(
                        jsonrpc_id,
                        DAEMON_UNAVAILABLE_CODE,
                        "Daemon disconnected and message buffer full",
                    )
                )
            return

        self._buffer.append(_BufferedRequest(request_id, payload, jsonrpc_id, size))
        self._buffer_bytes += size

    async def _drain(self, connection: Connection) -> None:
        try:
            await connection.drain()
        except OSError as e:
            if connection is self._connection:
                self._handle_disconnect(f"drain failed: {e}")

    # =========================================================================
    # Daemon -> parent
    # =========================================================================

    async def _receive_loop(self, connection: Connection) -> None:
        reason = "connection closed by daemon"
        try:
            while True:
                chunk = await connection.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for frame in self._receive_decoder.feed(chunk):
                    self._dispatch_frame(frame)
        except OSError as e:
            reason = f"read failed: {e}"

        if connection is self._connection:
            self._handle_disconnect(reason)

    def _dispatch_frame(self, frame: bytes | FrameOverflow) -> None:
        if isinstance(frame, FrameOverflow):
            log_event(
                logging.ERROR,
                SystemEvent(
                    event="receive_buffer_overflow",
                    message="Receive buffer overflow, discarded partial message from daemon",
                    details={"discarded_bytes": frame.discarded_bytes, "limit": frame.limit},
                ),
            )
            self._emit(
                "error",
                ProxyError(
                    kind="receive_buffer_overflow",
                    message=(
                        f"Receive buffer overflow: {frame.discarded_bytes} bytes without "
                        f"a newline exceeded limit {frame.limit}. Buffer cleared."
                    ),
                    details={"discarded_bytes": frame.discarded_bytes, "limit": frame.limit},
                ),
            )
            return

        msg = decode_message(frame)

        if isinstance(msg, MalformedMessage):
            _logger.warning(
                {
                    "event": "malformed_daemon_message",
                    "message": f"Ignoring malformed message from daemon: {msg.reason}",
                    "details": {"preview": msg.raw},
                }
            )
        elif isinstance(msg, McpResponse):
            self._handle_response(msg)
        elif isinstance(msg, ErrorMessage):
            self._handle_error(msg)
        elif isinstance(msg, Shutdown):
            log_event(
                logging.WARNING,
                SystemEvent(
                    event="daemon_shutdown_notice",
                    message=f"Daemon is shutting down: {msg.reason}",
                    details={"grace_period_ms": msg.grace_period_ms},
                ),
            )
            self._emit("shutdown", msg)
        else:
            _logger.debug({"event": "ignored_message", "message": f"Ignoring {msg.type} message"})

    def _handle_response(self, msg: McpResponse) -> None:
        pending = self._pending.pop(msg.request_id, None)
        if pending is None:
            _logger.warning(
                {
                    "event": "unknown_response",
                    "message": "Response for unknown request id, dropping",
                    "request_id": msg.request_id,
                }
            )
            return
        if msg.payload is not None:
            self._write_output(msg.payload)

    def _handle_error(self, msg: ErrorMessage) -> None:
        pending = self._pending.pop(msg.request_id, None) if msg.request_id else None
        if pending is None:
            self._emit(
                "error",
                ProxyError(
                    kind="daemon_error",
                    message=msg.message,
                    details={"code": msg.code, "details": msg.details},
                ),
            )
            return

        self._write_output(
            jsonrpc_error_response(
                pending.jsonrpc_id,
                DAEMON_UNAVAILABLE_CODE,
                msg.message,
                data={"code": msg.code, "details": msg.details},
            )
        )

    def _write_output(self, obj: Any) -> None:
        line = (json.dumps(obj, separators=(",", ":")) + "\n").encode("utf-8")
        try:
            self._stdout.write(line)
            self._stdout.flush()
        except OSError as e:
            _logger.error(
                {
                    "event": "stdout_write_failed",
                    "message": f"Failed to write to parent stdout: {e}",
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )

    # =========================================================================
    # Heartbeat / disconnect / reconnect
    # =========================================================================

    def _restart_heartbeat(self) -> None:
        self._cancel_task(self._heartbeat_task)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        interval = self._settings.heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)
            connection = self._connection
            if self._state is not ProxyState.CONNECTED or connection is None or not self._client_id:
                return
            try:
                connection.write(encode_message(Heartbeat(client_id=self._client_id)))
                await connection.drain()
            except OSError as e:
                if connection is self._connection:
                    self._handle_disconnect(f"heartbeat failed: {e}")
                return

    def _handle_disconnect(self, reason: str) -> None:
        """Move to reconnecting after a transport failure. Pending entries are kept."""
        if self._state is not ProxyState.CONNECTED:
            return

        self._state = ProxyState.RECONNECTING
        self._connected_at = None

        self._cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        self._cancel_task(self._receive_task)
        self._receive_task = None
        self._close_connection()
        self._receive_decoder.reset()

        log_event(
            logging.WARNING,
            SystemEvent(
                event="proxy_disconnected",
                message=f"Lost connection to daemon: {reason}",
                client_id=self._client_id,
                details={"pending_requests": len(self._pending)},
            ),
        )
        self._emit("disconnected", reason)

        self._cancel_task(self._reconnect_task)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        max_attempts = self._settings.max_reconnect_attempts
        base_delay = self._settings.reconnect_delay_seconds

        for attempt in range(1, max_attempts + 1):
            await asyncio.sleep(base_delay * 2 ** (attempt - 1))
            if self._state is ProxyState.STOPPED:
                return

            try:
                ack, leftover = await self._open_session()
            except (DaemonConnectionError, HandshakeError) as e:
                self._state = ProxyState.RECONNECTING
                log_event(
                    logging.WARNING,
                    SystemEvent(
                        event="reconnect_attempt_failed",
                        message=f"Reconnect attempt {attempt}/{max_attempts} failed: {e}",
                        attempt=attempt,
                        error_type=type(e).__name__,
                        error_message=str(e),
                    ),
                )
                continue

            self._reconnects += 1
            self._reconnect_task = None
            await self._activate_session(ack, leftover)
            return

        self._state = ProxyState.DISCONNECTED
        self._reconnect_task = None
        log_event(
            logging.ERROR,
            SystemEvent(
                event="reconnect_exhausted",
                message=f"Giving up after {max_attempts} reconnect attempts",
                details={
                    "buffered_messages": len(self._buffer),
                    "pending_requests": len(self._pending),
                },
            ),
        )
        self._fail_outstanding(f"Daemon unavailable after {max_attempts} reconnect attempts")
        self._emit("reconnect_failed", max_attempts)

    def _fail_outstanding(self, message: str) -> None:
        """Answer every buffered and pending request with an error."""
        for item in self._buffer:
            if _has_jsonrpc_id(item.payload):
                self._write_output(
                    jsonrpc_error_response(item.jsonrpc_id, DAEMON_UNAVAILABLE_CODE, message)
                )
        self._buffer.clear()
        self._buffer_bytes = 0

        for pending in self._pending.values():
            if pending.jsonrpc_id is not None:
                self._write_output(
                    jsonrpc_error_response(pending.jsonrpc_id, DAEMON_UNAVAILABLE_CODE, message)
                )
        self._pending.clear()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _emit(self, event: ProxyEvent, payload: Any) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(payload)
            except Exception as e:
                _logger.error(
                    {
                        "event": "event_callback_failed",
                        "message": f"Callback for '{event}' raised: {e}",
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                    }
                )

    def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                connection.close()
            except OSError:
                pass  # Already closed

    @staticmethod
    def _cancel_task(task: asyncio.Task[None] | None) -> None:
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    @staticmethod
    async def _cancel_and_wait(task: asyncio.Task[None] | None) -> None:
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
