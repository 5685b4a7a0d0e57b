"""Daemon server: the single process that owns the lock and the backend.

Startup:
1. Acquire the lock (DaemonAlreadyRunningError if a valid daemon holds it)
2. Start the backend
3. Listen on the Unix socket

Per connection, the first message decides its purpose:
- verify_instance: answer with this daemon's instance id and close
- handshake: negotiate versions; on success the connection carries
  mcp_request / heartbeat / disconnect messages until it closes

Requests are dispatched concurrently so a slow tool call never blocks others
on the same connection. The lock's clientCount tracks connected clients.

Shutdown broadcasts a shutdown message to every client, closes the socket,
stops the backend, and releases the lock.
"""

from __future__ import annotations

__all__ = [
    "DaemonServer",
    "run_daemon",
]

import asyncio
import logging
import os
import signal
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from mcp_relay import __version__
from mcp_relay.config import DaemonSettings
from mcp_relay.constants import PROTOCOL_VERSION, get_socket_path
from mcp_relay.daemon.backend import RequestHandler, SubprocessBackend
from mcp_relay.daemon.lock import LockManager, new_lock_info
from mcp_relay.daemon.protocol import (
    DaemonMessage,
    Disconnect,
    ErrorMessage,
    FrameDecoder,
    FrameOverflow,
    Handshake,
    Heartbeat,
    MalformedMessage,
    McpRequest,
    McpResponse,
    Shutdown,
    VerifyInstance,
    VerifyInstanceAck,
    decode_message,
    encode_message,
)
from mcp_relay.daemon.transport import READ_CHUNK_SIZE
from mcp_relay.daemon.versioning import VersionManager
from mcp_relay.exceptions import DaemonAlreadyRunningError, RelayError
from mcp_relay.telemetry.models import SystemEvent
from mcp_relay.telemetry.system_logger import log_event
from mcp_relay.utils.file_helpers import set_secure_permissions

# Time allowed for a new connection to send its first message (seconds)
FIRST_MESSAGE_TIMEOUT_SECONDS = 10.0

# How often the idle checker runs (seconds)
IDLE_CHECK_INTERVAL_SECONDS = 30.0


@dataclass
class _ClientSession:
    client_id: str
    writer: asyncio.StreamWriter
    client_version: str
    connected_at: float = field(default_factory=time.monotonic)
    last_seen: float = field(default_factory=time.monotonic)
    tasks: set[asyncio.Task[None]] = field(default_factory=set)

    def send(self, data: bytes) -> None:
        if not self.writer.is_closing():
            self.writer.write(data)


class DaemonServer:
    """Serves stdio proxy clients over a Unix socket.

    Args:
        socket_path: Where to listen.
        backend: Shared request handler (usually a SubprocessBackend).
        version: Daemon version announced in handshakes and the lock file.
        lock_manager: Lock coordination for this daemon's data dir.
        settings: Daemon settings (grace period, minimum client version, idle timeout).
    """

    def __init__(
        self,
        socket_path: Path,
        backend: RequestHandler,
        *,
        version: str,
        lock_manager: LockManager,
        settings: DaemonSettings | None = None,
    ) -> None:
        self.socket_path = socket_path
        self.settings = settings or DaemonSettings()
        self._backend = backend
        self._lock_manager = lock_manager
        self._versions = VersionManager(version, PROTOCOL_VERSION, self.settings.min_client_version)

        self._server: asyncio.AbstractServer | None = None
        self._instance_id: str | None = None
        self._clients: dict[str, _ClientSession] = {}
        self._connection_tasks: set[asyncio.Task[None]] = set()
        self._idle_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._stopping = False
        self._last_activity = time.monotonic()

    @property
    def instance_id(self) -> str | None:
        return self._instance_id

    @property
    def client_count(self) -> int:
        return len(self._clients)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Acquire the lock, start the backend, and begin listening.

        Raises:
            DaemonAlreadyRunningError: If another valid daemon holds the lock.
            RelayError: If the lock cannot be written.
            BackendUnavailableError: If the backend fails to start.
        """
        candidate = new_lock_info(
            socket_path=str(self.socket_path),
            version=self._versions.version,
            min_client_version=self._versions.min_client_version,
        )
        result = self._lock_manager.acquire_lock(candidate)
        if not result.success:
            if result.reason == "already_locked":
                raise DaemonAlreadyRunningError(result.existing_lock)
            raise RelayError(f"Cannot write daemon lock at {self._lock_manager.lock_path}")

        assert result.lock_info is not None
        self._instance_id = result.lock_info.instance_id

        try:
            await self._backend.start()

            self.socket_path.parent.mkdir(parents=True, exist_ok=True)
            set_secure_permissions(self.socket_path.parent, is_directory=True)
            # We hold the lock, so any existing socket file is left over from a crash
            self.socket_path.unlink(missing_ok=True)
            self._server = await asyncio.start_unix_server(
                self._handle_connection,
                path=str(self.socket_path),
            )
            set_secure_permissions(self.socket_path)
        except BaseException:
            await self._backend.close()
            self._lock_manager.release_lock()
            raise

        if self.settings.idle_timeout_seconds > 0:
            self._idle_task = asyncio.create_task(self._idle_checker())

        log_event(
            logging.INFO,
            SystemEvent(
                event="daemon_started",
                message=f"Daemon {self._versions.version} listening on {self.socket_path}",
                pid=os.getpid(),
                instance_id=self._instance_id,
                socket_path=str(self.socket_path),
            ),
        )

    async def serve_forever(self) -> None:
        """Block until stop() completes."""
        await self._stop_event.wait()

    async def stop(self, reason: str = "user_requested") -> None:
        """Notify clients, close everything, and release the lock. Idempotent."""
        if self._stopping:
            await self._stop_event.wait()
            return
        self._stopping = True

        log_event(
            logging.INFO,
            SystemEvent(
                event="daemon_stopping",
                message=f"Daemon shutting down: {reason}",
                details={"clients": len(self._clients)},
            ),
        )

        notice = encode_message(
            Shutdown(reason=reason, grace_period_ms=self.settings.shutdown_grace_period_ms)
        )
        for session in list(self._clients.values()):
            session.send(notice)
            try:
                await session.writer.drain()
            except OSError:
                pass  # Client already gone

        if self._idle_task is not None:
            self._idle_task.cancel()
            try:
                await self._idle_task
            except asyncio.CancelledError:
                pass
            self._idle_task = None

        if self._server is not None:
            self._server.close()

        for session in list(self._clients.values()):
            session.writer.close()
        for task in list(self._connection_tasks):
            task.cancel()
        for task in list(self._connection_tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

        await self._backend.close()
        self.socket_path.unlink(missing_ok=True)
        self._lock_manager.release_lock()
        self._stop_event.set()

    async def _idle_checker(self) -> None:
        timeout = self.settings.idle_timeout_seconds
        interval = min(IDLE_CHECK_INTERVAL_SECONDS, timeout)
        while not self._stopping:
            await asyncio.sleep(interval)
            seconds_idle = time.monotonic() - self._last_activity
            if not self._clients and seconds_idle >= timeout:
                log_event(
                    logging.INFO,
                    SystemEvent(
                        event="idle_shutdown_triggered",
                        message=f"Daemon idle for {seconds_idle:.0f}s, shutting down",
                        details={"seconds_idle": seconds_idle},
                    ),
                )
                self._idle_task = None
                await self.stop("idle_timeout")
                return

    # =========================================================================
    # Connections
    # =========================================================================

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connection_tasks.add(task)
        decoder = FrameDecoder(self.settings.max_line_bytes)
        session: _ClientSession | None = None
        try:
            frames = await asyncio.wait_for(
                self._read_frames(reader, decoder),
                timeout=FIRST_MESSAGE_TIMEOUT_SECONDS,
            )
            if not frames:
                return
            first = frames[0]
            msg = (
                MalformedMessage(raw="", reason="first message too large")
                if isinstance(first, FrameOverflow)
                else decode_message(first)
            )

            if isinstance(msg, VerifyInstance):
                writer.write(
                    encode_message(VerifyInstanceAck(instance_id=self._instance_id, pid=os.getpid()))
                )
                await writer.drain()
                return

            if not isinstance(msg, Handshake):
                writer.write(
                    encode_message(
                        ErrorMessage(code="handshake_required", message="Expected handshake")
                    )
                )
                await writer.drain()
                return

            session = self._accept_handshake(msg, writer)
            if session is None:
                await writer.drain()
                return

            for frame in frames[1:]:
                if not self._handle_frame(session, frame):
                    return
            while True:
                frames = await self._read_frames(reader, decoder)
                if not frames:
                    return
                for frame in frames:
                    if not self._handle_frame(session, frame):
                        return
        except asyncio.TimeoutError:
            log_event(
                logging.WARNING,
                SystemEvent(event="client_timeout", message="Client sent no handshake in time"),
            )
        except OSError as e:
            log_event(
                logging.WARNING,
                SystemEvent(
                    event="client_connection_error",
                    message=f"Client connection error: {e}",
                    client_id=session.client_id if session else None,
                    error_type=type(e).__name__,
                    error_message=str(e),
                ),
            )
        finally:
            if session is not None:
                self._remove_client(session)
            writer.close()
            if task is not None:
                self._connection_tasks.discard(task)

    @staticmethod
    async def _read_frames(
        reader: asyncio.StreamReader,
        decoder: FrameDecoder,
    ) -> list[bytes | FrameOverflow]:
        """Read until at least one frame is complete. Empty list means EOF."""
        while True:
            chunk = await reader.read(READ_CHUNK_SIZE)
            if not chunk:
                return []
            frames = decoder.feed(chunk)
            if frames:
                return frames

    def _accept_handshake(
        self,
        handshake: Handshake,
        writer: asyncio.StreamWriter,
    ) -> _ClientSession | None:
        client_id = f"client-{uuid.uuid4().hex[:12]}"
        ack = self._versions.negotiate_handshake(handshake, client_id)
        writer.write(encode_message(ack))

        if not ack.success:
            log_event(
                logging.WARNING,
                SystemEvent(
                    event="handshake_rejected",
                    message=f"Rejected client {handshake.client_version}: {ack.failure_reason}",
                    pid=handshake.pid,
                ),
            )
            return None

        session = _ClientSession(
            client_id=client_id,
            writer=writer,
            client_version=handshake.client_version,
        )
        self._clients[client_id] = session
        self._last_activity = time.monotonic()
        self._lock_manager.update_lock(client_count=len(self._clients))
        log_event(
            logging.INFO,
            SystemEvent(
                event="client_connected",
                message=f"Client connected (version {handshake.client_version})",
                client_id=client_id,
                pid=handshake.pid,
                details={
                    "clients": len(self._clients),
                    "upgrade_recommended": ack.upgrade_recommended,
                },
            ),
        )
        return session

    def _handle_frame(self, session: _ClientSession, frame: bytes | FrameOverflow) -> bool:
        """Handle one frame. Returns False when the client asked to disconnect."""
        session.last_seen = time.monotonic()
        self._last_activity = session.last_seen

        if isinstance(frame, FrameOverflow):
            session.send(
                encode_message(
                    ErrorMessage(
                        code="message_too_large",
                        message=f"Message exceeded {frame.limit} bytes and was discarded",
                        client_id=session.client_id,
                    )
                )
            )
            return True

        msg: DaemonMessage | MalformedMessage = decode_message(frame)

        if isinstance(msg, McpRequest) and msg.client_id != session.client_id:
            log_event(
                logging.WARNING,
                SystemEvent(
                    event="client_id_mismatch",
                    message=f"Rejected request addressed to client {msg.client_id}",
                    client_id=session.client_id,
                    request_id=msg.request_id,
                ),
            )
            session.send(
                encode_message(
                    ErrorMessage(
                        code="client_id_mismatch",
                        message="Request client id does not match this session",
                        client_id=session.client_id,
                        request_id=msg.request_id,
                    )
                )
            )
        elif isinstance(msg, McpRequest):
            task =asyncio.create_task(self._dispatch_request(session, msg))
            session.tasks.add(task)
            task.add_done_callback(session.tasks.discard)
        elif isinstance(msg, Heartbeat):
            pass
        elif isinstance(msg, Disconnect):
            return False
        elif isinstance(msg, MalformedMessage):
            session.send(
                encode_message(
                    ErrorMessage(
                        code="invalid_message",
                        message=msg.reason,
                        client_id=session.client_id,
                    )
                )
            )
        else:
            session.send(
                encode_message(
                    ErrorMessage(
                        code="unexpected_message",
                        message=f"Unexpected {msg.type} message",
                        client_id=session.client_id,
                    )
                )
            )
        return True

    async def _dispatch_request(self, session: _ClientSession, request: McpRequest) -> None:
        try:
            result = await self._backend.handle(request.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_event(
                logging.ERROR,
                SystemEvent(
                    event="request_failed",
                    message=f"Backend failed to handle request: {e}",
                    client_id=session.client_id,
                    request_id=request.request_id,
                    error_type=type(e).__name__,
                    error_message=str(e),
                ),
            )
            reply: McpResponse | ErrorMessage = ErrorMessage(
                code="backend_error",
                message=str(e) or type(e).__name__,
                details={"error_type": type(e).__name__},
                request_id=request.request_id,
                client_id=session.client_id,
            )
        else:
            reply = McpResponse(
                request_id=request.request_id,
                client_id=session.client_id,
                payload=result,
            )

        session.send(encode_message(reply))
        try:
            await session.writer.drain()
        except OSError:
            pass  # Client disconnected; its session is torn down by the reader

    def _remove_client(self, session: _ClientSession) -> None:
        for task in list(session.tasks):
            task.cancel()
        if self._clients.pop(session.client_id, None) is None:
            return
        self._last_activity = time.monotonic()
        if not self._stopping:
            self._lock_manager.update_lock(client_count=len(self._clients))
        log_event(
            logging.INFO,
            SystemEvent(
                event="client_disconnected",
                message="Client disconnected",
                client_id=session.client_id,
                details={"clients": len(self._clients)},
            ),
        )


async def run_daemon(
    command: str,
    args: Sequence[str] = (),
    *,
    socket_path: Path | None = None,
    settings: DaemonSettings | None = None,
    lock_manager: LockManager | None = None,
) -> None:
    """Run the daemon until SIGTERM/SIGINT or the idle timeout.

    This is the entry point for `mcp-relay daemon run`, which is also what
    auto-start spawns.

    Args:
        command: Backend executable shared by all clients.
        args: Backend arguments.
        socket_path: Socket to listen on (defaults to <data_dir>/daemon.sock).
        settings: Daemon settings.
        lock_manager: Lock manager (defaults to the data dir).

    Raises:
        DaemonAlreadyRunningError: If another valid daemon holds the lock.
        RelayError: If the lock cannot be written.
        BackendUnavailableError: If the backend fails to start.
    """
    settings = settings or DaemonSettings()
    backend = SubprocessBackend(command, args, max_line_bytes=settings.max_line_bytes)
    server = DaemonServer(
        socket_path or get_socket_path(),
        backend,
        version=__version__,
        lock_manager=lock_manager or LockManager(),
        settings=settings,
    )

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler(signum: int, frame: object) -> None:
        """Handle shutdown signals (SIGTERM, SIGINT)."""
        log_event(
            logging.INFO,
            SystemEvent(
                event="shutdown_signal_received",
                message=f"Received signal {signum}, initiating shutdown",
                details={"signal": signum},
            ),
        )
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    await server.start()

    shutdown_task = asyncio.create_task(shutdown_event.wait())
    serve_task = asyncio.create_task(server.serve_forever())
    try:
        done, _ = await asyncio.wait(
            {shutdown_task, serve_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if shutdown_task in done:
            await server.stop("signal")
    finally:
        for task in (shutdown_task, serve_task):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await server.stop("exiting")
