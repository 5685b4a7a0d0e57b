"""Tests for DaemonServer.

Runs a real server on a Unix socket in a short temp dir, with an in-process
backend so no subprocess is involved.
"""

from __future__ import annotations

import asyncio
import json
import os
import stat
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest

from mcp_relay.config import DaemonSettings
from mcp_relay.daemon.lock import LockManager
from mcp_relay.daemon.protocol import (
    DaemonMessage,
    Disconnect,
    ErrorMessage,
    Handshake,
    HandshakeAck,
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
from mcp_relay.daemon.server import DaemonServer
from mcp_relay.daemon.transport import InstanceProbe
from mcp_relay.exceptions import BackendUnavailableError, DaemonAlreadyRunningError


class FakeBackend:
    """Echoes the method name; 'boom' fails and 'slow' takes a while."""

    def __init__(self) -> None:
        self.started = False
        self.closed = False
        self.payloads: list[Any] = []

    async def start(self) -> None:
        self.started = True

    async def handle(self, payload: Any) -> Any:
        self.payloads.append(payload)
        method = payload.get("method")
        if method == "boom":
            raise BackendUnavailableError("Backend exited")
        if method == "slow":
            await asyncio.sleep(0.2)
        if "id" not in payload:
            return None
        return {"jsonrpc": "2.0", "id": payload["id"], "result": {"method": method}}

    async def close(self) -> None:
        self.closed = True


def lock_file_probe(lock_path: Path) -> Callable[[str, float], InstanceProbe]:
    """Probe that reports whatever instance id the lock file holds."""

    def probe(socket_path: str, timeout: float) -> InstanceProbe:
        try:
            data = json.loads(lock_path.read_text())
        except (OSError, ValueError):
            return InstanceProbe(reachable=False)
        return InstanceProbe(reachable=True, instance_id=data.get("instanceId"))

    return probe


async def read_message(reader: asyncio.StreamReader) -> DaemonMessage | MalformedMessage | None:
    line = await asyncio.wait_for(reader.readline(), timeout=2.0)
    if not line:
        return None
    return decode_message(line)


async def send(writer: asyncio.StreamWriter, *messages: Any) -> None:
    for msg in messages:
        writer.write(msg if isinstance(msg, bytes) else encode_message(msg))
    await writer.drain()


async def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def lock_manager(short_tmp_dir: Path) -> LockManager:
    return LockManager(short_tmp_dir, probe=lock_file_probe(short_tmp_dir / "daemon.lock"))


@pytest.fixture
async def server(
    short_tmp_dir: Path, backend: FakeBackend, lock_manager: LockManager
) -> AsyncIterator[DaemonServer]:
    srv = DaemonServer(
        short_tmp_dir / "d.sock",
        backend,
        version="0.1.0",
        lock_manager=lock_manager,
        settings=DaemonSettings(idle_timeout_seconds=0, max_line_bytes=1024),
    )
    await srv.start()
    yield srv
    await srv.stop("test_teardown")


@pytest.fixture
async def client(
    server: DaemonServer,
) -> AsyncIterator[tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck]]:
    reader, writer = await asyncio.open_unix_connection(str(server.socket_path))
    await send(writer, Handshake(client_version="0.1.0", protocol_version=1))
    ack = await read_message(reader)
    assert isinstance(ack, HandshakeAck)
    yield reader, writer, ack
    writer.close()


class TestStartStop:
    """Tests for start() and stop()."""

    async def test_start_writes_lock_and_socket(
        self, server: DaemonServer, backend: FakeBackend, lock_manager: LockManager
    ) -> None:
        """start() holds the lock, starts the backend, and listens."""
        lock = lock_manager.read_lock()
        assert lock is not None
        assert lock.pid == os.getpid()
        assert lock.instance_id == server.instance_id
        assert lock.socket_path == str(server.socket_path)
        assert lock.version == "0.1.0"
        assert backend.started is True
        assert stat.S_IMODE(server.socket_path.stat().st_mode) == 0o600

    async def test_second_daemon_refused(
        self, server: DaemonServer, short_tmp_dir: Path, lock_manager: LockManager
    ) -> None:
        """A second daemon for the same data dir raises DaemonAlreadyRunningError."""
        other_backend = FakeBackend()
        other = DaemonServer(
            short_tmp_dir / "other.sock",
            other_backend,
            version="0.1.0",
            lock_manager=LockManager(
                short_tmp_dir, probe=lock_file_probe(short_tmp_dir / "daemon.lock")
            ),
        )

        with pytest.raises(DaemonAlreadyRunningError) as exc_info:
            await other.start()

        assert exc_info.value.existing is not None
        assert exc_info.value.existing.instance_id == server.instance_id
        assert other_backend.started is False
        lock = lock_manager.read_lock()
        assert lock is not None
        assert lock.instance_id == server.instance_id

    async def test_stop_broadcasts_and_releases(
        self,
        server: DaemonServer,
        backend: FakeBackend,
        lock_manager: LockManager,
        client: tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck],
    ) -> None:
        """stop() notifies clients, closes the backend, and removes lock and socket."""
        reader, _, _ = client

        await server.stop("maintenance")

        notice = await read_message(reader)
        assert isinstance(notice, Shutdown)
        assert notice.reason == "maintenance"
        assert notice.grace_period_ms == 5000
        assert await read_message(reader) is None
        assert backend.closed is True
        assert lock_manager.read_lock() is None
        assert not server.socket_path.exists()

    async def test_idle_timeout_stops_daemon(
        self, short_tmp_dir: Path, backend: FakeBackend, lock_manager: LockManager
    ) -> None:
        """With no clients the daemon stops after the idle timeout."""
        srv = DaemonServer(
            short_tmp_dir / "idle.sock",
            backend,
            version="0.1.0",
            lock_manager=lock_manager,
            settings=DaemonSettings(idle_timeout_seconds=0.05),
        )
        await srv.start()

        await asyncio.wait_for(srv.serve_forever(), timeout=2.0)

        assert lock_manager.read_lock() is None
        assert backend.closed is True


class TestConnections:
    """Tests for the first message on a connection."""

    async def test_verify_instance(self, server: DaemonServer) -> None:
        """verify_instance is answered with the instance id, then the connection closes."""
        reader, writer = await asyncio.open_unix_connection(str(server.socket_path))
        await send(writer, VerifyInstance())

        ack = await read_message(reader)

        assert isinstance(ack, VerifyInstanceAck)
        assert ack.instance_id == server.instance_id
        assert ack.pid == os.getpid()
        assert await read_message(reader) is None
        writer.close()

    async def test_handshake_accepted(
        self,
        server: DaemonServer,
        lock_manager: LockManager,
        client: tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck],
    ) -> None:
        """A compatible client gets a client id and is counted in the lock."""
        _, _, ack = client
        assert ack.success is True
        assert ack.client_id.startswith("client-")
        assert ack.daemon_version == "0.1.0"
        assert server.client_count == 1
        lock = lock_manager.read_lock()
        assert lock is not None
        assert lock.client_count == 1

    async def test_handshake_rejected(self, server: DaemonServer) -> None:
        """An incompatible protocol version is rejected and the connection closed."""
        reader, writer = await asyncio.open_unix_connection(str(server.socket_path))
        await send(writer, Handshake(client_version="0.1.0", protocol_version=99))

        ack = await read_message(reader)

        assert isinstance(ack, HandshakeAck)
        assert ack.success is False
        assert "Protocol version mismatch" in (ack.failure_reason or "")
        assert await read_message(reader) is None
        assert server.client_count == 0
        writer.close()

    async def test_handshake_required(self, server: DaemonServer) -> None:
        """Any other first message gets a handshake_required error."""
        reader, writer = await asyncio.open_unix_connection(str(server.socket_path))
        await send(writer, Heartbeat(client_id="nobody"))

        reply = await read_message(reader)

        assert isinstance(reply, ErrorMessage)
        assert reply.code == "handshake_required"
        writer.close()

    async def test_disconnect_removes_client(
        self,
        server: DaemonServer,
        lock_manager: LockManager,
        client: tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck],
    ) -> None:
        """A disconnect message ends the session and updates the lock."""
        _, writer, ack = client

        await send(writer, Disconnect(client_id=ack.client_id))
        await wait_until(lambda: server.client_count == 0)

        lock = lock_manager.read_lock()
        assert lock is not None
        assert lock.client_count == 0

    async def test_closed_socket_removes_client(
        self,
        server: DaemonServer,
        client: tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck],
    ) -> None:
        """Closing the socket without a disconnect also ends the session."""
        _, writer, _ = client
        writer.close()
        await wait_until(lambda: server.client_count == 0)


class TestRequests:
    """Tests for request routing."""

    async def test_request_routed_to_backend(
        self,
        backend: FakeBackend,
        client: tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck],
    ) -> None:
        """mcp_request payloads reach the backend and come back as mcp_response."""
        reader, writer, ack = client
        payload = {"jsonrpc": "2.0", "id": 3, "method": "tools/list"}

        await send(writer, McpRequest(request_id="1", client_id=ack.client_id, payload=payload))
        reply = await read_message(reader)

        assert isinstance(reply, McpResponse)
        assert reply.request_id == "1"
        assert reply.client_id == ack.client_id
        assert reply.payload == {"jsonrpc": "2.0", "id": 3, "result": {"method": "tools/list"}}
        assert backend.payloads == [payload]

    async def test_notification_gets_empty_response(
        self, client: tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck]
    ) -> None:
        """Notifications are acknowledged with a payload-less response."""
        reader, writer, ack = client
        payload = {"jsonrpc": "2.0", "method": "notifications/initialized"}

        await send(writer, McpRequest(request_id="1", client_id=ack.client_id, payload=payload))
        reply = await read_message(reader)

        assert isinstance(reply, McpResponse)
        assert reply.payload is None

    async def test_requests_are_concurrent(
        self, client: tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck]
    ) -> None:
        """A slow request does not hold back a later fast one."""
        reader, writer, ack = client

        await send(
            writer,
            McpRequest(request_id="1", client_id=ack.client_id, payload={"id": 1, "method": "slow"}),
            McpRequest(request_id="2", client_id=ack.client_id, payload={"id": 2, "method": "fast"}),
        )
        first = await read_message(reader)
        second = await read_message(reader)

        assert isinstance(first, McpResponse)
        assert isinstance(second, McpResponse)
        assert [first.request_id, second.request_id] == ["2", "1"]

    async def test_backend_failure_returns_error(
        self, client: tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck]
    ) -> None:
        """A backend exception becomes an error scoped to the request."""
        reader, writer, ack = client

        await send(
            writer,
            McpRequest(request_id="7", client_id=ack.client_id, payload={"id": 1, "method": "boom"}),
        )
        reply = await read_message(reader)

        assert isinstance(reply, ErrorMessage)
        assert reply.code == "backend_error"
        assert reply.request_id == "7"
        assert reply.message == "Backend exited"

    async def test_malformed_line_reports_and_continues(
        self, client: tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck]
    ) -> None:
        """A malformed line is answered with invalid_message; the session survives."""
        reader, writer, ack = client

        await send(writer, b"not json at all\n")
        error = await read_message(reader)
        await send(
            writer,
            McpRequest(request_id="2", client_id=ack.client_id, payload={"id": 2, "method": "ping"}),
        )
        reply = await read_message(reader)

        assert isinstance(error, ErrorMessage)
        assert error.code == "invalid_message"
        assert isinstance(reply, McpResponse)

    async def test_oversized_line_rejected(
        self, client: tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck]
    ) -> None:
        """An unterminated line past max_line_bytes yields message_too_large."""
        reader, writer, _ = client

        await send(writer, b"x" * 2000)
        reply = await read_message(reader)

        assert isinstance(reply, ErrorMessage)
        assert reply.code == "message_too_large"

    async def test_foreign_client_id_rejected(
        self,
        backend: FakeBackend,
        client: tuple[asyncio.StreamReader, asyncio.StreamWriter, HandshakeAck],
    ) -> None:
        """A request carrying another client's id is refused, not dispatched."""
        reader, writer, ack = client

        await send(
            writer,
            McpRequest(request_id="5", client_id="someone-else", payload={"id": 5, "method": "ping"}),
        )
        reply = await read_message(reader)

        assert isinstance(reply, ErrorMessage)
        assert reply.code == "client_id_mismatch"
        assert reply.request_id == "5"
        assert reply.client_id == ack.client_id
        assert backend.payloads == []
