"""Tests for SubprocessBackend against a small stdio echo server."""

from __future__ import annotations

import asyncio
import sys
import textwrap
from collections.abc import AsyncIterator

import pytest

from mcp_relay.daemon.backend import SubprocessBackend
from mcp_relay.exceptions import BackendUnavailableError

# Answers each request with its method, the id it saw, and how often the
# method was called. "exit" terminates, "hang" never answers, and "seen"
# reports the notifications received so far.
ECHO_SERVER = textwrap.dedent(
    """
    import json, sys

    counts = {}
    notifications = []
    for line in sys.stdin:
        msg = json.loads(line)
        method = msg.get("method")
        if "id" not in msg:
            notifications.append(method)
            continue
        if method == "exit":
            sys.exit(3)
        if method == "hang":
            continue
        counts[method] = counts.get(method, 0) + 1
        result = {"method": method, "seen_id": msg["id"], "count": counts[method]}
        if method == "seen":
            result = {"notifications": notifications}
        sys.stdout.write(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": result}) + "\\n")
        sys.stdout.flush()
    """
)


@pytest.fixture
async def backend() -> AsyncIterator[SubprocessBackend]:
    backend = SubprocessBackend(sys.executable, ["-c", ECHO_SERVER])
    await backend.start()
    yield backend
    await backend.close()


class TestRequests:
    """Tests for request forwarding."""

    async def test_restores_client_id(self, backend: SubprocessBackend) -> None:
        """The backend sees a daemon id; the caller gets its own id back."""
        response = await backend.handle({"jsonrpc": "2.0", "id": "abc", "method": "tools/list"})

        assert response["id"] == "abc"
        assert response["result"]["method"] == "tools/list"
        assert response["result"]["seen_id"] == 1

    async def test_colliding_client_ids(self, backend: SubprocessBackend) -> None:
        """Two clients using the same id get distinct backend ids."""
        first, second = await asyncio.gather(
            backend.handle({"jsonrpc": "2.0", "id": 1, "method": "tools/list"}),
            backend.handle({"jsonrpc": "2.0", "id": 1, "method": "tools/call"}),
        )

        assert first["id"] == 1
        assert second["id"] == 1
        assert first["result"]["method"] == "tools/list"
        assert second["result"]["method"] == "tools/call"
        assert first["result"]["seen_id"] != second["result"]["seen_id"]

    async def test_notification_returns_none(self, backend: SubprocessBackend) -> None:
        """Notifications are forwarded without waiting for a reply."""
        assert await backend.handle({"jsonrpc": "2.0", "method": "notifications/progress"}) is None

        seen = await backend.handle({"jsonrpc": "2.0", "id": 9, "method": "seen"})
        assert seen["result"]["notifications"] == ["notifications/progress"]


class TestInitialize:
    """Tests for shared initialization."""

    async def test_initialize_is_cached(self, backend: SubprocessBackend) -> None:
        """Only the first initialize reaches the server; later ones get the cached result."""
        first = await backend.handle({"jsonrpc": "2.0", "id": 1, "method": "initialize"})
        second = await backend.handle({"jsonrpc": "2.0", "id": "b", "method": "initialize"})

        assert first["result"]["count"] == 1
        assert second["id"] == "b"
        assert second["result"] == first["result"]

    async def test_initialized_forwarded_once(self, backend: SubprocessBackend) -> None:
        """Repeated notifications/initialized are dropped."""
        for _ in range(3):
            await backend.handle({"jsonrpc": "2.0", "method": "notifications/initialized"})

        seen = await backend.handle({"jsonrpc": "2.0", "id": 1, "method": "seen"})

        assert seen["result"]["notifications"] == ["notifications/initialized"]


class TestLifecycle:
    """Tests for start failures and backend exit."""

    async def test_missing_executable(self) -> None:
        """An executable that cannot be started raises BackendUnavailableError."""
        backend = SubprocessBackend("/nonexistent/mcp-server-binary")
        with pytest.raises(BackendUnavailableError):
            await backend.start()
        assert backend.is_running is False

    async def test_exit_fails_inflight_requests(self, backend: SubprocessBackend) -> None:
        """Requests waiting on the server fail when it exits."""
        hanging = asyncio.create_task(
            backend.handle({"jsonrpc": "2.0", "id": 1, "method": "hang"})
        )
        await asyncio.sleep(0.05)

        with pytest.raises(BackendUnavailableError):
            await backend.handle({"jsonrpc": "2.0", "id": 2, "method": "exit"})
        with pytest.raises(BackendUnavailableError):
            await asyncio.wait_for(hanging, timeout=5.0)

    async def test_handle_after_exit_raises(self, backend: SubprocessBackend) -> None:
        """Once the server is gone, new requests fail immediately."""
        with pytest.raises(BackendUnavailableError):
            await backend.handle({"jsonrpc": "2.0", "id": 1, "method": "exit"})
        for _ in range(200):
            if not backend.is_running:
                break
            await asyncio.sleep(0.01)

        assert backend.is_running is False
        with pytest.raises(BackendUnavailableError):
            await backend.handle({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})

    async def test_close_terminates_process(self, backend: SubprocessBackend) -> None:
        """close() stops the server process."""
        assert backend.is_running is True
        await backend.close()
        assert backend.is_running is False
