"""Shared backend: one long-running stdio MCP server behind the daemon.

Every client's JSON-RPC request is forwarded to the same server process. Ids
from different clients can collide, so each request gets a daemon-unique
integer id on the way in; the client's original id is restored on the reply.

The server is initialized once. Later "initialize" requests are answered
from the cached result and repeated "notifications/initialized" messages
are dropped, so clients can keep their normal MCP startup sequence.
"""

from __future__ import annotations

__all__ = [
    "RequestHandler",
    "SubprocessBackend",
]

import asyncio
import itertools
import json
import logging
import os
from collections.abc import Sequence
from typing import Any, Protocol

from mcp_relay.constants import DEFAULT_MAX_RECEIVE_BUFFER_BYTES
from mcp_relay.exceptions import BackendUnavailableError
from mcp_relay.telemetry.models import SystemEvent
from mcp_relay.telemetry.system_logger import get_system_logger, log_event

_logger = get_system_logger()

# Seconds to wait for the backend to exit after terminate() before kill()
BACKEND_TERMINATE_TIMEOUT_SECONDS = 5.0

_INITIALIZE_METHOD = "initialize"
_INITIALIZED_NOTIFICATION = "notifications/initialized"


class RequestHandler(Protocol):
    """What the daemon server needs from a backend."""

    async def start(self) -> None: ...

    async def handle(self, payload: Any) -> Any:
        """Process one JSON-RPC message.

        Returns:
            The JSON-RPC response, or None for notifications.
        """
        ...

    async def close(self) -> None: ...


class SubprocessBackend:
    """Runs an MCP server subprocess speaking newline-delimited JSON-RPC.

    Args:
        command: Executable to run.
        args: Arguments for the executable.
        env: Extra environment variables (merged over os.environ).
        max_line_bytes: Longest stdout line accepted from the server.
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        env: dict[str, str] | None = None,
        max_line_bytes: int = DEFAULT_MAX_RECEIVE_BUFFER_BYTES,
    ) -> None:
        self.command = command
        self.args = list(args)
        self.env = env
        self.max_line_bytes = max_line_bytes

        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._id_counter = itertools.count(1)
        self._inflight: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._initialize_result: Any = None
        self._initialize_lock = asyncio.Lock()
        self._initialized_sent = False

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        """Spawn the server process.

        Raises:
            BackendUnavailableError: If the executable cannot be started.
        """
        env = {**os.environ, **self.env} if self.env else None
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=env,
                limit=self.max_line_bytes,
            )
        except OSError as e:
            raise BackendUnavailableError(f"Cannot start backend '{self.command}': {e}") from e

        self._reader_task = asyncio.create_task(self._read_loop())
        log_event(
            logging.INFO,
            SystemEvent(
                event="backend_started",
                message=f"Backend started: {self.command}",
                pid=self._process.pid,
                details={"args": self.args},
            ),
        )

    async def handle(self, payload: Any) -> Any:
        if not self.is_running:
            raise BackendUnavailableError("Backend is not running")

        if not isinstance(payload, dict) or "method" not in payload:
            # Batches and client-side responses are passed through without a reply
            await self._send(payload)
            return None

        method = payload["method"]
        if "id" not in payload:
            if method == _INITIALIZED_NOTIFICATION:
                if self._initialized_sent:
                    return None
                self._initialized_sent = True
            await self._send(payload)
            return None

        if method == _INITIALIZE_METHOD:
            return await self._initialize(payload)
        return await self._request(payload)

    async def _initialize(self, payload: dict[str, Any]) -> dict[str, Any]:
        async with self._initialize_lock:
            if self._initialize_result is not None:
                return {"jsonrpc": "2.0", "id": payload["id"], "result": self._initialize_result}
            response = await self._request(payload)
            if "result" in response:
                self._initialize_result = response["result"]
            return response

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        # Nothing resolves futures once the reader has finished
        if self._reader_task is None or self._reader_task.done():
            raise BackendUnavailableError("Backend output closed")
        backend_id = next(self._id_counter)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._inflight[backend_id] = future
        try:
            await self._send({**payload, "id": backend_id})
            response = await future
        finally:
            self._inflight.pop(backend_id, None)
        return {**response, "id": payload["id"]}

    async def _send(self, message: Any) -> None:
        assert self._process is not None and self._process.stdin is not None
        line = (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")
        try:
            self._process.stdin.write(line)
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise BackendUnavailableError(f"Backend stdin closed: {e}") from e

    async def _read_loop(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        try:
            while True:
                try:
                    line = await stdout.readline()
                except ValueError as e:
                    # Line longer than max_line_bytes; StreamReader dropped it
                    _logger.warning(
                        {
                            "event": "backend_line_too_long",
                            "message": f"Dropping oversized line from backend: {e}",
                        }
                    )
                    continue
                if not line:
                    break
                self._handle_line(line)
        finally:
            self._fail_inflight(BackendUnavailableError("Backend exited"))
            if self._process.returncode is None:
                await self._process.wait()
            log_event(
                logging.WARNING,
                SystemEvent(
                    event="backend_exited",
                    message=f"Backend exited with code {self._process.returncode}",
                    pid=self._process.pid,
                ),
            )

    def _handle_line(self, line: bytes) -> None:
        try:
            message = json.loads(line)
        except ValueError:
            _logger.warning(
                {
                    "event": "backend_invalid_json",
                    "message": "Ignoring non-JSON output from backend",
                    "details": {"preview": line[:200].decode("utf-8", errors="replace")},
                }
            )
            return

        if not isinstance(message, dict):
            return
        future = self._inflight.get(message.get("id")) if "method" not in message else None
        if future is None:
            _logger.debug(
                {
                    "event": "backend_unsolicited_message",
                    "message": "Dropping backend message with no waiting request",
                    "details": {"method": message.get("method")},
                }
            )
            return
        if not future.done():
            future.set_result(message)

    def _fail_inflight(self, error: Exception) -> None:
        for future in self._inflight.values():
            if not future.done():
                future.set_exception(error)
        self._inflight.clear()

    async def close(self) -> None:
        """Terminate the server process and stop reading its output."""
        process = self._process
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=BACKEND_TERMINATE_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()

        if self._reader_task is not None:
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
