"""Wire protocol shared by the daemon and stdio proxy clients.

Messages are NDJSON (Newline-Delimited JSON) records exchanged over the daemon
socket.

Protocol format:
- Messages are JSON objects encoded in compact form (no spaces)
- Each message is terminated by a newline character
- Encoding: UTF-8
- Field names on the wire are camelCase; Python attributes are snake_case

Message types:
- Client → Daemon: {"type":"handshake","clientVersion":"...","protocolVersion":1,...}
- Daemon → Client: {"type":"handshake_ack","success":true,"clientId":"...",...}
- Client → Daemon: {"type":"mcp_request","requestId":"1","clientId":"...","payload":{...}}
- Daemon → Client: {"type":"mcp_response","requestId":"1","clientId":"...","payload":{...}}
- Client → Daemon: {"type":"heartbeat","clientId":"..."}
- Client → Daemon: {"type":"disconnect","clientId":"...","reason":"normal"}
- Either way:      {"type":"error","code":"...","message":"...","requestId":"1"}
- Daemon → Client: {"type":"shutdown","reason":"...","gracePeriodMs":5000}
- Probe → Daemon:  {"type":"verify_instance"}
- Daemon → Probe:  {"type":"verify_instance_ack","instanceId":"..."}

Parsing produces either a typed message from the DaemonMessage union or a
MalformedMessage describing why the line was rejected. Unknown message types
are malformed, not silently accepted.

Example messages:
    {"type":"heartbeat","clientId":"c-1","timestamp":1718000000000}\\n
    {"type":"shutdown","reason":"user_requested","gracePeriodMs":5000,"timestamp":1718000000000}\\n
"""

from __future__ import annotations

__all__ = [
    "DaemonMessage",
    "Disconnect",
    "ErrorMessage",
    "FrameDecoder",
    "FrameOverflow",
    "Handshake",
    "HandshakeAck",
    "Heartbeat",
    "MalformedMessage",
    "McpRequest",
    "McpResponse",
    "Shutdown",
    "VerifyInstance",
    "VerifyInstanceAck",
    "decode_message",
    "encode_message",
    "now_ms",
    "parse_message",
]

import json
import time
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class _WireModel(BaseModel):
    """Base for all wire messages (camelCase aliases, frozen)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    timestamp: int = Field(default_factory=now_ms)


# =============================================================================
# Connection management
# =============================================================================


class Handshake(_WireModel):
    """First message on a client connection."""

    type: Literal["handshake"] = "handshake"
    client_version: str
    protocol_version: int
    capabilities: list[str] = Field(default_factory=list)
    pid: int | None = None


class HandshakeAck(_WireModel):
    """Daemon's answer to a Handshake.

    client_id is empty when success is False.
    """

    type: Literal["handshake_ack"] = "handshake_ack"
    success: bool
    daemon_version: str
    client_id: str = ""
    protocol_version: int | None = None
    upgrade_recommended: bool = False
    failure_reason: str | None = None


class Heartbeat(_WireModel):
    type: Literal["heartbeat"] = "heartbeat"
    client_id: str


class Disconnect(_WireModel):
    """Sent by a client that is closing its connection on purpose."""

    type: Literal["disconnect"] = "disconnect"
    client_id: str
    reason: str = "normal"


# =============================================================================
# Request / response
# =============================================================================


class McpRequest(_WireModel):
    """Envelope around one opaque JSON-RPC message from the parent."""

    type: Literal["mcp_request"] = "mcp_request"
    request_id: str
    client_id: str
    payload: Any


class McpResponse(_WireModel):
    """Envelope around the daemon's reply.

    payload is None when the request was a JSON-RPC notification; the
    client then clears its pending entry without writing any output.
    """

    type: Literal["mcp_response"] = "mcp_response"
    request_id: str
    client_id: str
    payload: Any = None


class ErrorMessage(_WireModel):
    """Application-level error, scoped to one request when request_id is set."""

    type: Literal["error"] = "error"
    code: str
    message: str
    details: Any = None
    request_id: str | None = None
    client_id: str | None = None


# =============================================================================
# Lifecycle / instance verification
# =============================================================================


class Shutdown(_WireModel):
    type: Literal["shutdown"] = "shutdown"
    reason: str
    grace_period_ms: int


class VerifyInstance(_WireModel):
    """Probe sent by a lock manager to a live pid's socket.

    The expected instance id is deliberately not included; the daemon must
    report its own.
    """

    type: Literal["verify_instance"] = "verify_instance"


class VerifyInstanceAck(_WireModel):
    type: Literal["verify_instance_ack"] = "verify_instance_ack"
    instance_id: str | None = None
    pid: int | None = None


DaemonMessage = Annotated[
    Union[
        Handshake,
        HandshakeAck,
        Heartbeat,
        Disconnect,
        McpRequest,
        McpResponse,
        ErrorMessage,
        Shutdown,
        VerifyInstance,
        VerifyInstanceAck,
    ],
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter[DaemonMessage] = TypeAdapter(DaemonMessage)


@dataclass(frozen=True)
class MalformedMessage:
    """A line that could not be parsed into a DaemonMessage.

    Attributes:
        raw: The offending line (decoded, possibly truncated).
        reason: Why parsing failed.
    """

    raw: str
    reason: str


# =============================================================================
# Encoding / decoding
# =============================================================================


def encode_message(msg: BaseModel) -> bytes:
    """Encode a message for NDJSON transmission.

    Uses compact JSON (no spaces after separators) with newline delimiter
    and camelCase field names.

    Args:
        msg: Message to encode.

    Returns:
        UTF-8 encoded bytes with trailing newline.

    Example:
        >>> encode_message(Heartbeat(client_id="c-1", timestamp=1))
        b'{"timestamp":1,"type":"heartbeat","clientId":"c-1"}\\n'
    """
    data = msg.model_dump(mode="json", by_alias=True)
    return (json.dumps(data, separators=(",", ":")) + "\n").encode("utf-8")


# Longest raw snippet kept on a MalformedMessage
_RAW_PREVIEW_CHARS = 200


def parse_message(line: str) -> DaemonMessage | MalformedMessage:
    """Parse one line into a typed message.

    Args:
        line: A single JSON record (with or without trailing newline).

    Returns:
        The typed message, or MalformedMessage if the line is not valid JSON,
        not an object, has an unknown type, or lacks required fields.
    """
    preview = line[:_RAW_PREVIEW_CHARS]
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        return MalformedMessage(raw=preview, reason=f"invalid JSON: {e.msg}")

    if not isinstance(data, dict):
        return MalformedMessage(raw=preview, reason="message is not a JSON object")

    try:
        return _message_adapter.validate_python(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        return MalformedMessage(raw=preview, reason=f"{location}: {first.get('msg')}")


def decode_message(line: bytes) -> DaemonMessage | MalformedMessage:
    """Parse one UTF-8 encoded line into a typed message.

    Args:
        line: UTF-8 encoded bytes (with or without trailing newline).

    Returns:
        The typed message, or MalformedMessage.
    """
    try:
        text = line.decode("utf-8")
    except UnicodeDecodeError:
        return MalformedMessage(raw=repr(line[:_RAW_PREVIEW_CHARS]), reason="invalid UTF-8")
    return parse_message(text)


# =============================================================================
# Framing
# =============================================================================


@dataclass(frozen=True)
class FrameOverflow:
    """Reported when an unterminated line grew past the decoder's limit.

    Attributes:
        discarded_bytes: Number of buffered bytes that were dropped.
        limit: The configured ceiling.
    """

    discarded_bytes: int
    limit: int


class FrameDecoder:
    """Accumulates bytes and yields complete newline-terminated lines.

    Complete lines in a chunk are always delivered. If the unterminated
    remainder grows past max_buffer_size it is discarded and a FrameOverflow
    is reported in its place; decoding continues normally with the next chunk.
    Blank lines are skipped.
    """

    def __init__(self, max_buffer_size: int) -> None:
        self.max_buffer_size = max_buffer_size
        self._buffer = bytearray()

    @property
    def buffered_bytes(self) -> int:
        """Bytes currently held waiting for a terminator."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[bytes | FrameOverflow]:
        """Add a chunk and return the frames it completes.

        Args:
            data: Raw bytes read from the stream.

        Returns:
            Complete lines (without terminator) in order, possibly followed
            by a FrameOverflow if the unterminated remainder was discarded.
        """
        self._buffer.extend(data)
        results: list[bytes | FrameOverflow] = []

        *lines, tail = self._buffer.split(b"\n")
        for line in lines:
            if line.strip():
                results.append(bytes(line))

        if len(tail) > self.max_buffer_size:
            results.append(FrameOverflow(discarded_bytes=len(tail), limit=self.max_buffer_size))
            tail = bytearray()

        self._buffer = bytearray(tail)
        return results

    def reset(self) -> None:
        """Drop any partially received line."""
        self._buffer.clear()
