"""Pydantic model for system log entries."""

from __future__ import annotations

__all__ = ["SystemEvent"]

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SystemEvent(BaseModel):
    """One system log entry (<log_dir>/system.jsonl and stderr).

    Used for INFO, WARNING, ERROR, and CRITICAL events from the daemon,
    the lock manager, and the stdio proxy.

    Note: 'time' is not a field; ISO8601Formatter adds it during logging.
    """

    # --- core ---
    event: str | None = Field(
        None,
        description="Machine-friendly event name, e.g. 'daemon_started', 'proxy_reconnected'",
    )
    message: str = Field(description="Human-readable log message")

    # --- daemon / lock context ---
    pid: int | None = Field(None, description="Process id the event refers to")
    instance_id: str | None = Field(None, description="Daemon instance identifier")
    socket_path: str | None = Field(None, description="Daemon socket path")
    lock_path: str | None = Field(None, description="Daemon lock file path")

    # --- client context ---
    client_id: str | None = Field(None, description="Client id assigned by the daemon")
    request_id: str | None = Field(None, description="Proxy-assigned request id")
    attempt: int | None = Field(None, description="Reconnect attempt number (1-based)")

    # --- error details ---
    error_type: str | None = Field(
        None,
        description="Exception class name, e.g. 'ConnectionRefusedError'",
    )
    error_message: str | None = Field(None, description="Short error text from exception")

    # --- additional structured details ---
    details: dict[str, Any] | None = Field(
        None,
        description="Additional context as key-value pairs",
    )

    model_config = ConfigDict(extra="allow")
