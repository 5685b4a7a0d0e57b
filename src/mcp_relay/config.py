"""Configuration for mcp-relay.

Defines the configuration model for the daemon and the stdio proxy.
Config is stored at the OS-appropriate location (<config_dir>/config.json).

Example usage:
    # Load from config file (defaults if missing or invalid)
    config = load_config()

    # Save configuration
    save_config(config)
"""

from __future__ import annotations

__all__ = [
    "DaemonSettings",
    "LoggingSettings",
    "ProxySettings",
    "RelayConfig",
    "configure_logging",
    "get_config_path",
    "get_system_log_path",
    "load_config",
    "load_config_strict",
    "save_config",
]

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from mcp_relay.constants import (
    CONFIG_DIR,
    DEFAULT_CONNECT_TIMEOUT_SECONDS,
    DEFAULT_HANDSHAKE_TIMEOUT_SECONDS,
    DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_MAX_BUFFER_BYTES,
    DEFAULT_MAX_BUFFERED_REQUESTS,
    DEFAULT_MAX_INPUT_BUFFER_BYTES,
    DEFAULT_MAX_RECEIVE_BUFFER_BYTES,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_DELAY_SECONDS,
    DEFAULT_SHUTDOWN_GRACE_PERIOD_MS,
    LOG_DIR,
)
from mcp_relay.exceptions import ConfigurationError
from mcp_relay.telemetry.system_logger import (
    configure_system_logger_file,
    get_system_logger,
    set_console_level,
)
from mcp_relay.utils.file_helpers import write_json_atomic

_logger = get_system_logger()


class ProxySettings(BaseModel):
    """Stdio proxy behavior.

    Attributes:
        max_reconnect_attempts: Reconnect attempts before giving up.
        reconnect_delay_seconds: Base delay; attempt k waits base * 2**(k-1).
        heartbeat_interval_seconds: Heartbeat period while connected.
        handshake_timeout_seconds: Max wait for handshake_ack.
        connect_timeout_seconds: Max wait for the transport connect.
        max_buffered_requests: Requests held while the daemon is unreachable.
        max_buffer_bytes: Total payload bytes held while unreachable.
        max_receive_buffer_bytes: Unterminated-line limit for daemon bytes.
        max_input_buffer_bytes: Unterminated-line limit for parent stdin.
    """

    max_reconnect_attempts: int = Field(default=DEFAULT_MAX_RECONNECT_ATTEMPTS, ge=0, le=100)
    reconnect_delay_seconds: float = Field(default=DEFAULT_RECONNECT_DELAY_SECONDS, ge=0)
    heartbeat_interval_seconds: float = Field(default=DEFAULT_HEARTBEAT_INTERVAL_SECONDS, gt=0)
    handshake_timeout_seconds: float = Field(default=DEFAULT_HANDSHAKE_TIMEOUT_SECONDS, gt=0)
    connect_timeout_seconds: float = Field(default=DEFAULT_CONNECT_TIMEOUT_SECONDS, gt=0)
    max_buffered_requests: int = Field(default=DEFAULT_MAX_BUFFERED_REQUESTS, ge=0)
    max_buffer_bytes: int = Field(default=DEFAULT_MAX_BUFFER_BYTES, ge=0)
    max_receive_buffer_bytes: int = Field(default=DEFAULT_MAX_RECEIVE_BUFFER_BYTES, ge=1)
    max_input_buffer_bytes: int = Field(default=DEFAULT_MAX_INPUT_BUFFER_BYTES, ge=1)

    model_config = {"extra": "ignore"}


class DaemonSettings(BaseModel):
    """Daemon behavior.

    Attributes:
        shutdown_grace_period_ms: Grace period announced in shutdown messages.
        min_client_version: Oldest client version accepted. Defaults to
            MAJOR.MINOR.0 of the daemon version when unset.
        max_line_bytes: Unterminated-line limit per client connection.
        idle_timeout_seconds: Exit after this long with no clients (0 disables).
    """

    shutdown_grace_period_ms: int = Field(default=DEFAULT_SHUTDOWN_GRACE_PERIOD_MS, ge=0)
    min_client_version: str | None = Field(default=None, min_length=1)
    max_line_bytes: int = Field(default=DEFAULT_MAX_RECEIVE_BUFFER_BYTES, ge=1)
    idle_timeout_seconds: float = Field(default=DEFAULT_IDLE_TIMEOUT_SECONDS, ge=0)

    model_config = {"extra": "ignore"}


class LoggingSettings(BaseModel):
    """Logging behavior.

    Attributes:
        log_dir: Directory for system.jsonl.
        console_level: Minimum level written to stderr.
    """

    log_dir: str = Field(default=str(LOG_DIR), min_length=1)
    console_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model_config = {"extra": "ignore"}


class RelayConfig(BaseModel):
    """Top-level mcp-relay configuration."""

    proxy: ProxySettings = Field(default_factory=ProxySettings)
    daemon: DaemonSettings = Field(default_factory=DaemonSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = {"extra": "ignore"}  # Ignore unknown fields for forward compat


def get_config_path() -> Path:
    """Get the full path to the config file.

    Returns:
        Path to config.json in the config directory.
    """
    return CONFIG_DIR / "config.json"


def get_system_log_path(config: RelayConfig) -> Path:
    """Get full path to the system log file.

    Args:
        config: Relay configuration.

    Returns:
        Path: <log_dir>/system.jsonl.
    """
    return Path(config.logging.log_dir).expanduser() / "system.jsonl"


def load_config(config_path: Path | None = None) -> RelayConfig:
    """Load configuration from file.

    If the config file doesn't exist, returns default configuration.
    Invalid JSON or validation errors return default config with a warning.

    Args:
        config_path: Override path (defaults to get_config_path()).

    Returns:
        RelayConfig: Loaded or default configuration.
    """
    config_path = config_path or get_config_path()

    if not config_path.exists():
        return RelayConfig()

    try:
        with config_path.open(encoding="utf-8") as f:
            data = json.load(f)
        return RelayConfig.model_validate(data)
    except json.JSONDecodeError as e:
        _logger.warning(
            {
                "event": "config_invalid_json",
                "message": f"Invalid JSON in config, using defaults: {e}",
                "error_type": type(e).__name__,
                "error_message": str(e),
                "details": {"config_path": str(config_path)},
            }
        )
        return RelayConfig()
    except ValidationError as e:
        _logger.warning(
            {
                "event": "config_validation_failed",
                "message": f"Invalid config values, using defaults: {e}",
                "error_type": type(e).__name__,
                "error_message": str(e),
                "details": {"config_path": str(config_path)},
            }
        )
        return RelayConfig()
    except OSError as e:
        _logger.warning(
            {
                "event": "config_read_failed",
                "message": f"Failed to read config file, using defaults: {e}",
                "error_type": type(e).__name__,
                "error_message": str(e),
                "details": {"config_path": str(config_path)},
            }
        )
        return RelayConfig()


def load_config_strict(config_path: Path | None = None) -> RelayConfig:
    """Load configuration, raising on any error.

    A missing file is not an error (defaults apply), but unreadable,
    malformed, or invalid files are.

    Args:
        config_path: Override path (defaults to get_config_path()).

    Returns:
        RelayConfig: Validated configuration.

    Raises:
        ConfigurationError: If the config file is unreadable or invalid.
    """
    config_path = config_path or get_config_path()

    if not config_path.exists():
        return RelayConfig()

    try:
        with config_path.open(encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read {config_path}: {e}") from e

    try:
        return RelayConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config in {config_path}: {e}") from e


def save_config(config: RelayConfig, config_path: Path | None = None) -> None:
    """Save configuration to file.

    Creates the config directory if it doesn't exist.
    Sets secure file permissions (0600).

    Args:
        config: Configuration to save.
        config_path: Override path (defaults to get_config_path()).

    Raises:
        OSError: If unable to write config file.
    """
    config_path = config_path or get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)
    write_json_atomic(config_path, config.model_dump())


def configure_logging(config: RelayConfig) -> None:
    """Apply the logging section: console threshold and the system.jsonl file.

    Args:
        config: Relay configuration.
    """
    set_console_level(config.logging.console_level)
    configure_system_logger_file(get_system_log_path(config))
