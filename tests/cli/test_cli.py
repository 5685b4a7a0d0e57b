"""Unit tests for CLI commands.

Tests CLI behavior using Click's CliRunner for isolated, fast testing.
Lock files live in the per-test data dir set up by conftest.
Tests use the AAA pattern (Arrange-Act-Assert) for clarity.
"""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from mcp_relay import __version__
from mcp_relay.cli import cli
from mcp_relay.daemon.lock import LockManager

DEAD_PID = 3_999_999


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI runner for testing."""
    return CliRunner()


@pytest.fixture(autouse=True)
def fake_pid_liveness(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        LockManager, "is_pid_alive", staticmethod(lambda pid: pid > 0 and pid != DEAD_PID)
    )


def write_lock(data_dir: Path, **fields: Any) -> Path:
    """Write a lock record; legacy (no instanceId) unless one is given."""
    record = {
        "pid": os.getpid(),
        "socketPath": str(data_dir / "daemon.sock"),
        "startTime": time.time() * 1000,
        "version": "0.1.0",
        "clientCount": 2,
    }
    record.update(fields)
    lock_path = data_dir / "daemon.lock"
    lock_path.write_text(json.dumps(record))
    return lock_path


class TestVersion:
    """Tests for --version flag."""

    def test_version_flag_shows_version(self, runner: CliRunner) -> None:
        """Given --version flag, returns version string."""
        # Act
        result = runner.invoke(cli, ["--version"])

        # Assert
        assert result.exit_code == 0
        assert f"mcp-relay {__version__}" in result.output

    def test_short_version_flag(self, runner: CliRunner) -> None:
        """Given -v flag, returns version string."""
        # Act
        result = runner.invoke(cli, ["-v"])

        # Assert
        assert result.exit_code == 0
        assert "mcp-relay" in result.output


class TestHelp:
    """Tests for help output."""

    def test_root_help_shows_commands(self, runner: CliRunner) -> None:
        """Given --help, shows available commands and the host example."""
        # Act
        result = runner.invoke(cli, ["--help"])

        # Assert
        assert result.exit_code == 0
        assert "connect" in result.output
        assert "daemon" in result.output
        assert "MCP_RELAY_DISABLE_DAEMON" in result.output

    def test_no_command_shows_help(self, runner: CliRunner) -> None:
        """Given no subcommand, prints help."""
        # Act
        result = runner.invoke(cli, [])

        # Assert
        assert result.exit_code == 0
        assert "Usage" in result.output

    def test_daemon_help_shows_subcommands(self, runner: CliRunner) -> None:
        """Given daemon --help, shows subcommands."""
        # Act
        result = runner.invoke(cli, ["daemon", "--help"])

        # Assert
        assert result.exit_code == 0
        for name in ("run", "status", "stop", "clear-lock"):
            assert name in result.output


class TestDaemonStatus:
    """Tests for daemon status command."""

    def test_not_running(self, runner: CliRunner) -> None:
        """Given no lock, reports not running."""
        # Act
        result = runner.invoke(cli, ["daemon", "status"])

        # Assert
        assert result.exit_code == 0
        assert "Not running" in result.output

    def test_running(self, runner: CliRunner, isolated_data_dir: Path) -> None:
        """Given a valid lock, reports pid, version, and clients."""
        # Arrange
        write_lock(isolated_data_dir)

        # Act
        result = runner.invoke(cli, ["daemon", "status"])

        # Assert
        assert result.exit_code == 0
        assert "Running" in result.output
        assert f"pid: {os.getpid()}" in result.output
        assert "Clients" in result.output

    def test_stale(self, runner: CliRunner, isolated_data_dir: Path) -> None:
        """Given a lock with a dead pid, reports a stale lock."""
        # Arrange
        write_lock(isolated_data_dir, pid=DEAD_PID)

        # Act
        result = runner.invoke(cli, ["daemon", "status"])

        # Assert
        assert result.exit_code == 0
        assert "Stale lock (pid_dead)" in result.output

    def test_json_output(self, runner: CliRunner, isolated_data_dir: Path) -> None:
        """Given --json, prints the lock status as JSON."""
        # Arrange
        write_lock(isolated_data_dir)

        # Act
        result = runner.invoke(cli, ["daemon", "status", "--json"])

        # Assert
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["lock_exists"] is True
        assert data["is_valid"] is True
        assert data["lock_info"]["pid"] == os.getpid()
        assert data["verification"]["reason"] == "no_instance_id"


class TestDaemonStop:
    """Tests for daemon stop command."""

    def test_not_running(self, runner: CliRunner) -> None:
        """Given no daemon, exits cleanly."""
        # Act
        result = runner.invoke(cli, ["daemon", "stop"])

        # Assert
        assert result.exit_code == 0
        assert "not running" in result.output

    def test_stale_lock_not_signalled(self, runner: CliRunner, isolated_data_dir: Path) -> None:
        """Given a stale lock, does not send any signal."""
        # Arrange
        write_lock(isolated_data_dir, pid=DEAD_PID)

        # Act
        with patch("mcp_relay.cli.commands.daemon.os.kill") as mock_kill:
            result = runner.invoke(cli, ["daemon", "stop"])

        # Assert
        assert result.exit_code == 0
        mock_kill.assert_not_called()

    def test_signals_and_waits(self, runner: CliRunner, isolated_data_dir: Path) -> None:
        """Given a running daemon, sends SIGTERM and waits for the lock to go."""
        # Arrange
        lock_path = write_lock(isolated_data_dir, pid=os.getpid() + 100_000)

        def fake_kill(pid: int, sig: int) -> None:
            lock_path.unlink()

        # Act
        with patch("mcp_relay.cli.commands.daemon.os.kill", side_effect=fake_kill) as mock_kill:
            result = runner.invoke(cli, ["daemon", "stop"])

        # Assert
        assert result.exit_code == 0
        assert "Daemon stopped" in result.output
        assert mock_kill.call_args.args[0] == os.getpid() + 100_000


class TestDaemonClearLock:
    """Tests for daemon clear-lock command."""

    def test_no_lock(self, runner: CliRunner) -> None:
        """Given no lock file, says so."""
        # Act
        result = runner.invoke(cli, ["daemon", "clear-lock"])

        # Assert
        assert result.exit_code == 0
        assert "No lock file" in result.output

    def test_stale_lock_cleared_without_prompt(
        self, runner: CliRunner, isolated_data_dir: Path
    ) -> None:
        """Given a stale lock, clears it without asking."""
        # Arrange
        lock_path = write_lock(isolated_data_dir, pid=DEAD_PID)

        # Act
        result = runner.invoke(cli, ["daemon", "clear-lock"])

        # Assert
        assert result.exit_code == 0
        assert "Lock cleared" in result.output
        assert not lock_path.exists()

    def test_valid_lock_prompt_declined(self, runner: CliRunner, isolated_data_dir: Path) -> None:
        """Given a valid lock and 'n' at the prompt, keeps the lock."""
        # Arrange
        lock_path = write_lock(isolated_data_dir)

        # Act
        result = runner.invoke(cli, ["daemon", "clear-lock"], input="n\n")

        # Assert
        assert result.exit_code == 1
        assert "running daemon" in result.output
        assert lock_path.exists()

    def test_valid_lock_with_yes(self, runner: CliRunner, isolated_data_dir: Path) -> None:
        """Given --yes, clears a valid lock without asking."""
        # Arrange
        lock_path = write_lock(isolated_data_dir)

        # Act
        result = runner.invoke(cli, ["daemon", "clear-lock", "--yes"])

        # Assert
        assert result.exit_code == 0
        assert not lock_path.exists()


class TestConnect:
    """Tests for connect command mode handling."""

    @pytest.fixture(autouse=True)
    def no_logging_setup(self) -> Any:
        with patch("mcp_relay.cli.commands.connect.configure_logging"):
            yield

    def test_requires_command(self, runner: CliRunner) -> None:
        """Given no COMMAND, fails with usage error."""
        # Act
        result = runner.invoke(cli, ["connect"])

        # Assert
        assert result.exit_code == 2

    def test_no_autostart_without_daemon(self, runner: CliRunner) -> None:
        """Given --no-autostart and no daemon, exits 1 without spawning."""
        # Act
        with patch("mcp_relay.cli.commands.connect.ensure_daemon_running") as mock_ensure:
            result = runner.invoke(cli, ["connect", "--no-autostart", "--", "server", "--stdio"])

        # Assert
        assert result.exit_code == 1
        assert "No daemon running" in result.output
        mock_ensure.assert_not_called()

    def test_autostart_failure(self, runner: CliRunner) -> None:
        """Given a daemon that cannot be started, exits 1."""
        # Act
        with patch(
            "mcp_relay.cli.commands.connect.ensure_daemon_running", return_value=None
        ) as mock_ensure:
            result = runner.invoke(cli, ["connect", "--", "server", "--stdio"])

        # Assert
        assert result.exit_code == 1
        assert "did not start" in result.output
        assert mock_ensure.call_args.args[1:] == ("server", ("--stdio",))

    def test_standalone_when_disabled(
        self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Given MCP_RELAY_DISABLE_DAEMON=1, runs the backend directly."""
        # Arrange
        monkeypatch.setenv("MCP_RELAY_DISABLE_DAEMON", "1")

        # Act
        with patch(
            "mcp_relay.cli.commands.connect.run_standalone",
            side_effect=FileNotFoundError("no such file"),
        ) as mock_run:
            result = runner.invoke(cli, ["connect", "--", "server", "--stdio"])

        # Assert
        assert result.exit_code == 1
        assert "Cannot run server" in result.output
        mock_run.assert_called_once_with("server", ("--stdio",))
