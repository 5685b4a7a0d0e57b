"""Shared fixtures for mcp-relay tests."""

from __future__ import annotations

import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from mcp_relay.constants import DATA_DIR_ENV_VAR, DISABLE_DAEMON_ENV_VAR


@pytest.fixture
def short_tmp_dir() -> Iterator[Path]:
    """Temporary directory with a short path (Unix socket limit ~104 chars)."""
    # pytest tmp_path is too long for Unix sockets on some platforms
    tmpdir = Path(tempfile.mkdtemp(prefix="mcp_", dir="/tmp"))
    yield tmpdir
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture(autouse=True)
def isolated_data_dir(monkeypatch: pytest.MonkeyPatch, short_tmp_dir: Path) -> Path:
    """Point the lock file and socket at a per-test directory."""
    monkeypatch.setenv(DATA_DIR_ENV_VAR, str(short_tmp_dir))
    monkeypatch.delenv(DISABLE_DAEMON_ENV_VAR, raising=False)
    return short_tmp_dir
