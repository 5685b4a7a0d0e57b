"""Shared file utilities for mcp-relay."""

from __future__ import annotations

__all__ = [
    "set_secure_permissions",
    "write_json_atomic",
]

import json
import os
import sys
from pathlib import Path
from typing import Any


def set_secure_permissions(path: Path, *, is_directory: bool = False) -> None:
    """Set secure permissions on file or directory.

    Sets permissions to restrict access to owner only:
    - Directory: 0o700 (rwx------)
    - File: 0o600 (rw-------)

    Does nothing on Windows. Silently ignores permission errors
    (some systems don't allow permission changes).

    Args:
        path: Path to file or directory.
        is_directory: If True, use directory permissions (0o700).
    """
    if sys.platform == "win32":
        return

    try:
        mode = 0o700 if is_directory else 0o600
        path.chmod(mode)
    except OSError:
        pass  # Permission changes might fail on some systems


def write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    """Write JSON to a file via a sibling temp file and os.replace().

    Readers never observe a partially written file.

    Args:
        path: Destination file.
        data: JSON-serializable object.

    Raises:
        OSError: If the temp file cannot be written or renamed.
    """
    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        set_secure_permissions(tmp_path)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)
