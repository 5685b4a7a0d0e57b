"""Filesystem lock deciding which process is the daemon.

The lock file (<data_dir>/daemon.lock) records the owning pid, its socket
path, versions, and a random instance id. A record is only trusted after
verify_instance() confirms it: pids get recycled, so a live pid alone does not
prove the daemon that wrote the record is still running.

Acquisition is atomic: the record is written to a unique temp file and then
hard-linked to the lock path. os.link() fails if the lock path already exists,
which closes the check-then-write race between competing processes.

Lock contention and stale locks are reported through result models,
never through exceptions.
"""

from __future__ import annotations

__all__ = [
    "InstanceVerification",
    "LockAcquisitionResult",
    "LockInfo",
    "LockManager",
    "LockStatus",
    "new_lock_info",
]

import json
import logging
import os
import re
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from mcp_relay.constants import (
    INSTANCE_PROBE_TIMEOUT_SECONDS,
    LOCK_FILENAME,
    PROTOCOL_VERSION,
    get_data_dir,
)
from mcp_relay.daemon.transport import InstanceProbe, probe_instance
from mcp_relay.telemetry.models import SystemEvent
from mcp_relay.telemetry.system_logger import get_system_logger, log_event
from mcp_relay.utils.file_helpers import set_secure_permissions, write_json_atomic

_logger = get_system_logger()

# xxxxxxxx-xxxx-4xxx-yxxx-xxxxxxxxxxxx where y is one of 8, 9, a, b
_UUID_V4_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# Fields that update_lock() never changes
_IMMUTABLE_FIELDS = frozenset({"pid", "instance_id"})

VerificationReason = Literal[
    "pid_dead",
    "no_instance_id",
    "pid_alive_instance_mismatch",
    "connection_failed",
    "pid_alive_instance_verified",
]

AcquisitionReason = Literal["already_locked", "stale_lock_cleared", "write_error"]

InstanceProber = Callable[[str, float], InstanceProbe]


class LockInfo(BaseModel):
    """Persisted daemon ownership record.

    Serialized with camelCase keys (socketPath, startTime, ...).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    pid: int = Field(strict=True)
    socket_path: str = Field(strict=True)
    start_time: float = Field(description="Milliseconds since the epoch")
    version: str = "0.0.0"
    client_count: int = 0
    protocol_version: int = PROTOCOL_VERSION
    min_client_version: str = "0.0.0"
    instance_id: str | None = None

    def to_json(self) -> str:
        """Serialize for the lock file (camelCase keys, pretty printed)."""
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True), indent=2) + "\n"


class InstanceVerification(BaseModel):
    valid: bool
    reason: VerificationReason


class LockAcquisitionResult(BaseModel):
    """Outcome of acquire_lock().

    reason is None for a clean acquisition.
    existing_lock is set when success is False and the holder is readable.
    """

    success: bool
    reason: AcquisitionReason | None = None
    existing_lock: LockInfo | None = None
    lock_info: LockInfo | None = None


class LockStatus(BaseModel):
    """Diagnostic snapshot for operator tooling."""

    lock_exists: bool
    lock_path: str
    lock_info: LockInfo | None = None
    is_pid_alive: bool = False
    is_valid: bool = False
    verification: InstanceVerification | None = None


class LockManager:
    """Coordinates the single daemon instance through the lock file.

    Args:
        lock_dir: Directory holding daemon.lock (defaults to the data dir).
        probe: Callable(socket_path, timeout) returning an InstanceProbe.
            Replaced in tests to avoid real sockets.
        probe_timeout: Seconds allowed for the verify_instance round trip.
    """

    def __init__(
        self,
        lock_dir: Path | None = None,
        *,
        probe: InstanceProber = probe_instance,
        probe_timeout: float = INSTANCE_PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self.lock_dir = lock_dir if lock_dir is not None else get_data_dir()
        self._probe = probe
        self._probe_timeout = probe_timeout

    # -------------------------------------------------------------------------
    # Identity helpers
    # -------------------------------------------------------------------------

    @property
    def lock_path(self) -> Path:
        return self.lock_dir / LOCK_FILENAME

    @staticmethod
    def generate_instance_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def is_valid_uuid_v4(value: str) -> bool:
        """Strict structural check for a UUID v4 string."""
        return isinstance(value, str) and _UUID_V4_PATTERN.match(value) is not None

    @staticmethod
    def is_pid_alive(pid: int) -> bool:
        """Check whether a process exists using signal 0.

        EPERM means the process exists but belongs to another user, so it
        counts as alive. Never raises.
        """
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except PermissionError:
            return True
        except (ProcessLookupError, OSError, OverflowError):
            return False
        return True

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    def read_lock(self) -> LockInfo | None:
        """Read and validate the lock file.

        Returns:
            LockInfo, or None if the file is missing, unreadable, not JSON,
            not an object, or lacks valid pid/socketPath/startTime.
        """
        try:
            content = self.lock_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            _logger.error(
                {
                    "event": "lock_read_failed",
                    "message": f"Error reading lock file: {e}",
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                    "details": {"lock_path": str(self.lock_path)},
                }
            )
            return None

        try:
            data = json.loads(content)
            if not isinstance(data, dict):
                raise ValueError("lock file is not a JSON object")
            return LockInfo.model_validate(data)
        except (ValueError, ValidationError) as e:
            _logger.warning(
                {
                    "event": "lock_malformed",
                    "message": "Invalid lock file format, treating as no lock",
                    "error_type": type(e).__name__,
                    "details": {"lock_path": str(self.lock_path)},
                }
            )
            return None

    def get_own_instance_id(self) -> str | None:
        """Instance id of the lock, only if this process owns it."""
        lock = self.read_lock()
        if lock is None or lock.pid != os.getpid():
            return None
        return lock.instance_id

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify_instance(self, lock: LockInfo) -> InstanceVerification:
        """Decide whether a lock record belongs to a running daemon.

        Decision order:
            1. Dead pid: invalid (pid_dead).
            2. No instance id (legacy record): valid on pid alone (no_instance_id).
            3. Instance id is not a UUID v4: invalid (pid_alive_instance_mismatch).
            4. Probe the socket: unreachable is invalid (connection_failed);
               a different reported id is invalid (pid_alive_instance_mismatch);
               a matching id is valid (pid_alive_instance_verified).

        Args:
            lock: The record to verify.

        Returns:
            InstanceVerification with the deciding reason.
        """
        if not self.is_pid_alive(lock.pid):
            return InstanceVerification(valid=False, reason="pid_dead")

        if not lock.instance_id:
            _logger.warning(
                {
                    "event": "lock_missing_instance_id",
                    "message": "Lock file missing instanceId, falling back to pid-only check",
                    "pid": lock.pid,
                }
            )
            return InstanceVerification(valid=True, reason="no_instance_id")

        if not self.is_valid_uuid_v4(lock.instance_id):
            _logger.warning(
                {
                    "event": "lock_invalid_instance_id",
                    "message": "Lock file has invalid instanceId format, treating as stale",
                    "pid": lock.pid,
                }
            )
            return InstanceVerification(valid=False, reason="pid_alive_instance_mismatch")

        probe = self._probe(lock.socket_path, self._probe_timeout)
        if not probe.reachable:
            log_event(
                logging.WARNING,
                SystemEvent(
                    event="lock_probe_failed",
                    message="Daemon socket did not answer verification, treating lock as stale",
                    pid=lock.pid,
                    instance_id=lock.instance_id,
                    socket_path=lock.socket_path,
                ),
            )
            return InstanceVerification(valid=False, reason="connection_failed")

        if probe.instance_id != lock.instance_id:
            log_event(
                logging.WARNING,
                SystemEvent(
                    event="lock_instance_mismatch",
                    message="Daemon reported a different instance id, treating lock as stale",
                    pid=lock.pid,
                    instance_id=lock.instance_id,
                    socket_path=lock.socket_path,
                ),
            )
            return InstanceVerification(valid=False, reason="pid_alive_instance_mismatch")

        return InstanceVerification(valid=True, reason="pid_alive_instance_verified")

    def is_lock_valid(self) -> bool:
        """Fast check: a lock exists and its pid is alive."""
        lock = self.read_lock()
        return lock is not None and self.is_pid_alive(lock.pid)

    def is_lock_valid_strict(self) -> bool:
        """Full check: a lock exists and verify_instance() accepts it."""
        lock = self.read_lock()
        return lock is not None and self.verify_instance(lock).valid

    # -------------------------------------------------------------------------
    # Acquisition
    # -------------------------------------------------------------------------

    def acquire_lock(self, candidate: LockInfo) -> LockAcquisitionResult:
        """Atomically become the lock owner.

        The candidate is stamped with this process's pid and a fresh
        instance id before being written.

        Args:
            candidate: Record to write (pid and instance_id are replaced).

        Returns:
            LockAcquisitionResult. On success lock_info holds the written
            record. On contention existing_lock holds the holder's record.
        """
        lock_info = candidate.model_copy(
            update={"pid": os.getpid(), "instance_id": self.generate_instance_id()}
        )

        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._log_write_error(e)
            return LockAcquisitionResult(success=False, reason="write_error")

        try:
            if self._try_link(lock_info):
                self._log_acquired(lock_info, stale_cleared=False)
                return LockAcquisitionResult(success=True, lock_info=lock_info)

            existing = self.read_lock()
            if existing is None:
                if self.lock_path.exists():
                    # Corrupted record: nothing can be verified, reclaim it
                    self.lock_path.unlink(missing_ok=True)
                    stale_cleared = True
                else:
                    # Holder released between link and read
                    stale_cleared = False
                if self._try_link(lock_info):
                    self._log_acquired(lock_info, stale_cleared=stale_cleared)
                    return LockAcquisitionResult(
                        success=True,
                        reason="stale_lock_cleared" if stale_cleared else None,
                        lock_info=lock_info,
                    )
                return LockAcquisitionResult(
                    success=False,
                    reason="already_locked",
                    existing_lock=self.read_lock(),
                )

            verification = self.verify_instance(existing)
            if verification.valid:
                return LockAcquisitionResult(
                    success=False,
                    reason="already_locked",
                    existing_lock=existing,
                )

            log_event(
                logging.WARNING,
                SystemEvent(
                    event="lock_stale_cleared",
                    message="Clearing stale daemon lock",
                    pid=existing.pid,
                    instance_id=existing.instance_id,
                    lock_path=str(self.lock_path),
                    details={"reason": verification.reason},
                ),
            )
            self._remove_if_unchanged(existing)

            if self._try_link(lock_info):
                self._log_acquired(lock_info, stale_cleared=True)
                return LockAcquisitionResult(
                    success=True,
                    reason="stale_lock_cleared",
                    lock_info=lock_info,
                )

            # Another process won the retry
            return LockAcquisitionResult(
                success=False,
                reason="already_locked",
                existing_lock=self.read_lock(),
            )
        except OSError as e:
            self._log_write_error(e)
            return LockAcquisitionResult(success=False, reason="write_error")

    def _try_link(self, lock_info: LockInfo) -> bool:
        """Write lock_info to a temp file and link it to the lock path.

        Returns:
            True if the link created the lock, False if a lock already exists.

        Raises:
            OSError: On any other filesystem failure.
        """
        tmp_path = self.lock_dir / f"{LOCK_FILENAME}.{os.getpid()}.{uuid.uuid4().hex}.tmp"
        try:
            with tmp_path.open("x", encoding="utf-8") as f:
                f.write(lock_info.to_json())
            set_secure_permissions(tmp_path)
            try:
                os.link(tmp_path, self.lock_path)
            except FileExistsError:
                return False
            return True
        finally:
            tmp_path.unlink(missing_ok=True)

    def _remove_if_unchanged(self, stale: LockInfo) -> None:
        # Only delete the exact record that was judged stale
        current = self.read_lock()
        if current is not None and current == stale:
            self.lock_path.unlink(missing_ok=True)

    def _log_acquired(self, lock_info: LockInfo, *, stale_cleared: bool) -> None:
        log_event(
            logging.INFO,
            SystemEvent(
                event="lock_acquired",
                message=(
                    "Daemon lock acquired after clearing stale lock"
                    if stale_cleared
                    else "Daemon lock acquired"
                ),
                pid=lock_info.pid,
                instance_id=lock_info.instance_id,
                socket_path=lock_info.socket_path,
            ),
        )

    def _log_write_error(self, e: OSError) -> None:
        log_event(
            logging.ERROR,
            SystemEvent(
                event="lock_write_failed",
                message=f"Failed to write daemon lock: {e}",
                lock_path=str(self.lock_path),
                error_type=type(e).__name__,
                error_message=str(e),
            ),
        )

    # -------------------------------------------------------------------------
    # Mutation / release
    # -------------------------------------------------------------------------

    def release_lock(self) -> bool:
        """Delete the lock if this process may.

        Returns:
            True if no lock exists or it was removed (own, dead owner, or
            corrupted). False if another live process owns it or on I/O error.
        """
        if not self.lock_path.exists():
            return True

        lock = self.read_lock()
        if lock is not None and lock.pid != os.getpid() and self.is_pid_alive(lock.pid):
            _logger.warning(
                {
                    "event": "lock_release_refused",
                    "message": "Refusing to release lock owned by another live process",
                    "pid": lock.pid,
                    "details": {"own_pid": os.getpid()},
                }
            )
            return False

        try:
            self.lock_path.unlink(missing_ok=True)
        except OSError as e:
            _logger.error(
                {
                    "event": "lock_release_failed",
                    "message": f"Failed to release lock: {e}",
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )
            return False
        return True

    def update_lock(self, **changes: Any) -> bool:
        """Read-modify-write the lock record. Owner only.

        pid and instance_id are never changed, whatever is passed.

        Args:
            **changes: LockInfo fields to update (snake_case names).

        Returns:
            True if written, False if absent, foreign, or on I/O error.
        """
        lock = self.read_lock()
        if lock is None or lock.pid != os.getpid():
            return False

        allowed = {key: value for key, value in changes.items() if key not in _IMMUTABLE_FIELDS}
        updated = LockInfo.model_validate({**lock.model_dump(), **allowed})

        try:
            write_json_atomic(self.lock_path, updated.model_dump(by_alias=True, exclude_none=True))
        except OSError as e:
            _logger.error(
                {
                    "event": "lock_update_failed",
                    "message": f"Failed to update lock: {e}",
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )
            return False
        return True

    def force_clear_lock(self) -> bool:
        """Delete the lock file regardless of owner.

        Returns:
            True if removed or already absent, False on I/O error.
        """
        try:
            self.lock_path.unlink(missing_ok=True)
        except OSError as e:
            _logger.error(
                {
                    "event": "lock_force_clear_failed",
                    "message": f"Failed to clear lock: {e}",
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )
            return False
        _logger.info({"event": "lock_force_cleared", "message": "Daemon lock cleared"})
        return True

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def get_status(self) -> LockStatus:
        lock = self.read_lock()
        status = LockStatus(
            lock_exists=self.lock_path.exists(),
            lock_path=str(self.lock_path),
            lock_info=lock,
        )
        if lock is None:
            return status

        verification = self.verify_instance(lock)
        status.is_pid_alive = self.is_pid_alive(lock.pid)
        status.is_valid = verification.valid
        status.verification = verification
        return status


def new_lock_info(socket_path: str, version: str, min_client_version: str) -> LockInfo:
    """Build a candidate record for acquire_lock() (pid and id are stamped there)."""
    return LockInfo(
        pid=os.getpid(),
        socket_path=socket_path,
        start_time=time.time() * 1000,
        version=version,
        client_count=0,
        protocol_version=PROTOCOL_VERSION,
        min_client_version=min_client_version,
    )
