"""Version parsing and handshake negotiation.

The daemon accepts a client when:
- protocol versions match exactly,
- the client version is valid semver,
- the client version is not below the daemon's minimum client version,
- major and minor versions match the daemon.

Any version difference within those bounds is accepted with
upgrade_recommended=True. An older client should update itself; a newer
client means the daemon is due for a restart.
"""

from __future__ import annotations

__all__ = [
    "CompatibilityResult",
    "ParsedVersion",
    "VersionManager",
    "compare_versions",
    "parse_version",
]

import re
from typing import NamedTuple

from pydantic import BaseModel

from mcp_relay.constants import MAX_VERSION_COMPONENT, MAX_VERSION_LENGTH
from mcp_relay.daemon.protocol import Handshake, HandshakeAck

_SEMVER_PATTERN = re.compile(
    r"^(\d+)\.(\d+)\.(\d+)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


class ParsedVersion(NamedTuple):
    major: int
    minor: int
    patch: int
    prerelease: str | None = None
    build: str | None = None


class CompatibilityResult(BaseModel):
    """Outcome of a client compatibility check."""

    compatible: bool
    reason: str | None = None
    upgrade_recommended: bool = False


def parse_version(version: str) -> ParsedVersion | None:
    """Parse a semantic version string.

    Args:
        version: Version such as "1.4.2", "2.0.0-rc.1" or "1.0.0+build.5".

    Returns:
        ParsedVersion, or None if the string is not valid semver, is longer
        than MAX_VERSION_LENGTH, or has a component above MAX_VERSION_COMPONENT.
    """
    if len(version) > MAX_VERSION_LENGTH:
        return None

    match = _SEMVER_PATTERN.match(version)
    if match is None:
        return None

    major, minor, patch = (int(part) for part in match.group(1, 2, 3))
    if max(major, minor, patch) > MAX_VERSION_COMPONENT:
        return None

    return ParsedVersion(major, minor, patch, match.group(4), match.group(5))


def _compare_prerelease(a: str | None, b: str | None) -> int:
    # A release sorts after any prerelease of the same version
    if a == b:
        return 0
    if a is None:
        return 1
    if b is None:
        return -1

    for part_a, part_b in zip(a.split("."), b.split(".")):
        if part_a == part_b:
            continue
        a_numeric, b_numeric = part_a.isdigit(), part_b.isdigit()
        if a_numeric and b_numeric:
            return (int(part_a) > int(part_b)) - (int(part_a) < int(part_b))
        if a_numeric != b_numeric:
            # Numeric identifiers have lower precedence than alphanumeric ones
            return -1 if a_numeric else 1
        return (part_a > part_b) - (part_a < part_b)

    len_a, len_b = len(a.split(".")), len(b.split("."))
    return (len_a > len_b) - (len_a < len_b)


def compare_versions(a: str, b: str) -> int:
    """Compare two semantic versions by precedence.

    Build metadata is ignored.

    Args:
        a: First version.
        b: Second version.

    Returns:
        Negative if a < b, zero if equal, positive if a > b.

    Raises:
        ValueError: If either string is not a valid version.
    """
    parsed_a = parse_version(a)
    if parsed_a is None:
        raise ValueError(f"Invalid version string: {a}")
    parsed_b = parse_version(b)
    if parsed_b is None:
        raise ValueError(f"Invalid version string: {b}")

    core_a, core_b = parsed_a[:3], parsed_b[:3]
    if core_a != core_b:
        return -1 if core_a < core_b else 1
    return _compare_prerelease(parsed_a.prerelease, parsed_b.prerelease)


class VersionManager:
    """Daemon-side version policy used during the handshake.

    Args:
        version: The daemon's own version.
        protocol_version: Wire protocol version the daemon speaks.
        min_client_version: Oldest accepted client version.
            Defaults to MAJOR.MINOR.0 of the daemon version.

    Raises:
        ValueError: If version or min_client_version is not valid semver.
    """

    def __init__(
        self,
        version: str,
        protocol_version: int,
        min_client_version: str | None = None,
    ) -> None:
        parsed = parse_version(version)
        if parsed is None:
            raise ValueError(f"Invalid daemon version: {version}")
        if min_client_version is not None and parse_version(min_client_version) is None:
            raise ValueError(f"Invalid minimum client version: {min_client_version}")

        self.version = version
        self.protocol_version = protocol_version
        self.min_client_version = min_client_version or f"{parsed.major}.{parsed.minor}.0"
        self._parsed = parsed

    def check_client_compatibility(
        self,
        client_version: str,
        client_protocol_version: int,
    ) -> CompatibilityResult:
        """Decide whether a client may connect.

        Args:
            client_version: Version the client declared.
            client_protocol_version: Protocol version the client speaks.

        Returns:
            CompatibilityResult with a reason when rejected or when an
            upgrade is recommended.
        """
        if client_protocol_version != self.protocol_version:
            return CompatibilityResult(
                compatible=False,
                reason=(
                    f"Protocol version mismatch: client={client_protocol_version}, "
                    f"daemon={self.protocol_version}"
                ),
            )

        client = parse_version(client_version)
        if client is None:
            return CompatibilityResult(
                compatible=False,
                reason=f"Invalid client version format: {client_version}",
            )

        if compare_versions(client_version, self.min_client_version) < 0:
            return CompatibilityResult(
                compatible=False,
                reason=(
                    f"Client version {client_version} is below minimum "
                    f"supported version {self.min_client_version}"
                ),
            )

        if (client.major, client.minor) != (self._parsed.major, self._parsed.minor):
            newer = (client.major, client.minor) > (self._parsed.major, self._parsed.minor)
            return CompatibilityResult(
                compatible=False,
                reason=(
                    f"Incompatible version: client={client_version}, daemon={self.version}"
                ),
                upgrade_recommended=newer,
            )

        order = compare_versions(client_version, self.version)
        if order > 0:
            return CompatibilityResult(
                compatible=True,
                reason=f"Client {client_version} is newer than daemon {self.version}",
                upgrade_recommended=True,
            )
        if order < 0:
            return CompatibilityResult(
                compatible=True,
                reason=f"Client {client_version} is older than daemon {self.version}",
                upgrade_recommended=True,
            )
        return CompatibilityResult(compatible=True)

    def negotiate_handshake(self, handshake: Handshake, client_id: str) -> HandshakeAck:
        """Build the HandshakeAck for a client's Handshake.

        Args:
            handshake: The client's handshake message.
            client_id: Id to assign if the client is accepted.

        Returns:
            HandshakeAck with success=False and failure_reason on rejection.
        """
        result = self.check_client_compatibility(
            handshake.client_version,
            handshake.protocol_version,
        )
        if not result.compatible:
            return HandshakeAck(
                success=False,
                daemon_version=self.version,
                protocol_version=self.protocol_version,
                upgrade_recommended=result.upgrade_recommended,
                failure_reason=result.reason,
            )
        return HandshakeAck(
            success=True,
            daemon_version=self.version,
            client_id=client_id,
            protocol_version=self.protocol_version,
            upgrade_recommended=result.upgrade_recommended,
        )
