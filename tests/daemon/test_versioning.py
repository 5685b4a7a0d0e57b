"""Tests for version parsing and handshake negotiation."""

from __future__ import annotations

import pytest

from mcp_relay.daemon.protocol import Handshake
from mcp_relay.daemon.versioning import (
    ParsedVersion,
    VersionManager,
    compare_versions,
    parse_version,
)


class TestParseVersion:
    """Tests for parse_version()."""

    def test_parses_release(self) -> None:
        """Plain MAJOR.MINOR.PATCH parses."""
        assert parse_version("1.4.2") == ParsedVersion(1, 4, 2, None, None)

    def test_parses_prerelease_and_build(self) -> None:
        """Prerelease and build metadata are captured."""
        parsed = parse_version("2.0.0-rc.1+build.5")
        assert parsed is not None
        assert parsed.prerelease == "rc.1"
        assert parsed.build == "build.5"

    @pytest.mark.parametrize("value", ["", "1.0", "v1.0.0", "1.0.0.0", "a.b.c", "1.0.0-"])
    def test_rejects_invalid(self, value: str) -> None:
        """Non-semver strings return None."""
        assert parse_version(value) is None

    def test_rejects_oversized_component(self) -> None:
        """Components above the ceiling are rejected."""
        assert parse_version("1000000.0.0") is None

    def test_rejects_overlong_string(self) -> None:
        """Strings longer than the ceiling are rejected."""
        assert parse_version("1.0.0-" + "a" * 300) is None


class TestCompareVersions:
    """Tests for compare_versions()."""

    @pytest.mark.parametrize(
        ("a", "b", "expected"),
        [
            ("1.0.0", "1.0.0", 0),
            ("1.0.0", "1.0.1", -1),
            ("1.2.0", "1.1.9", 1),
            ("2.0.0", "10.0.0", -1),
            ("1.0.0-alpha", "1.0.0", -1),
            ("1.0.0-alpha", "1.0.0-alpha.1", -1),
            ("1.0.0-alpha.1", "1.0.0-alpha.beta", -1),
            ("1.0.0-beta.2", "1.0.0-beta.11", -1),
            ("1.0.0-rc.1", "1.0.0-beta", 1),
            ("1.0.0+build.1", "1.0.0+build.2", 0),
        ],
    )
    def test_precedence(self, a: str, b: str, expected: int) -> None:
        """Ordering follows semver precedence; build metadata is ignored."""
        result = compare_versions(a, b)
        assert (result > 0) - (result < 0) == expected

    def test_invalid_raises(self) -> None:
        """Invalid input raises ValueError."""
        with pytest.raises(ValueError):
            compare_versions("1.0", "1.0.0")


class TestVersionManager:
    """Tests for VersionManager compatibility rules."""

    def test_default_minimum_is_major_minor_zero(self) -> None:
        """min_client_version defaults to MAJOR.MINOR.0."""
        assert VersionManager("1.4.7", 1).min_client_version == "1.4.0"

    def test_invalid_daemon_version_raises(self) -> None:
        """An invalid daemon version is a programming error."""
        with pytest.raises(ValueError):
            VersionManager("latest", 1)

    def test_invalid_minimum_raises(self) -> None:
        """An invalid minimum client version is rejected."""
        with pytest.raises(ValueError):
            VersionManager("1.0.0", 1, min_client_version="one")

    def test_identical_version_compatible(self) -> None:
        """Same version is compatible without upgrade hint."""
        result = VersionManager("1.2.3", 1).check_client_compatibility("1.2.3", 1)
        assert result.compatible is True
        assert result.upgrade_recommended is False

    def test_protocol_mismatch_rejected_first(self) -> None:
        """Protocol mismatch wins over every other check."""
        result = VersionManager("1.2.3", 1).check_client_compatibility("garbage", 2)
        assert result.compatible is False
        assert "Protocol version mismatch" in (result.reason or "")

    def test_invalid_client_version_rejected(self) -> None:
        """Unparseable client versions are rejected."""
        result = VersionManager("1.2.3", 1).check_client_compatibility("1.2", 1)
        assert result.compatible is False
        assert "Invalid client version" in (result.reason or "")

    def test_below_minimum_rejected(self) -> None:
        """Clients older than the minimum are rejected."""
        manager = VersionManager("1.2.3", 1, min_client_version="1.2.2")
        result = manager.check_client_compatibility("1.2.1", 1)
        assert result.compatible is False
        assert "below minimum" in (result.reason or "")

    def test_different_minor_rejected(self) -> None:
        """A newer minor version is incompatible but hints an upgrade."""
        result = VersionManager("1.2.3", 1).check_client_compatibility("1.3.0", 1)
        assert result.compatible is False
        assert result.upgrade_recommended is True

    def test_newer_patch_compatible_with_upgrade_hint(self) -> None:
        """A newer patch is accepted and recommends a daemon upgrade."""
        result = VersionManager("1.2.3", 1).check_client_compatibility("1.2.9", 1)
        assert result.compatible is True
        assert result.upgrade_recommended is True

    def test_older_patch_compatible_with_upgrade_hint(self) -> None:
        """An older patch above the minimum is accepted with a hint."""
        result = VersionManager("1.2.3", 1).check_client_compatibility("1.2.0", 1)
        assert result.compatible is True
        assert result.upgrade_recommended is True


class TestNegotiateHandshake:
    """Tests for VersionManager.negotiate_handshake()."""

    def test_success_assigns_client_id(self) -> None:
        """An accepted client gets the provided client id."""
        manager = VersionManager("1.0.0", 1)
        ack = manager.negotiate_handshake(
            Handshake(client_version="1.0.0", protocol_version=1), "client-1"
        )
        assert ack.success is True
        assert ack.client_id == "client-1"
        assert ack.daemon_version == "1.0.0"
        assert ack.protocol_version == 1

    def test_failure_has_reason_and_no_client_id(self) -> None:
        """A rejected client gets a failure reason and no client id."""
        manager = VersionManager("1.0.0", 1)
        ack = manager.negotiate_handshake(
            Handshake(client_version="1.0.0", protocol_version=99), "client-1"
        )
        assert ack.success is False
        assert ack.client_id == ""
        assert ack.failure_reason
