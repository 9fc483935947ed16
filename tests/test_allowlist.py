# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for ccbox/allowlist.py."""

from pathlib import Path

import pytest

from ccbox.allowlist import (
    DEFAULT_DOMAINS,
    AllowDomain,
    AllowNetwork,
    is_valid_domain,
    load_allowlist,
    parse_allowlist_text,
    parse_entry,
    serialize_allowlist,
)
from ccbox.config import ConfigError


class TestIsValidDomain:
    """Tests for is_valid_domain."""

    @pytest.mark.parametrize(
        "host",
        ["api.anthropic.com", "localhost", "a-b.example.org", "x1.io"],
    )
    def test_valid(self, host: str) -> None:
        assert is_valid_domain(host)

    @pytest.mark.parametrize(
        "host",
        ["", "-bad.com", "bad-.com", "a..b", "under_score.com", "a" * 254],
    )
    def test_invalid(self, host: str) -> None:
        assert not is_valid_domain(host)

    def test_label_too_long(self) -> None:
        """Labels are limited to 63 characters."""
        assert not is_valid_domain("a" * 64 + ".com")


class TestParseEntry:
    """Tests for parse_entry."""

    def test_domain_normalized(self) -> None:
        """Domains are lowercased and lose a trailing dot."""
        assert parse_entry("API.Anthropic.com.") == AllowDomain(
            host="api.anthropic.com"
        )

    def test_single_address(self) -> None:
        """A bare address becomes a /32 network."""
        assert parse_entry("140.82.112.3") == AllowNetwork(
            cidr="140.82.112.3/32"
        )

    def test_cidr_host_bits_cleared(self) -> None:
        """Host bits in a range are masked off."""
        assert parse_entry("140.82.112.7/20") == AllowNetwork(
            cidr="140.82.112.0/20"
        )

    def test_ipv6_kept_as_network(self) -> None:
        """IPv6 literals parse; the resolver decides what to do with them."""
        assert parse_entry("2001:db8::/32") == AllowNetwork(
            cidr="2001:db8::/32"
        )

    def test_invalid(self) -> None:
        with pytest.raises(ValueError, match="Invalid allow-list entry"):
            parse_entry("not a domain")


class TestParseAllowlistText:
    """Tests for parse_allowlist_text."""

    def test_mixed_entries(self) -> None:
        """Comments are ignored and entry kinds are distinguished."""
        text = (
            "# Anthropic\n"
            "api.anthropic.com\n"
            "\n"
            "10.0.0.0/8   # internal\n"
        )
        assert parse_allowlist_text(text) == (
            AllowDomain(host="api.anthropic.com"),
            AllowNetwork(cidr="10.0.0.0/8"),
        )

    def test_duplicates_dropped(self) -> None:
        """The first occurrence of a duplicate keeps its position."""
        text = "pypi.org\nsentry.io\nPYPI.org\n"
        assert parse_allowlist_text(text) == (
            AllowDomain(host="pypi.org"),
            AllowDomain(host="sentry.io"),
        )

    def test_empty(self) -> None:
        assert parse_allowlist_text("# nothing here\n") == ()


class TestLoadAllowlist:
    """Tests for load_allowlist."""

    def test_loads_file(self, tmp_path: Path) -> None:
        path = tmp_path / "firewall-domains.txt"
        path.write_text("api.anthropic.com\n")
        assert load_allowlist(path) == (AllowDomain(host="api.anthropic.com"),)

    def test_matches_text_parsing(self, tmp_path: Path) -> None:
        """A file parses exactly like its text, duplicates included."""
        text = "# header\nPyPI.org.\n192.0.2.0/24\npypi.org # again\n"
        path = tmp_path / "firewall-domains.txt"
        path.write_text(text)
        assert load_allowlist(path) == parse_allowlist_text(text)
        assert len(load_allowlist(path)) == 2

    def test_invalid_entry_names_file(self, tmp_path: Path) -> None:
        """Invalid entries raise ConfigError mentioning the file."""
        path = tmp_path / "firewall-domains.txt"
        path.write_text("good.example.com\nbad entry\n")
        with pytest.raises(ConfigError, match="firewall-domains.txt"):
            load_allowlist(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Cannot read"):
            load_allowlist(tmp_path / "missing.txt")


class TestSerializeAllowlist:
    """Tests for serialize_allowlist."""

    def test_serialize(self) -> None:
        entries = (
            AllowDomain(host="pypi.org"),
            AllowNetwork(cidr="10.0.0.0/8"),
        )
        assert serialize_allowlist(entries) == "pypi.org\n10.0.0.0/8\n"

    def test_empty(self) -> None:
        assert serialize_allowlist(()) == ""

    def test_defaults_parse_back(self) -> None:
        """The default domains survive a write and re-read."""
        entries = tuple(AllowDomain(host=h) for h in DEFAULT_DOMAINS)
        text = serialize_allowlist(entries)
        assert parse_allowlist_text(text) == entries
