# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Typed firewall allow-list entries.

The allow-list file (``firewall-domains.txt``) is newline-delimited plain
text.  Each entry is either a domain name, resolved to addresses every
time the firewall initializes, or a literal IPv4 address / CIDR range::

    # Anthropic API
    api.anthropic.com
    statsig.anthropic.com
    registry.npmjs.org
    140.82.112.0/20     # literal range

This module is the single source of truth for turning file contents into
typed entries.  Resolution happens in ``ccbox.firewall.resolver``.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from pathlib import Path

from ccbox.config import ConfigError, parse_list_text


# RFC 1123 labels; the trailing dot of a fully qualified name is dropped.
_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


#: Written by ``ccbox --init``; the minimum the agent needs to work.
DEFAULT_DOMAINS: tuple[str, ...] = (
    "api.anthropic.com",
    "statsig.anthropic.com",
    "sentry.io",
    "registry.npmjs.org",
    "pypi.org",
    "files.pythonhosted.org",
)


@dataclass(frozen=True)
class AllowDomain:
    """A domain whose addresses are allowed egress."""

    host: str


@dataclass(frozen=True)
class AllowNetwork:
    """A literal network range, normalized to CIDR notation."""

    cidr: str


AllowEntry = AllowDomain | AllowNetwork


def is_valid_domain(host: str) -> bool:
    """Check whether *host* is a syntactically valid domain name."""
    if not host or len(host) > 253:
        return False
    labels = host.split(".")
    return all(_LABEL.match(label) for label in labels)


def parse_entry(raw: str) -> AllowEntry:
    """Parse a single allow-list entry.

    Args:
        raw: Entry text with comments already stripped.

    Returns:
        ``AllowNetwork`` for IP addresses and CIDR ranges, otherwise
        ``AllowDomain``.

    Raises:
        ValueError: If the entry is neither a network nor a valid domain.
    """
    text = raw.strip()
    try:
        network = ipaddress.ip_network(text, strict=False)
    except ValueError:
        pass
    else:
        return AllowNetwork(cidr=str(network))

    host = text.lower().rstrip(".")
    if not is_valid_domain(host):
        raise ValueError(f"Invalid allow-list entry: {raw!r}")
    return AllowDomain(host=host)


def parse_allowlist_text(text: str) -> tuple[AllowEntry, ...]:
    """Parse allow-list file contents into typed entries.

    Duplicates are dropped; the first occurrence keeps its position.

    Raises:
        ValueError: If an entry is invalid.
    """
    return tuple(dict.fromkeys(parse_entry(e) for e in parse_list_text(text)))


def load_allowlist(path: Path) -> tuple[AllowEntry, ...]:
    """Load and parse an allow-list file.

    Raises:
        ConfigError: If the file cannot be read or contains invalid entries.
    """
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    try:
        return parse_allowlist_text(text)
    except ValueError as e:
        raise ConfigError(f"{path}: {e}") from e


def serialize_allowlist(entries: tuple[AllowEntry, ...]) -> str:
    """Render entries back to the plain-text file format."""
    lines = [
        e.host if isinstance(e, AllowDomain) else e.cidr for e in entries
    ]
    return "\n".join(lines) + "\n" if lines else ""
