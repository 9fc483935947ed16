# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Domain allow-list resolution.

Turns allow-list entries into the set of IPv4 networks the firewall
admits.  Domains resolve to ``/32`` addresses, literal entries are
normalized, and trusted providers (GitHub by default) contribute the
ranges they publish in their metadata endpoint.

Nothing here is fatal: an unresolvable domain or an unreachable provider
produces a ``ResolutionWarning`` and the rest of the batch carries on.
Lookups are single-shot with a short timeout and are never retried.
"""

from __future__ import annotations

import ipaddress
import logging
import math
import queue
import socket
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

import httpx

from ccbox.allowlist import AllowDomain, AllowEntry, AllowNetwork


logger = logging.getLogger(__name__)

DEFAULT_DNS_TIMEOUT = 3.0
DEFAULT_HTTP_TIMEOUT = 5.0

_MAX_LOOKUP_WORKERS = 16

#: Resolves a host name to IPv4 address strings; raises OSError on failure.
HostResolver = Callable[[str], list[str]]


@dataclass(frozen=True)
class TrustedProvider:
    """A metadata endpoint publishing CIDR ranges as JSON lists.

    Attributes:
        name: Label used in log messages and warnings.
        url: Endpoint returning a JSON object.
        keys: Top-level keys whose values are CIDR lists.
    """

    name: str
    url: str
    keys: tuple[str, ...]


GITHUB_META = TrustedProvider(
    name="github",
    url="https://api.github.com/meta",
    keys=("web", "api", "git"),
)

DEFAULT_PROVIDERS: tuple[TrustedProvider, ...] = (GITHUB_META,)


@dataclass(frozen=True)
class ResolutionWarning:
    """A non-fatal resolution problem.

    Attributes:
        source: The domain, literal entry, or provider concerned.
        reason: What went wrong.
    """

    source: str
    reason: str


@dataclass(frozen=True)
class ResolveResult:
    """Outcome of resolving an allow-list.

    Attributes:
        networks: IPv4 networks in CIDR notation.
        warnings: Problems encountered, in the order they were found.
    """

    networks: frozenset[str]
    warnings: tuple[ResolutionWarning, ...] = ()


def system_resolver(host: str) -> list[str]:
    """Resolve *host* to its IPv4 addresses with the system resolver."""
    infos = socket.getaddrinfo(host, None, socket.AF_INET, socket.SOCK_STREAM)
    return sorted({str(info[4][0]) for info in infos})


def _ipv4_network(value: str) -> str:
    """Normalize *value* to IPv4 CIDR notation.

    Raises:
        ValueError: If *value* is not an IP network, or is IPv6.
    """
    network = ipaddress.ip_network(value.strip(), strict=False)
    if network.version != 4:
        raise ValueError(f"IPv6 is not supported: {value}")
    return str(network)


def _lookup_worker(
    resolver: HostResolver,
    pending: queue.Queue[str],
    results: queue.Queue[tuple[str, list[str] | OSError]],
) -> None:
    while True:
        try:
            host = pending.get_nowait()
        except queue.Empty:
            return
        try:
            results.put((host, resolver(host)))
        except OSError as e:
            results.put((host, e))


def resolve_domains(
    hosts: Sequence[str],
    *,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    resolver: HostResolver = system_resolver,
) -> tuple[dict[str, list[str]], list[ResolutionWarning]]:
    """Resolve domains concurrently, each with a bounded wait.

    Lookups run on daemon threads: a lookup still hanging when the wait
    ends is abandoned and does not hold up interpreter exit.

    Returns:
        Addresses per resolved host, and a warning per failed host.
    """
    resolved: dict[str, list[str]] = {}
    warnings: list[ResolutionWarning] = []
    hosts = list(dict.fromkeys(hosts))
    if not hosts:
        return resolved, warnings

    workers = min(_MAX_LOOKUP_WORKERS, len(hosts))
    # Every lookup gets its full timeout even when it had to queue
    deadline = time.monotonic() + timeout * math.ceil(len(hosts) / workers)

    pending: queue.Queue[str] = queue.Queue()
    for host in hosts:
        pending.put(host)
    results: queue.Queue[tuple[str, list[str] | OSError]] = queue.Queue()
    for index in range(workers):
        threading.Thread(
            target=_lookup_worker,
            args=(resolver, pending, results),
            name=f"ccbox-dns-{index}",
            daemon=True,
        ).start()

    outcomes: dict[str, list[str] | OSError] = {}
    while len(outcomes) < len(hosts):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        try:
            host, outcome = results.get(timeout=remaining)
        except queue.Empty:
            break
        outcomes[host] = outcome

    for host in hosts:
        if host not in outcomes:
            warnings.append(ResolutionWarning(host, "lookup timed out"))
            continue
        outcome = outcomes[host]
        if isinstance(outcome, OSError):
            warnings.append(ResolutionWarning(host, str(outcome)))
            continue
        valid = []
        for address in outcome:
            try:
                valid.append(_ipv4_network(f"{address}/32"))
            except ValueError:
                logger.debug("Ignoring non-IPv4 address %s", address)
        if valid:
            resolved[host] = valid
        else:
            warnings.append(ResolutionWarning(host, "no IPv4 addresses"))

    return resolved, warnings


def fetch_provider_ranges(
    provider: TrustedProvider, *, timeout: float = DEFAULT_HTTP_TIMEOUT
) -> tuple[set[str], list[ResolutionWarning]]:
    """Fetch the IPv4 ranges a trusted provider publishes.

    IPv6 ranges are skipped silently; providers publish both families.

    Returns:
        The ranges found, and warnings for anything unusable.
    """
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.get(
                provider.url, headers={"Accept": "application/json"}
            )
            response.raise_for_status()
        data = response.json()
    except httpx.HTTPError as e:
        return set(), [ResolutionWarning(provider.name, f"fetch failed: {e}")]
    except ValueError as e:
        return set(), [ResolutionWarning(provider.name, f"invalid JSON: {e}")]

    if not isinstance(data, dict):
        return set(), [
            ResolutionWarning(provider.name, "response is not a JSON object")
        ]

    ranges: set[str] = set()
    warnings: list[ResolutionWarning] = []
    for key in provider.keys:
        values = data.get(key)
        if not isinstance(values, list):
            warnings.append(
                ResolutionWarning(provider.name, f"missing key {key!r}")
            )
            continue
        for value in values:
            try:
                network = ipaddress.ip_network(str(value), strict=False)
            except ValueError:
                warnings.append(
                    ResolutionWarning(
                        provider.name, f"malformed range in {key!r}: {value!r}"
                    )
                )
                continue
            if network.version == 4:
                ranges.add(str(network))
    return ranges, warnings


def resolve_allow_set(
    entries: Iterable[AllowEntry],
    providers: Sequence[TrustedProvider] = DEFAULT_PROVIDERS,
    *,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    http_timeout: float = DEFAULT_HTTP_TIMEOUT,
    resolver: HostResolver = system_resolver,
) -> ResolveResult:
    """Resolve allow-list entries and provider ranges to IPv4 networks.

    Args:
        entries: Parsed allow-list entries.
        providers: Trusted metadata endpoints to consult.
        timeout: Per-domain DNS timeout in seconds.
        http_timeout: Per-provider HTTP timeout in seconds.
        resolver: Host name resolver (injectable for tests).

    Returns:
        Deduplicated networks and any warnings.  Warnings are also logged.
    """
    networks: set[str] = set()
    warnings: list[ResolutionWarning] = []
    hosts: list[str] = []

    for entry in entries:
        if isinstance(entry, AllowNetwork):
            try:
                networks.add(_ipv4_network(entry.cidr))
            except ValueError as e:
                warnings.append(ResolutionWarning(entry.cidr, str(e)))
        elif isinstance(entry, AllowDomain):
            hosts.append(entry.host)

    resolved, dns_warnings = resolve_domains(
        list(dict.fromkeys(hosts)), timeout=timeout, resolver=resolver
    )
    warnings.extend(dns_warnings)
    for host, addresses in resolved.items():
        logger.info("Resolved %s: %s", host, ", ".join(addresses))
        networks.update(addresses)

    for provider in providers:
        ranges, provider_warnings = fetch_provider_ranges(
            provider, timeout=http_timeout
        )
        warnings.extend(provider_warnings)
        if ranges:
            logger.info(
                "Added %d range(s) from provider %s", len(ranges), provider.name
            )
        networks.update(ranges)

    for warning in warnings:
        logger.warning(
            "Could not resolve %s: %s", warning.source, warning.reason
        )

    return ResolveResult(networks=frozenset(networks), warnings=tuple(warnings))
