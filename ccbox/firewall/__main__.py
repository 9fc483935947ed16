# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Firewall bootstrap: ``python -m ccbox.firewall``.

Exit codes: 0 success, 1 not root or unusable allow-list, 3 fatal
firewall failure.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from ccbox.allowlist import load_allowlist
from ccbox.config import ConfigError
from ccbox.firewall.compiler import (
    FirewallFatalError,
    apply_plan,
    compile_rules,
    detect_host_network,
    execution_steps,
    query_default_route,
    verify_firewall,
)
from ccbox.firewall.resolver import DEFAULT_PROVIDERS, resolve_allow_set
from ccbox.logging import CLI_FORMAT, configure_logging
from ccbox.mounts import CONTAINER_DOMAINS_FILE


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FATAL = 3


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m ccbox.firewall",
        description="Restrict container egress to the domain allow-list.",
    )
    parser.add_argument(
        "--domains",
        type=Path,
        default=Path(CONTAINER_DOMAINS_FILE),
        help=f"Allow-list file (default: {CONTAINER_DOMAINS_FILE})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the compiled commands instead of applying them",
    )
    parser.add_argument(
        "--no-providers",
        action="store_true",
        help="Do not fetch trusted provider ranges",
    )
    parser.add_argument(
        "--no-verify",
        action="store_true",
        help="Skip the connectivity checks after applying",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Initialize the firewall.

    Returns:
        Exit code.
    """
    args = _parse_args(argv)
    configure_logging(
        level=logging.DEBUG if args.debug else logging.INFO,
        format_string=CLI_FORMAT,
    )

    if not args.dry_run and os.geteuid() != 0:
        logger.error("Firewall initialization must run as root")
        return EXIT_USAGE

    if not args.domains.is_file():
        logger.error("Domains file not found: %s", args.domains)
        return EXIT_USAGE

    try:
        entries = load_allowlist(args.domains)
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_USAGE

    logger.info("Initializing firewall (%d allow-list entries)", len(entries))
    providers = () if args.no_providers else DEFAULT_PROVIDERS
    result = resolve_allow_set(entries, providers)
    host_network = detect_host_network(query_default_route())
    plan = compile_rules(result.networks, host_network)

    if args.dry_run:
        for step in execution_steps(plan):
            print(" ".join(step.argv))
            if step.stdin:
                for line in step.stdin.splitlines():
                    print(f"    {line}")
        return EXIT_OK

    try:
        apply_plan(plan)
    except FirewallFatalError as e:
        logger.error("%s", e)
        return EXIT_FATAL

    if not args.no_verify:
        verify_firewall()

    logger.info(
        "Firewall initialization complete: %d allow-set entries",
        len(plan.allow_set),
    )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
