# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""ccbox CLI.

Usage::

    ccbox [options] [-- agent-args...]

Without a management option, ccbox launches a sandboxed agent session for
the current directory.  Everything after ``--`` is forwarded verbatim to
the agent.

Exit codes: 0 success, 1 configuration or filesystem error, 2 container
runtime or image build failure, 3 firewall failure, otherwise the
agent's exit status.
"""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import subprocess
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from pathlib import Path

from ccbox.allowlist import DEFAULT_DOMAINS, AllowDomain, serialize_allowlist
from ccbox.config import (
    ConfigError,
    LauncherConfig,
    get_config_dir,
    get_config_path,
)
from ccbox.image import ImageBuildError
from ccbox.logging import CLI_FORMAT, configure_logging
from ccbox.orchestrator import (
    EXIT_CONFIG,
    EXIT_OK,
    EXIT_RUNTIME,
    LaunchOrchestrator,
    LaunchRequest,
)
from ccbox.registry_lock import RegistryLockTimeout
from ccbox.runtime import ContainerRuntime, RuntimeStartError
from ccbox.session import DuplicateSessionError, Session, SessionRegistry


logger = logging.getLogger(__name__)

# Minimum runtime versions.  podman 4 added ``create --pull`` policies
# matching the configured names.
_MIN_VERSIONS: dict[str, tuple[int, ...]] = {
    "podman": (4, 0),
    "docker": (20, 10),
}

#: Exceptions that end a run with a one-line error, and their exit codes.
_ERROR_EXIT_CODES: tuple[tuple[type[BaseException], int], ...] = (
    (ConfigError, EXIT_CONFIG),
    (DuplicateSessionError, EXIT_CONFIG),
    (RegistryLockTimeout, EXIT_CONFIG),
    (RuntimeStartError, EXIT_RUNTIME),
    (ImageBuildError, EXIT_RUNTIME),
    (OSError, EXIT_CONFIG),
)


def _ccbox_version() -> str:
    try:
        return package_version("ccbox")
    except PackageNotFoundError:
        return "unknown"


def split_agent_args(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split ``argv`` at the first ``--`` into ccbox and agent arguments."""
    if "--" in argv:
        index = argv.index("--")
        return argv[:index], argv[index + 1 :]
    return argv, []


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ccbox",
        usage="ccbox [options] [-- agent-args...]",
        description="Run Claude Code in a sandboxed container.",
    )
    parser.add_argument(
        "--claude-version",
        metavar="VERSION",
        help="Agent version (default: pinned version file, else latest)",
    )
    parser.add_argument(
        "--local",
        action="store_true",
        help="Use the locally built image",
    )
    parser.add_argument(
        "--build",
        action="store_true",
        help="Build the local image before launching (implies --local)",
    )
    parser.add_argument(
        "--with-firewall",
        action="store_true",
        help="Restrict container egress to the domain allow-list",
    )
    parser.add_argument(
        "--no-clipboard",
        action="store_true",
        help="Do not mount display and clipboard sockets",
    )

    management = parser.add_mutually_exclusive_group()
    management.add_argument(
        "--list-sessions",
        action="store_true",
        help="List live sessions of the current project",
    )
    management.add_argument(
        "--stop",
        metavar="SESSION_ID",
        help="Stop a session of the current project",
    )
    management.add_argument(
        "--gc",
        action="store_true",
        help="Prune stale sessions in all projects",
    )
    management.add_argument(
        "--check",
        action="store_true",
        help="Verify configuration and the container runtime",
    )
    management.add_argument(
        "--init",
        action="store_true",
        help="Create stub configuration files",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"ccbox {_ccbox_version()}",
    )
    return parser


# ── Terminal colors ─────────────────────────────────────────────────


class _Style:
    """ANSI escape helpers.  All methods return plain text when color is off."""

    def __init__(self, color: bool) -> None:
        self._on = color

    def _wrap(self, code: str, text: str) -> str:
        if not self._on:
            return text
        return f"\033[{code}m{text}\033[0m"

    def bold(self, text: str) -> str:
        return self._wrap("1", text)

    def green(self, text: str) -> str:
        return self._wrap("32", text)

    def red(self, text: str) -> str:
        return self._wrap("31", text)


def _use_color() -> bool:
    if os.environ.get("NO_COLOR") or os.environ.get("TERM") == "dumb":
        return False
    return sys.stdout.isatty()


# ── Dependency checking ─────────────────────────────────────────────


def _parse_version(output: str) -> tuple[int, ...]:
    """Extract a numeric version tuple from command output.

    ``podman version 5.3.1`` yields ``(5, 3, 1)``.

    Raises:
        ValueError: If no version number is found.
    """
    for token in output.replace(",", " ").split():
        if token and token[0].isdigit():
            parts: list[int] = []
            for segment in token.split("."):
                digits = ""
                for ch in segment:
                    if not ch.isdigit():
                        break
                    digits += ch
                if digits:
                    parts.append(int(digits))
            if parts:
                return tuple(parts)
    raise ValueError(f"Cannot parse version from: {output!r}")


def _fmt_version(v: tuple[int, ...]) -> str:
    return ".".join(str(p) for p in v)


def _check_dependency(
    name: str,
    version_cmd: list[str],
    min_version: tuple[int, ...] | None = None,
) -> tuple[bool, str]:
    """Check a dependency is installed and meets version requirements.

    Returns:
        ``(ok, detail)`` with a human-readable status line.
    """
    path = shutil.which(version_cmd[0])
    if path is None:
        return False, f"{name}: not found"

    try:
        result = subprocess.run(
            version_cmd,
            capture_output=True,
            text=True,
            timeout=10,
        )
        raw = result.stdout.strip() or result.stderr.strip()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False, f"{name}: found at {path} but failed to get version"

    try:
        found = _parse_version(raw)
    except ValueError:
        return False, f"{name}: cannot parse version from: {raw}"

    if min_version and found < min_version:
        got = _fmt_version(found)
        want = _fmt_version(min_version)
        return False, f"{name}: {got} (need >= {want})"

    if min_version:
        return True, (
            f"{name}: {_fmt_version(found)} (>= {_fmt_version(min_version)})"
        )
    return True, f"{name}: {_fmt_version(found)}"


# ── Commands ────────────────────────────────────────────────────────


def cmd_check(config: LauncherConfig) -> int:
    """Report configuration and runtime readiness.

    Returns:
        0 when every check passes, 1 otherwise.
    """
    s = _Style(_use_color())
    print(s.bold(f"ccbox {_ccbox_version()}"))
    print()

    ok = True
    config_path = get_config_path()
    if config_path.exists():
        print(f"  {s.green('✓')} config: {config_path}")
    else:
        print(f"  {s.green('✓')} config: defaults ({config_path} not found)")

    command = config.container_command
    name = Path(command).name
    dep_ok, detail = _check_dependency(
        name, [command, "--version"], _MIN_VERSIONS.get(name)
    )
    mark = s.green("✓") if dep_ok else s.red("✗")
    print(f"  {mark} {detail}")
    ok = ok and dep_ok

    for label, path in (
        ("packages", config.packages_file),
        ("firewall domains", config.domains_file),
        ("pinned version", config.version_file),
    ):
        state = "present" if path and path.exists() else "not found"
        print(f"  {s.green('✓')} {label}: {path} ({state})")

    print(f"  {s.green('✓')} data: {config.data_dir}")
    return EXIT_OK if ok else EXIT_CONFIG


def cmd_init() -> int:
    """Create stub configuration files that do not exist yet."""
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    domains = tuple(AllowDomain(host) for host in DEFAULT_DOMAINS)
    stubs = {
        get_config_path(): _STUB_CONFIG,
        config_dir / "packages.txt": _STUB_PACKAGES,
        config_dir / "firewall-domains.txt": _STUB_DOMAINS_HEADER
        + serialize_allowlist(domains),
        config_dir / "version": _STUB_VERSION,
    }
    for path, content in stubs.items():
        if path.exists():
            print(f"Already exists: {path}")
            continue
        path.write_text(content)
        print(f"Created: {path}")
    return EXIT_OK


def _print_sessions(sessions: list[Session]) -> None:
    if not sessions:
        print("No running sessions for this project.")
        return
    print(f"{'SESSION':<34} {'STATUS':<9} {'STARTED':<26} CONTAINER")
    for session in sessions:
        print(
            f"{session.session_id:<34} {session.status.value:<9} "
            f"{session.started_at:<26} {session.container_name}"
        )


def run(argv: list[str]) -> int:
    """Run ccbox with ``argv`` (without the program name).

    Returns:
        Exit code.
    """
    own_args, agent_args = split_agent_args(argv)
    args = build_parser().parse_args(own_args)

    configure_logging(
        level=logging.DEBUG if args.debug else logging.INFO,
        format_string=None if args.debug else CLI_FORMAT,
    )

    if args.init:
        return cmd_init()

    try:
        config = LauncherConfig.from_yaml()
        if args.check:
            return cmd_check(config)

        runtime = ContainerRuntime(config.container_command)
        registry = SessionRegistry(
            config.data_dir,
            runtime.running_containers,
            lock_timeout=config.lock_timeout,
        )
        orchestrator = LaunchOrchestrator(config, runtime, registry)
        workdir = Path.cwd()

        if args.list_sessions:
            _print_sessions(orchestrator.list_sessions(workdir))
            return EXIT_OK
        if args.stop:
            session = orchestrator.stop_session(workdir, args.stop)
            print(f"Stopped session {session.session_id}")
            return EXIT_OK
        if args.gc:
            removed = orchestrator.gc()
            print(f"Removed {removed} stale session(s)")
            return EXIT_OK

        request = LaunchRequest(
            workdir=workdir,
            claude_version=args.claude_version,
            local=args.local or args.build,
            build=args.build,
            firewall=args.with_firewall,
            no_clipboard=args.no_clipboard,
            agent_args=tuple(agent_args),
            tty=sys.stdin.isatty() and sys.stdout.isatty(),
        )
        outcome = orchestrator.launch(request)
        return outcome.exit_code
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        for exc_type, code in _ERROR_EXIT_CODES:
            if isinstance(e, exc_type):
                if args.debug:
                    logger.exception("ccbox failed")
                print(f"ccbox: error: {e}", file=sys.stderr)
                return code
        raise


def cli() -> None:
    """Entry point for the ``ccbox`` console script."""
    sys.exit(run(sys.argv[1:]))


#: Stub configuration written by ``ccbox --init``.
_STUB_CONFIG = """\
# ccbox configuration
#
# Every setting is optional; the values below are the defaults.
# Values may reference environment variables: data_dir: !env CCBOX_DATA

# container_command: podman
# image_repository: ghcr.io/ccbox/ccbox
# pull_policy: missing          # always | missing | never | newer
# base_image: node:20-bookworm-slim
# selinux_relabel: false
# lock_timeout: 10
# passthrough_env:
#   - GH_TOKEN
"""

_STUB_PACKAGES = """\
# OS packages installed into locally built images (ccbox --build),
# one per line.
"""

_STUB_DOMAINS_HEADER = """\
# Domains (or IPv4 CIDR ranges) reachable with --with-firewall,
# one per line.  GitHub ranges are added automatically.
"""

_STUB_VERSION = """\
# Pinned Claude Code version, e.g. 1.0.30.  Without an entry ccbox
# uses the latest published version.
"""
