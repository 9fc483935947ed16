# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Firewall rule compilation and application.

``compile_rules()`` turns a resolved allow set into a ``FirewallPlan``: an
ordered sequence of ``RuleSpec`` commands tagged with the stage they
belong to.  Compilation is pure; ``apply_plan()`` executes the plan
through an injectable command runner.

Stages, in order::

    1 FLUSH          policy ACCEPT, then iptables -F / -X on filter,
                     nat, mangle
    2 ALLOW_SET      ipset restore (create, flush, repopulate)
    3 DEFAULT_DENY   policy DROP on INPUT, FORWARD, OUTPUT
    4 LOOPBACK       accept lo in both directions
    5 ESTABLISHED    accept ESTABLISHED,RELATED in both directions
    6 DNS            accept port 53 egress (udp, tcp)
    7 HOST_NETWORK   accept egress to the container host bridge
    8 ALLOW_EGRESS   accept egress matching the ipset
    9 REJECT_REST    reject other egress with icmp-net-unreachable

Stages 3-5 are committed as a single ``iptables-restore --noflush``
transaction, so the DROP policies never take effect without the loopback
and established-connection exceptions.  Failures in stages 1-5 are fatal;
failures in stages 6-9 are logged and application continues.
"""

from __future__ import annotations

import ipaddress
import logging
import shlex
import subprocess
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import IntEnum

import httpx


logger = logging.getLogger(__name__)

DEFAULT_SET_NAME = "ccbox-allow"
DEFAULT_BLOCKED_URL = "https://example.com"
DEFAULT_ALLOWED_URL = "https://api.anthropic.com"
DEFAULT_VERIFY_TIMEOUT = 5.0

#: Runs a command with optional stdin; raises on failure.
CommandRunner = Callable[[list[str], str | None], None]


class FirewallFatalError(Exception):
    """A firewall stage that must succeed failed."""


class Stage(IntEnum):
    FLUSH = 1
    ALLOW_SET = 2
    DEFAULT_DENY = 3
    LOOPBACK = 4
    ESTABLISHED = 5
    DNS = 6
    HOST_NETWORK = 7
    ALLOW_EGRESS = 8
    REJECT_REST = 9


#: Stages committed together in one iptables-restore transaction.
ATOMIC_STAGES = frozenset(
    {Stage.DEFAULT_DENY, Stage.LOOPBACK, Stage.ESTABLISHED}
)


def is_fatal(stage: Stage) -> bool:
    """Whether a failure in *stage* aborts firewall initialization."""
    return stage <= Stage.ESTABLISHED


@dataclass(frozen=True)
class RuleSpec:
    """One command of a firewall plan.

    Attributes:
        stage: The stage the command belongs to.
        argv: Command line.
        stdin: Input fed to the command (ipset/iptables-restore scripts).
    """

    stage: Stage
    argv: tuple[str, ...]
    stdin: str | None = None


@dataclass(frozen=True)
class FirewallPlan:
    """Compiled firewall rules.

    Attributes:
        rules: Commands in stage order.
        set_name: Name of the ipset holding the allow set.
        allow_set: IPv4 networks placed in the ipset.
        host_network: Host bridge range, if one was detected.
    """

    rules: tuple[RuleSpec, ...]
    set_name: str
    allow_set: tuple[str, ...]
    host_network: str | None = None

    @property
    def stages(self) -> list[Stage]:
        """Distinct stages in plan order."""
        return list(dict.fromkeys(rule.stage for rule in self.rules))

    def for_stage(self, stage: Stage) -> list[RuleSpec]:
        return [rule for rule in self.rules if rule.stage == stage]

    def restore_script(self) -> str:
        """The ``iptables-restore`` transaction for the atomic stages."""
        policies: list[str] = []
        appends: list[str] = []
        for stage in sorted(ATOMIC_STAGES):
            for rule in self.for_stage(stage):
                args = list(rule.argv[1:])
                if args[0] == "-P":
                    policies.append(f":{args[1]} {args[2]} [0:0]")
                else:
                    appends.append(shlex.join(args))
        return "\n".join(["*filter", *policies, *appends, "COMMIT"]) + "\n"


@dataclass(frozen=True)
class ExecutionStep:
    """A command as issued by ``apply_plan``.

    Attributes:
        stages: Stages the command covers.
        argv: Command line.
        stdin: Command input.
        fatal: Whether failure aborts application.
    """

    stages: tuple[Stage, ...]
    argv: tuple[str, ...]
    stdin: str | None = None
    fatal: bool = False


def _iptables(stage: Stage, *args: str) -> RuleSpec:
    return RuleSpec(stage, ("iptables", *args))


def _ipset_script(set_name: str, networks: Iterable[str]) -> str:
    lines = [
        f"create {set_name} hash:net family inet -exist",
        f"flush {set_name}",
    ]
    lines.extend(f"add {set_name} {network} -exist" for network in networks)
    return "\n".join(lines) + "\n"


def _sorted_ipv4(networks: Iterable[str]) -> tuple[str, ...]:
    parsed = set()
    for value in networks:
        network = ipaddress.ip_network(value, strict=False)
        if network.version != 4:
            logger.warning("Skipping non-IPv4 network %s", value)
            continue
        parsed.add(network)
    return tuple(str(n) for n in sorted(parsed))


def compile_rules(
    allow_set: Iterable[str],
    host_network: str | None = None,
    *,
    set_name: str = DEFAULT_SET_NAME,
) -> FirewallPlan:
    """Compile an allow set into an ordered firewall plan.

    Args:
        allow_set: IPv4 networks (CIDR or bare addresses).
        host_network: Container host bridge range to admit, if any.
        set_name: ipset name.

    Returns:
        The plan.  Identical inputs always produce identical plans.

    Raises:
        ValueError: If an allow-set entry or the host network is not an
            IP network.
    """
    networks = _sorted_ipv4(allow_set)
    rules: list[RuleSpec] = []

    # -F keeps chain policies
    for chain in ("INPUT", "FORWARD", "OUTPUT"):
        rules.append(_iptables(Stage.FLUSH, "-P", chain, "ACCEPT"))
    for table in ("filter", "nat", "mangle"):
        prefix = () if table == "filter" else ("-t", table)
        rules.append(_iptables(Stage.FLUSH, *prefix, "-F"))
        rules.append(_iptables(Stage.FLUSH, *prefix, "-X"))

    rules.append(
        RuleSpec(
            Stage.ALLOW_SET,
            ("ipset", "restore", "-exist"),
            stdin=_ipset_script(set_name, networks),
        )
    )

    for chain in ("INPUT", "FORWARD", "OUTPUT"):
        rules.append(_iptables(Stage.DEFAULT_DENY, "-P", chain, "DROP"))

    rules.append(
        _iptables(Stage.LOOPBACK, "-A", "INPUT", "-i", "lo", "-j", "ACCEPT")
    )
    rules.append(
        _iptables(Stage.LOOPBACK, "-A", "OUTPUT", "-o", "lo", "-j", "ACCEPT")
    )

    for chain in ("INPUT", "OUTPUT"):
        rules.append(
            _iptables(
                Stage.ESTABLISHED,
                "-A",
                chain,
                "-m",
                "conntrack",
                "--ctstate",
                "ESTABLISHED,RELATED",
                "-j",
                "ACCEPT",
            )
        )

    for proto in ("udp", "tcp"):
        rules.append(
            _iptables(
                Stage.DNS,
                "-A",
                "OUTPUT",
                "-p",
                proto,
                "--dport",
                "53",
                "-j",
                "ACCEPT",
            )
        )

    if host_network:
        cidr = str(ipaddress.ip_network(host_network, strict=False))
        rules.append(
            _iptables(
                Stage.HOST_NETWORK, "-A", "OUTPUT", "-d", cidr, "-j", "ACCEPT"
            )
        )

    rules.append(
        _iptables(
            Stage.ALLOW_EGRESS,
            "-A",
            "OUTPUT",
            "-m",
            "set",
            "--match-set",
            set_name,
            "dst",
            "-j",
            "ACCEPT",
        )
    )

    rules.append(
        _iptables(
            Stage.REJECT_REST,
            "-A",
            "OUTPUT",
            "-j",
            "REJECT",
            "--reject-with",
            "icmp-net-unreachable",
        )
    )

    return FirewallPlan(
        rules=tuple(rules),
        set_name=set_name,
        allow_set=networks,
        host_network=host_network,
    )


def execution_steps(plan: FirewallPlan) -> list[ExecutionStep]:
    """The command sequence ``apply_plan`` issues for *plan*."""
    steps: list[ExecutionStep] = []
    batched = False
    for rule in plan.rules:
        if rule.stage in ATOMIC_STAGES:
            if not batched:
                steps.append(
                    ExecutionStep(
                        stages=tuple(sorted(ATOMIC_STAGES)),
                        argv=("iptables-restore", "--noflush"),
                        stdin=plan.restore_script(),
                        fatal=True,
                    )
                )
                batched = True
            continue
        steps.append(
            ExecutionStep(
                stages=(rule.stage,),
                argv=rule.argv,
                stdin=rule.stdin,
                fatal=is_fatal(rule.stage),
            )
        )
    return steps


def run_command(argv: list[str], stdin: str | None = None) -> None:
    """Run a firewall command.

    Raises:
        subprocess.CalledProcessError: If the command exits non-zero.
        OSError: If the command cannot be executed.
    """
    subprocess.run(
        argv, input=stdin, check=True, capture_output=True, text=True
    )


def apply_plan(plan: FirewallPlan, runner: CommandRunner = run_command) -> int:
    """Apply a firewall plan.

    Args:
        plan: The compiled plan.
        runner: Executes one command; raises on failure.

    Returns:
        Number of non-fatal steps that failed.

    Raises:
        FirewallFatalError: If a step in stages 1-5 fails.
    """
    failures = 0
    for step in execution_steps(plan):
        label = "/".join(stage.name for stage in step.stages)
        logger.debug("Applying %s: %s", label, shlex.join(step.argv))
        try:
            runner(list(step.argv), step.stdin)
        except (subprocess.CalledProcessError, OSError) as e:
            detail = _error_detail(e)
            if step.fatal:
                raise FirewallFatalError(
                    f"Firewall stage {label} failed: {detail}"
                ) from e
            failures += 1
            logger.warning("Firewall stage %s failed: %s", label, detail)
    logger.info(
        "Firewall rules applied (%d allow-set entries, %d warning(s))",
        len(plan.allow_set),
        failures,
    )
    return failures


def _error_detail(error: Exception) -> str:
    if isinstance(error, subprocess.CalledProcessError):
        stderr = error.stderr.strip() if error.stderr else ""
        return stderr or f"exit status {error.returncode}"
    return str(error)


def detect_host_network(route_output: str) -> str | None:
    """Derive the host bridge range from ``ip route show default`` output.

    ``default via 10.88.0.1 dev eth0`` yields ``10.88.0.0/24``.

    Returns:
        The /24 around the default gateway, or None without a default
        IPv4 route.
    """
    for line in route_output.splitlines():
        tokens = line.split()
        if not tokens or tokens[0] != "default" or "via" not in tokens:
            continue
        index = tokens.index("via")
        if index + 1 >= len(tokens):
            continue
        try:
            gateway = ipaddress.ip_address(tokens[index + 1])
        except ValueError:
            continue
        if gateway.version != 4:
            continue
        network = ipaddress.ip_network(f"{gateway}/24", strict=False)
        logger.info("Detected host network: %s", network)
        return str(network)
    return None


def query_default_route() -> str:
    """Return ``ip route show default`` output, or "" if unavailable."""
    try:
        result = subprocess.run(
            ["ip", "route", "show", "default"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, OSError) as e:
        logger.warning("Could not read default route: %s", e)
        return ""
    return result.stdout


@dataclass(frozen=True)
class VerificationReport:
    """Result of probing the firewall.

    Attributes:
        blocked_url: URL expected to be unreachable.
        blocked_reachable: Whether it was reachable anyway.
        allowed_url: URL expected to be reachable.
        allowed_reachable: Whether it was reachable.
    """

    blocked_url: str
    blocked_reachable: bool
    allowed_url: str
    allowed_reachable: bool


def _is_reachable(url: str, timeout: float) -> bool:
    """Whether any HTTP response comes back from *url*."""
    try:
        with httpx.Client(timeout=timeout) as client:
            client.head(url)
    except httpx.HTTPError as e:
        logger.debug("Request to %s failed: %s", url, e)
        return False
    return True


def verify_firewall(
    blocked_url: str = DEFAULT_BLOCKED_URL,
    allowed_url: str = DEFAULT_ALLOWED_URL,
    timeout: float = DEFAULT_VERIFY_TIMEOUT,
) -> VerificationReport:
    """Check a URL that should be blocked and one that should not.

    Results are logged; nothing is raised.
    """
    blocked_reachable = _is_reachable(blocked_url, timeout)
    if blocked_reachable:
        logger.warning(
            "Firewall verification: %s should be blocked but is accessible",
            blocked_url,
        )
    else:
        logger.info(
            "Firewall verification: %s correctly blocked", blocked_url
        )

    allowed_reachable = _is_reachable(allowed_url, timeout)
    if allowed_reachable:
        logger.info("Firewall verification: %s accessible", allowed_url)
    else:
        logger.warning(
            "Firewall verification: %s not accessible", allowed_url
        )

    return VerificationReport(
        blocked_url=blocked_url,
        blocked_reachable=blocked_reachable,
        allowed_url=allowed_url,
        allowed_reachable=allowed_reachable,
    )
