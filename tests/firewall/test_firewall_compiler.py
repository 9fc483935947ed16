# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for ccbox/firewall/compiler.py."""

import shlex
import subprocess
from unittest.mock import MagicMock, patch

import httpx
import pytest

from ccbox.firewall.compiler import (
    ATOMIC_STAGES,
    FirewallFatalError,
    FirewallPlan,
    Stage,
    apply_plan,
    compile_rules,
    detect_host_network,
    execution_steps,
    is_fatal,
    run_command,
    verify_firewall,
)


ALLOW = ["160.79.104.10/32", "140.82.112.0/20", "151.101.0.223"]


def _rendered(plan: FirewallPlan, stage: Stage) -> list[str]:
    return [shlex.join(rule.argv) for rule in plan.for_stage(stage)]


class RecordingRunner:
    """Command runner that records calls and fails on request."""

    def __init__(self, fail_on: str | None = None) -> None:
        self.calls: list[tuple[list[str], str | None]] = []
        self.fail_on = fail_on

    def __call__(self, argv: list[str], stdin: str | None) -> None:
        self.calls.append((argv, stdin))
        if self.fail_on is not None and self.fail_on in " ".join(argv):
            raise subprocess.CalledProcessError(
                1, argv, stderr="iptables: No chain/target/match by that name."
            )


class FilterTableModel:
    """Command runner that tracks the filter table like iptables does.

    ``-F`` clears rules but keeps chain policies.  Every command records
    whether it ran while a chain dropped by default without the loopback
    and established-connection exceptions in place.
    """

    EXCEPTIONS = (
        "-o lo -j ACCEPT",
        "-m conntrack --ctstate ESTABLISHED,RELATED -j ACCEPT",
    )

    def __init__(self) -> None:
        self.policies = dict.fromkeys(("INPUT", "FORWARD", "OUTPUT"), "ACCEPT")
        self.rules: dict[str, list[str]] = {"INPUT": [], "OUTPUT": []}
        self.unprotected: list[str] = []

    def _protected(self) -> bool:
        if self.policies["OUTPUT"] != "DROP":
            return True
        return all(e in self.rules["OUTPUT"] for e in self.EXCEPTIONS)

    def __call__(self, argv: list[str], stdin: str | None) -> None:
        if not self._protected():
            self.unprotected.append(" ".join(argv))
        if argv[0] == "iptables-restore":
            assert stdin is not None
            for line in stdin.splitlines():
                if line.startswith(":"):
                    chain, policy = line[1:].split()[:2]
                    self.policies[chain] = policy
                elif line.startswith("-A "):
                    self._append(line.split()[1:])
        elif argv[0] == "iptables" and argv[1] != "-t":
            if argv[1] == "-P":
                self.policies[argv[2]] = argv[3]
            elif argv[1] == "-F":
                for chain_rules in self.rules.values():
                    chain_rules.clear()
            elif argv[1] == "-A":
                self._append(argv[2:])

    def _append(self, args: list[str]) -> None:
        chain, spec = args[0], " ".join(args[1:])
        self.rules.setdefault(chain, []).append(spec)


class TestCompileRules:
    """Tests for compile_rules."""

    def test_stage_order(self) -> None:
        """Stages appear in their fixed order."""
        plan = compile_rules(ALLOW, "10.88.0.0/24")
        assert plan.stages == list(Stage)
        stage_values = [rule.stage for rule in plan.rules]
        assert stage_values == sorted(stage_values)

    def test_without_host_network(self) -> None:
        plan = compile_rules(ALLOW)
        assert Stage.HOST_NETWORK not in plan.stages
        assert plan.host_network is None

    def test_flush_all_tables(self) -> None:
        """Policies are reset before the tables are flushed."""
        plan = compile_rules(ALLOW)
        rendered = _rendered(plan, Stage.FLUSH)
        assert rendered == [
            "iptables -P INPUT ACCEPT",
            "iptables -P FORWARD ACCEPT",
            "iptables -P OUTPUT ACCEPT",
            "iptables -F",
            "iptables -X",
            "iptables -t nat -F",
            "iptables -t nat -X",
            "iptables -t mangle -F",
            "iptables -t mangle -X",
        ]

    def test_allow_set_script(self) -> None:
        """The ipset is created idempotently and repopulated."""
        plan = compile_rules(ALLOW)
        [rule] = plan.for_stage(Stage.ALLOW_SET)
        assert rule.argv == ("ipset", "restore", "-exist")
        assert rule.stdin == (
            "create ccbox-allow hash:net family inet -exist\n"
            "flush ccbox-allow\n"
            "add ccbox-allow 140.82.112.0/20 -exist\n"
            "add ccbox-allow 151.101.0.223/32 -exist\n"
            "add ccbox-allow 160.79.104.10/32 -exist\n"
        )
        assert plan.allow_set == (
            "140.82.112.0/20",
            "151.101.0.223/32",
            "160.79.104.10/32",
        )

    def test_deterministic(self) -> None:
        """Input order does not affect the plan."""
        assert compile_rules(ALLOW) == compile_rules(list(reversed(ALLOW)))

    def test_default_deny_and_exceptions(self) -> None:
        plan = compile_rules(ALLOW)
        assert _rendered(plan, Stage.DEFAULT_DENY) == [
            "iptables -P INPUT DROP",
            "iptables -P FORWARD DROP",
            "iptables -P OUTPUT DROP",
        ]
        assert _rendered(plan, Stage.LOOPBACK) == [
            "iptables -A INPUT -i lo -j ACCEPT",
            "iptables -A OUTPUT -o lo -j ACCEPT",
        ]
        assert len(plan.for_stage(Stage.ESTABLISHED)) == 2

    def test_egress_rules(self) -> None:
        plan = compile_rules(ALLOW, "10.88.0.5/24", set_name="custom")
        assert _rendered(plan, Stage.DNS) == [
            "iptables -A OUTPUT -p udp --dport 53 -j ACCEPT",
            "iptables -A OUTPUT -p tcp --dport 53 -j ACCEPT",
        ]
        assert _rendered(plan, Stage.HOST_NETWORK)[0] == (
            "iptables -A OUTPUT -d 10.88.0.0/24 -j ACCEPT"
        )
        assert _rendered(plan, Stage.ALLOW_EGRESS)[0] == (
            "iptables -A OUTPUT -m set --match-set custom dst -j ACCEPT"
        )
        assert _rendered(plan, Stage.REJECT_REST)[0] == (
            "iptables -A OUTPUT -j REJECT --reject-with icmp-net-unreachable"
        )

    def test_ipv6_skipped(self) -> None:
        plan = compile_rules(["2001:db8::/32", "192.0.2.0/24"])
        assert plan.allow_set == ("192.0.2.0/24",)

    def test_empty_allow_set(self) -> None:
        """An empty allow set still denies by default."""
        plan = compile_rules([])
        assert plan.allow_set == ()
        assert Stage.DEFAULT_DENY in plan.stages

    def test_invalid_network(self) -> None:
        with pytest.raises(ValueError):
            compile_rules(["not-an-ip"])

    def test_restore_script(self) -> None:
        """Policies and exceptions form one iptables-restore transaction."""
        script = compile_rules(ALLOW).restore_script()
        assert script == (
            "*filter\n"
            ":INPUT DROP [0:0]\n"
            ":FORWARD DROP [0:0]\n"
            ":OUTPUT DROP [0:0]\n"
            "-A INPUT -i lo -j ACCEPT\n"
            "-A OUTPUT -o lo -j ACCEPT\n"
            "-A INPUT -m conntrack --ctstate ESTABLISHED,RELATED -j ACCEPT\n"
            "-A OUTPUT -m conntrack --ctstate ESTABLISHED,RELATED -j ACCEPT\n"
            "COMMIT\n"
        )


class TestFatalStages:
    def test_fatal(self) -> None:
        assert [s for s in Stage if is_fatal(s)] == [
            Stage.FLUSH,
            Stage.ALLOW_SET,
            Stage.DEFAULT_DENY,
            Stage.LOOPBACK,
            Stage.ESTABLISHED,
        ]

    def test_atomic_stages_are_fatal(self) -> None:
        assert all(is_fatal(s) for s in ATOMIC_STAGES)


class TestExecutionSteps:
    """Tests for execution_steps."""

    def test_atomic_stages_batched(self) -> None:
        plan = compile_rules(ALLOW, "10.88.0.0/24")
        steps = execution_steps(plan)

        restore = [s for s in steps if s.argv[0] == "iptables-restore"]
        assert len(restore) == 1
        assert restore[0].argv == ("iptables-restore", "--noflush")
        assert restore[0].stdin == plan.restore_script()
        assert restore[0].fatal
        # 3 policy + 6 flush + ipset + restore + 2 dns + host + allow
        # + reject
        assert len(steps) == 16

    def test_batch_follows_allow_set(self) -> None:
        steps = execution_steps(compile_rules(ALLOW))
        argv0 = [s.argv[0] for s in steps]
        assert argv0.index("iptables-restore") == argv0.index("ipset") + 1

    def test_fatal_flags(self) -> None:
        steps = execution_steps(compile_rules(ALLOW))
        assert all(s.fatal for s in steps[:11])
        assert not any(s.fatal for s in steps[11:])


class TestApplyPlan:
    """Tests for apply_plan."""

    def test_applies_in_order(self) -> None:
        plan = compile_rules(ALLOW)
        runner = RecordingRunner()

        assert apply_plan(plan, runner) == 0

        assert [tuple(argv) for argv, _ in runner.calls] == [
            s.argv for s in execution_steps(plan)
        ]

    def test_idempotent(self) -> None:
        """Re-applying issues exactly the same commands."""
        plan = compile_rules(ALLOW)
        first, second = RecordingRunner(), RecordingRunner()
        apply_plan(plan, first)
        apply_plan(plan, second)
        assert first.calls == second.calls

    def test_reapply_never_drops_without_exceptions(self) -> None:
        """A second run resets the previous DROP policies before it
        flushes the exception rules."""
        plan = compile_rules(ALLOW, "10.88.0.0/24")
        table = FilterTableModel()

        apply_plan(plan, table)
        first = (
            dict(table.policies),
            {chain: list(rules) for chain, rules in table.rules.items()},
        )
        apply_plan(plan, table)

        assert table.unprotected == []
        assert table.policies["OUTPUT"] == "DROP"
        assert (table.policies, table.rules) == first

    def test_failed_reapply_leaves_no_bare_drop(self) -> None:
        """A fatal failure in the flush stage of a second run does not
        leave DROP in force without the exception rules."""
        plan = compile_rules(ALLOW)
        table = FilterTableModel()
        apply_plan(plan, table)

        def failing(argv: list[str], stdin: str | None) -> None:
            table(argv, stdin)
            if argv[1:] == ["-t", "nat", "-F"]:
                raise subprocess.CalledProcessError(1, argv)

        with pytest.raises(FirewallFatalError):
            apply_plan(plan, failing)

        assert table.policies["OUTPUT"] == "ACCEPT"
        assert table.unprotected == []

    def test_fatal_failure_stops(self) -> None:
        """A failed atomic stage aborts before any egress rule."""
        runner = RecordingRunner(fail_on="iptables-restore")

        with pytest.raises(FirewallFatalError, match="DEFAULT_DENY"):
            apply_plan(compile_rules(ALLOW), runner)

        assert runner.calls[-1][0][0] == "iptables-restore"

    def test_flush_failure_fatal(self) -> None:
        runner = RecordingRunner(fail_on="-t mangle -F")
        with pytest.raises(FirewallFatalError, match="No chain"):
            apply_plan(compile_rules(ALLOW), runner)

    def test_non_fatal_failure_continues(self) -> None:
        """A failed DNS rule is counted and the rest still applies."""
        runner = RecordingRunner(fail_on="--dport 53")

        assert apply_plan(compile_rules(ALLOW), runner) == 2

        last = runner.calls[-1][0]
        assert last[-1] == "icmp-net-unreachable"

    def test_missing_binary(self) -> None:
        def runner(argv: list[str], stdin: str | None) -> None:
            raise FileNotFoundError(argv[0])

        with pytest.raises(FirewallFatalError):
            apply_plan(compile_rules(ALLOW), runner)

    @patch("ccbox.firewall.compiler.subprocess.run")
    def test_run_command(self, mock_run: MagicMock) -> None:
        run_command(["ipset", "restore", "-exist"], "flush x\n")
        mock_run.assert_called_once_with(
            ["ipset", "restore", "-exist"],
            input="flush x\n",
            check=True,
            capture_output=True,
            text=True,
        )


class TestDetectHostNetwork:
    def test_default_route(self) -> None:
        output = "default via 10.88.0.1 dev eth0 proto static metric 100\n"
        assert detect_host_network(output) == "10.88.0.0/24"

    def test_no_default_route(self) -> None:
        assert detect_host_network("10.0.0.0/8 dev eth0\n") is None
        assert detect_host_network("") is None

    def test_ipv6_gateway(self) -> None:
        assert detect_host_network("default via fe80::1 dev eth0\n") is None

    def test_malformed(self) -> None:
        assert detect_host_network("default via\n") is None
        assert detect_host_network("default via nowhere dev x\n") is None


class TestVerifyFirewall:
    """Tests for verify_firewall."""

    @patch("ccbox.firewall.compiler.httpx.Client")
    def test_blocked_and_allowed(self, mock_client_cls: MagicMock) -> None:
        client = mock_client_cls.return_value.__enter__.return_value

        def head(url: str) -> MagicMock:
            if url == "https://example.com":
                raise httpx.ConnectError("unreachable")
            return MagicMock(status_code=404)

        client.head.side_effect = head

        report = verify_firewall()

        assert not report.blocked_reachable
        assert report.allowed_reachable

    @patch("ccbox.firewall.compiler.httpx.Client")
    def test_leak_detected(
        self, mock_client_cls: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Reaching the blocked URL fails verification with a warning."""
        with caplog.at_level("WARNING", logger="ccbox.firewall.compiler"):
            report = verify_firewall(timeout=1.0)
        assert report.blocked_reachable
        assert "should be blocked" in caplog.text
