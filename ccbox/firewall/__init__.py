# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""In-container egress firewall.

Run as ``python -m ccbox.firewall`` inside the session container (as
root, with NET_ADMIN and NET_RAW) to restrict egress to the domain
allow-list.
"""

from ccbox.firewall.compiler import (
    FirewallFatalError,
    FirewallPlan,
    RuleSpec,
    Stage,
    VerificationReport,
    apply_plan,
    compile_rules,
    detect_host_network,
    verify_firewall,
)
from ccbox.firewall.resolver import (
    DEFAULT_PROVIDERS,
    ResolutionWarning,
    ResolveResult,
    TrustedProvider,
    resolve_allow_set,
)


__all__ = [
    "DEFAULT_PROVIDERS",
    "FirewallFatalError",
    "FirewallPlan",
    "ResolutionWarning",
    "ResolveResult",
    "RuleSpec",
    "Stage",
    "TrustedProvider",
    "VerificationReport",
    "apply_plan",
    "compile_rules",
    "detect_host_network",
    "resolve_allow_set",
    "verify_firewall",
]
