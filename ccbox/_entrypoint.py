# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container entrypoint generation.

The entrypoint is generated in code rather than read from an external
file.  It initializes the firewall when the launcher requested it and
then replaces itself with the agent.
"""

from __future__ import annotations


#: Exit status of the entrypoint when firewall initialization fails.
FIREWALL_EXIT_CODE = 3

# Changes to this string change the local image content hash.
ENTRYPOINT_SCRIPT = f"""\
#!/usr/bin/env bash
set -euo pipefail

# Allow Claude to run as root in sandbox environment
export IS_SANDBOX=1

# Restrict egress before the agent starts
if [ "${{CCBOX_FIREWALL:-0}}" = "1" ]; then
    if ! python3 -m ccbox.firewall; then
        echo "ccbox: error: firewall initialization failed" >&2
        exit {FIREWALL_EXIT_CODE}
    fi
fi

# Run Claude Code with all arguments passed through
exec claude "$@"
"""


def get_entrypoint_content() -> bytes:
    """Get the entrypoint script content as bytes.

    Returns:
        UTF-8 encoded entrypoint script.
    """
    return ENTRYPOINT_SCRIPT.encode("utf-8")
