# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Logging configuration with credential redaction.

The launcher forwards provider credentials (API keys, cloud tokens) into
the container environment and logs the runtime commands it executes.
Values registered with ``SecretFilter.register_secret()`` are replaced
with ``[REDACTED]`` in every record that passes through the handler
installed by ``configure_logging()``.

Usage:
    # In entry points (CLI, firewall bootstrap)
    from ccbox.logging import configure_logging
    configure_logging(level=logging.INFO)

    # In library modules
    import logging
    logger = logging.getLogger(__name__)
    logger.info("Starting container: %s", name)
"""

import logging
import re
from typing import ClassVar


#: Compact format used by the interactive launcher and firewall bootstrap.
CLI_FORMAT = "[%(levelname)s] %(message)s"


class SecretFilter(logging.Filter):
    """Logging filter that redacts registered secrets from log output.

    Example:
        SecretFilter.register_secret("sk-ant-12345")
        logger.info("env: %s", "ANTHROPIC_API_KEY=sk-ant-12345")
        # Output: "env: ANTHROPIC_API_KEY=[REDACTED]"
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact registered secrets in the record.

        Args:
            record: The log record to filter.

        Returns:
            Always True (records are modified, never suppressed).
        """
        if self._pattern is not None:
            record.msg = self._pattern.sub("[REDACTED]", str(record.msg))
            if record.args:
                record.args = tuple(
                    self._pattern.sub("[REDACTED]", str(arg))
                    if isinstance(arg, str)
                    else arg
                    for arg in record.args
                )
        return True

    @classmethod
    def register_secret(cls, secret: str) -> None:
        """Register a secret to be redacted from all log output.

        Args:
            secret: The secret string to redact. Empty strings are ignored.
        """
        if secret:
            cls._secrets.add(secret)
            cls._rebuild_pattern()

    @classmethod
    def clear_secrets(cls) -> None:
        """Clear all registered secrets. Primarily for testing."""
        cls._secrets.clear()
        cls._pattern = None

    @classmethod
    def _rebuild_pattern(cls) -> None:
        # Longest first so overlapping secrets are fully masked.
        if cls._secrets:
            ordered = sorted(cls._secrets, key=len, reverse=True)
            escaped = [re.escape(s) for s in ordered]
            cls._pattern = re.compile("|".join(escaped))
        else:
            cls._pattern = None


def configure_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    add_secret_filter: bool = True,
) -> None:
    """Configure the root logger.

    Installs a single stderr ``StreamHandler``, replacing any handlers set
    up earlier, so repeated calls do not duplicate output.

    Args:
        level: The logging level (e.g., logging.INFO, logging.DEBUG).
        format_string: Custom format string. If None, uses default format.
        add_secret_filter: Whether to add the SecretFilter to redact secrets.
    """
    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string))

    if add_secret_filter:
        handler.addFilter(SecretFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)


def redact_command(cmd: list[str]) -> list[str]:
    """Return a copy of a runtime command with ``-e`` values masked.

    ``["podman", "create", "-e", "KEY=value"]`` becomes
    ``["podman", "create", "-e", "KEY=***"]``.  Container environment
    values are treated as secrets regardless of registration.

    Args:
        cmd: Command line as passed to ``subprocess``.

    Returns:
        Command line safe to log.
    """
    redacted: list[str] = []
    skip_next = False
    for i, arg in enumerate(cmd):
        if skip_next:
            skip_next = False
            continue
        if arg == "-e" and i + 1 < len(cmd) and "=" in cmd[i + 1]:
            var_name = cmd[i + 1].split("=", 1)[0]
            redacted.extend(["-e", f"{var_name}=***"])
            skip_next = True
            continue
        redacted.append(arg)
    return redacted
