# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Idempotent ``.env`` loading for the launcher.

Provider credentials and toggles (``ANTHROPIC_API_KEY``,
``CLAUDE_CODE_USE_VERTEX``, ...) are commonly kept in
``~/.config/ccbox/.env``.  The file is loaded at most once per process and
never overrides variables already present in the environment.
"""

import logging
from pathlib import Path

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

_dotenv_loaded = False


def load_dotenv_once(env_path: Path) -> None:
    """Load a ``.env`` file once, if not already loaded.

    Only *env_path* is read.  The current directory is the sandboxed
    project, so a ``.env`` there is never loaded.

    Args:
        env_path: Path to the ``.env`` file; a missing file is skipped.
    """
    global _dotenv_loaded
    if _dotenv_loaded:
        return

    if env_path.exists():
        load_dotenv(env_path, override=False)
        logger.debug("Loaded .env from %s", env_path)
    else:
        logger.debug("No .env at %s", env_path)
    _dotenv_loaded = True


def reset_dotenv_state() -> None:
    """Reset the dotenv loaded state. For testing only."""
    global _dotenv_loaded
    _dotenv_loaded = False
