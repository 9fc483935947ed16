# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Project identity and on-disk data layout.

A project is identified by its working directory.  The project key
combines a readable slug of the directory name with a short hash of the
normalized absolute path, so two checkouts named ``app`` in different
places never share data::

    /home/alice/src/My App  ->  my-app-3f2a9c01d4

Each project owns a data directory shared by all of its sessions::

    <data_dir>/projects/<project_key>/
    ├── claude-projects/   # conversation history (/root/.claude/projects)
    ├── todos/             # todo lists            (/root/.claude/todos)
    ├── tasks/             # task state            (/root/.claude/tasks)
    └── sessions.json      # session registry
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path


logger = logging.getLogger(__name__)

#: Length of the path digest embedded in project keys.
KEY_DIGEST_LENGTH = 10

_SLUG_INVALID = re.compile(r"[^a-z0-9_.]+")
_SLUG_MAX_LENGTH = 40

REGISTRY_FILE_NAME = "sessions.json"


def _slugify(name: str) -> str:
    slug = _SLUG_INVALID.sub("-", name.lower()).strip("-.")
    return slug[:_SLUG_MAX_LENGTH].rstrip("-.") or "root"


def normalize_project_path(path: Path) -> Path:
    """Return the absolute, symlink-free form of a working directory."""
    return Path(os.path.realpath(path.expanduser()))


def derive_project_key(path: Path) -> str:
    """Derive the project key for a working directory.

    Args:
        path: Working directory (relative paths resolve against cwd).

    Returns:
        Key of the form ``<slug>-<digest>``; only ``[a-z0-9_.-]``.
    """
    normalized = normalize_project_path(path)
    digest = hashlib.sha256(str(normalized).encode()).hexdigest()
    return f"{_slugify(normalized.name)}-{digest[:KEY_DIGEST_LENGTH]}"


@dataclass(frozen=True)
class Project:
    """A working directory and its persistent data location.

    Attributes:
        path: Normalized working directory.
        key: Project key derived from ``path``.
        data_dir: ``<data_root>/projects/<key>``.
    """

    path: Path
    key: str
    data_dir: Path

    @classmethod
    def from_path(cls, path: Path, data_root: Path) -> Project:
        """Build the project for a working directory."""
        normalized = normalize_project_path(path)
        key = derive_project_key(normalized)
        return cls(
            path=normalized,
            key=key,
            data_dir=project_data_dir(data_root, key),
        )

    @property
    def history_dir(self) -> Path:
        return self.data_dir / "claude-projects"

    @property
    def todos_dir(self) -> Path:
        return self.data_dir / "todos"

    @property
    def tasks_dir(self) -> Path:
        return self.data_dir / "tasks"

    def ensure_data_dirs(self) -> None:
        """Create the shared data directories if they do not exist."""
        for directory in (self.history_dir, self.todos_dir, self.tasks_dir):
            directory.mkdir(parents=True, exist_ok=True)
        logger.debug("Project data directory ready: %s", self.data_dir)


def project_data_dir(data_root: Path, key: str) -> Path:
    """Return the data directory for a project key."""
    return data_root / "projects" / key
