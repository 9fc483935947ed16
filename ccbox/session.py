# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Session records and the per-project session registry.

Each project keeps its active and recent sessions in
``<data_dir>/projects/<project_key>/sessions.json``.  Independent launcher
processes share the file, so every mutation (register, unregister, status
update, pruning) runs under an exclusive ``RegistryLock`` and replaces the
file atomically.  Lock-free readers (``snapshot()``, ``get()``) may see a
slightly stale view; anything acted upon must be re-validated with
``is_live()``.

Liveness is the only pruning criterion: a session is live when the
container runtime reports its container as running.  ``started_at`` is
informational.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ccbox.project import REGISTRY_FILE_NAME, project_data_dir
from ccbox.registry_lock import RegistryLock


logger = logging.getLogger(__name__)

#: Prefix of every container name created by ccbox.
CONTAINER_PREFIX = "ccbox"

REGISTRY_FORMAT_VERSION = 1

_SESSION_ID_IN_NAME = 12

#: Returns the names of running containers, or None if the runtime could
#: not be queried (no liveness-based pruning happens then).
Liveness = Callable[[], set[str] | None]


class DuplicateSessionError(Exception):
    """A session with the same container name is already active."""


class SessionStatus(Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (SessionStatus.STARTING, SessionStatus.RUNNING)


def new_session_id() -> str:
    """Generate a fresh session ID (32 hex characters)."""
    return uuid.uuid4().hex


def container_name_for(
    project_key: str, session_id: str, prefix: str = CONTAINER_PREFIX
) -> str:
    """Derive the container name for a session.

    The name is deterministic in ``(project_key, session_id)``; only the
    first 12 characters of the session ID are used to keep names short.
    """
    return f"{prefix}-{project_key}-{session_id[:_SESSION_ID_IN_NAME]}"


def _utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


@dataclass
class Session:
    """A single sandboxed agent session.

    Attributes:
        session_id: Unique session identifier.
        project_key: Key of the project the session belongs to.
        container_name: Runtime container name.
        started_at: ISO 8601 UTC timestamp (informational).
        mounts: ``host:container:mode`` summaries of the bind mounts.
        status: Lifecycle status.
        launcher_pid: PID of the launcher process that registered it.
        image: Image reference the container was created from.
    """

    session_id: str
    project_key: str
    container_name: str
    started_at: str = field(default_factory=_utc_now)
    mounts: list[str] = field(default_factory=list)
    status: SessionStatus = SessionStatus.STARTING
    launcher_pid: int = field(default_factory=os.getpid)
    image: str = ""

    @classmethod
    def new(
        cls,
        project_key: str,
        *,
        mounts: list[str] | None = None,
        image: str = "",
        session_id: str | None = None,
    ) -> Session:
        """Create a session in ``STARTING`` state with a fresh ID."""
        sid = session_id or new_session_id()
        return cls(
            session_id=sid,
            project_key=project_key,
            container_name=container_name_for(project_key, sid),
            mounts=list(mounts or []),
            image=image,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "project_key": self.project_key,
            "container_name": self.container_name,
            "started_at": self.started_at,
            "mounts": list(self.mounts),
            "status": self.status.value,
            "launcher_pid": self.launcher_pid,
            "image": self.image,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            session_id=data["session_id"],
            project_key=data["project_key"],
            container_name=data["container_name"],
            started_at=data.get("started_at", ""),
            mounts=list(data.get("mounts", [])),
            status=SessionStatus(data.get("status", "starting")),
            launcher_pid=int(data.get("launcher_pid", 0)),
            image=data.get("image", ""),
        )


def pid_alive(pid: int) -> bool:
    """Check whether a process exists on this host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


class SessionRegistry:
    """Project-scoped table of sessions shared across launcher processes.

    Attributes:
        data_root: Root of per-project data (``LauncherConfig.data_dir``).
    """

    def __init__(
        self,
        data_root: Path,
        liveness: Liveness,
        *,
        lock_timeout: float = 10.0,
        process_alive: Callable[[int], bool] = pid_alive,
    ) -> None:
        """Initialize the registry.

        Args:
            data_root: Root of per-project data.
            liveness: Callable reporting running container names.
            lock_timeout: Seconds to wait for a project's registry lock.
            process_alive: PID liveness check for ``STARTING`` entries.
        """
        self.data_root = data_root
        self._liveness = liveness
        self._lock_timeout = lock_timeout
        self._process_alive = process_alive

    # ------------------------------------------------------------------
    # Mutations (under the project lock)
    # ------------------------------------------------------------------

    def register(self, session: Session) -> None:
        """Add a session to its project's registry.

        Raises:
            DuplicateSessionError: If an active (starting or running) entry
                already uses the same container name.
            RegistryLockTimeout: If the lock cannot be acquired.
        """
        path = self._registry_path(session.project_key)
        with self._lock(session.project_key):
            sessions = self._load(path)
            for existing in sessions:
                if (
                    existing.container_name == session.container_name
                    and existing.status.is_active
                ):
                    raise DuplicateSessionError(
                        f"Container {session.container_name} is already "
                        f"{existing.status.value} "
                        f"(session {existing.session_id})"
                    )
            sessions = [
                s for s in sessions if s.session_id != session.session_id
            ]
            sessions.append(session)
            self._save(path, sessions)

        logger.info(
            "Registered session %s (%s)",
            session.session_id,
            session.container_name,
        )

    def unregister(self, project_key: str, session_id: str) -> bool:
        """Remove a session.  Idempotent.

        Returns:
            True if an entry was removed, False if none existed.
        """
        path = self._registry_path(project_key)
        if not path.exists():
            return False
        with self._lock(project_key):
            sessions = self._load(path)
            remaining = [s for s in sessions if s.session_id != session_id]
            if len(remaining) == len(sessions):
                return False
            self._save(path, remaining)
        logger.info("Unregistered session %s", session_id)
        return True

    def update_status(
        self, project_key: str, session_id: str, status: SessionStatus
    ) -> Session | None:
        """Set a session's status.

        Returns:
            The updated session, or None if it is no longer registered.
        """
        path = self._registry_path(project_key)
        with self._lock(project_key):
            sessions = self._load(path)
            for session in sessions:
                if session.session_id == session_id:
                    session.status = status
                    self._save(path, sessions)
                    logger.debug(
                        "Session %s is now %s", session_id, status.value
                    )
                    return session
        logger.debug("Session %s not registered", session_id)
        return None

    def list(self, project_key: str) -> list[Session]:
        """Return the project's live sessions, most recent first.

        Stale entries are pruned as a side effect: stopped or failed
        sessions, running sessions whose container is gone, and starting
        sessions whose launcher process died without leaving a container.
        """
        path = self._registry_path(project_key)
        if not path.exists():
            return []
        with self._lock(project_key):
            sessions = self._load(path)
            live = self._liveness()
            kept = [s for s in sessions if not self._is_stale(s, live)]
            if len(kept) != len(sessions):
                pruned = len(sessions) - len(kept)
                logger.info(
                    "Pruned %d stale session(s) for project %s",
                    pruned,
                    project_key,
                )
                self._save(path, kept)
        return sorted(kept, key=lambda s: s.started_at, reverse=True)

    def gc(self) -> int:
        """Prune stale entries in every project registry.

        Returns:
            Number of entries removed.
        """
        removed = 0
        for project_key in self.projects():
            before = len(self.snapshot(project_key))
            removed += before - len(self.list(project_key))
        return removed

    # ------------------------------------------------------------------
    # Lock-free reads
    # ------------------------------------------------------------------

    def snapshot(self, project_key: str) -> list[Session]:
        """Read the registry without locking or pruning."""
        return self._load(self._registry_path(project_key))

    def get(self, project_key: str, session_id: str) -> Session | None:
        """Find a session by ID (full ID or unique prefix)."""
        matches = [
            s
            for s in self.snapshot(project_key)
            if s.session_id.startswith(session_id)
        ]
        return matches[0] if len(matches) == 1 else None

    def projects(self) -> list[str]:
        """Project keys that have a registry file."""
        root = self.data_root / "projects"
        if not root.is_dir():
            return []
        return sorted(
            p.name
            for p in root.iterdir()
            if (p / REGISTRY_FILE_NAME).is_file()
        )

    def is_live(self, session: Session) -> bool:
        """Re-validate a session against the runtime's running containers."""
        live = self._liveness()
        return live is not None and session.container_name in live

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_stale(self, session: Session, live: set[str] | None) -> bool:
        if not session.status.is_active:
            return True
        if live is None:
            return False
        if session.container_name in live:
            return False
        if session.status is SessionStatus.STARTING:
            return not self._process_alive(session.launcher_pid)
        return True

    def _registry_path(self, project_key: str) -> Path:
        data_dir = project_data_dir(self.data_root, project_key)
        return data_dir / REGISTRY_FILE_NAME

    def _lock(self, project_key: str) -> RegistryLock:
        path = self._registry_path(project_key)
        return RegistryLock(
            path.with_name(path.name + ".lock"), timeout=self._lock_timeout
        )

    def _load(self, path: Path) -> list[Session]:
        if not path.exists():
            return []
        try:
            with path.open("r") as f:
                data = json.load(f)
            return [Session.from_dict(s) for s in data.get("sessions", [])]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Ignoring unreadable session registry %s: %s", path, e
            )
            return []

    def _save(self, path: Path, sessions: list[Session]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "version": REGISTRY_FORMAT_VERSION,
            "sessions": [s.to_dict() for s in sessions],
        }
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
