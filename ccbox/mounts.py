# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Bind mount planning for sandbox containers.

``plan_mounts()`` is a pure function of the project, the feature flags and
a snapshot of the host (``HostContext``).  It checks whether optional host
paths exist but never creates or modifies anything; optional paths that
are missing are left out of the plan.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ccbox.project import Project


CONTAINER_HOME = "/root"
CONTAINER_WORKSPACE = "/workspace"
CONTAINER_DOMAINS_FILE = "/etc/ccbox/firewall-domains.txt"
CONTAINER_WAYLAND_SOCKET = "/tmp/wayland-0"
X11_SOCKET_DIR = Path("/tmp/.X11-unix")


class MountMode(Enum):
    READ_ONLY = "ro"
    READ_WRITE = "rw"


@dataclass(frozen=True)
class Mount:
    """A volume mount for the container.

    Attributes:
        host_path: Absolute path on the host.
        container_path: Path inside the container.
        mode: Read-only or read-write.
    """

    host_path: Path
    container_path: str
    mode: MountMode = MountMode.READ_WRITE

    def volume_arg(self, *, relabel: bool = False) -> str:
        """Render the ``-v`` argument for the container runtime.

        Args:
            relabel: Append the shared SELinux relabel option (``z``).
        """
        options = self.mode.value
        if relabel:
            options += ",z"
        return f"{self.host_path}:{self.container_path}:{options}"

    def summary(self) -> str:
        """Short ``host:container:mode`` form stored in the registry."""
        return f"{self.host_path}:{self.container_path}:{self.mode.value}"


@dataclass(frozen=True)
class FeatureFlags:
    """Launch flags that influence planning.

    Attributes:
        no_clipboard: Leave out display/clipboard sockets.
        vertex_ai: Vertex AI backend selected (environment only).
        local: Use a locally built image (image selection only).
        firewall: Firewall mode; mounts the domain allow-list.
    """

    no_clipboard: bool = False
    vertex_ai: bool = False
    local: bool = False
    firewall: bool = False


@dataclass(frozen=True)
class HostContext:
    """The parts of the host environment the planner looks at.

    Attributes:
        home: Host user's home directory.
        runtime_dir: ``$XDG_RUNTIME_DIR``, if set.
        wayland_display: ``$WAYLAND_DISPLAY``, if set.
        display: ``$DISPLAY``, if set.
        x11_socket_dir: Directory holding X11 sockets.
        domains_file: Firewall allow-list on the host.
    """

    home: Path
    runtime_dir: Path | None = None
    wayland_display: str | None = None
    display: str | None = None
    x11_socket_dir: Path = X11_SOCKET_DIR
    domains_file: Path | None = None

    @classmethod
    def from_environ(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        domains_file: Path | None = None,
    ) -> HostContext:
        """Capture the host context from environment variables."""
        env = os.environ if environ is None else environ
        runtime_dir = env.get("XDG_RUNTIME_DIR")
        return cls(
            home=Path(env.get("HOME") or Path.home()),
            runtime_dir=Path(runtime_dir) if runtime_dir else None,
            wayland_display=env.get("WAYLAND_DISPLAY") or None,
            display=env.get("DISPLAY") or None,
            domains_file=domains_file,
        )

    @property
    def wayland_socket(self) -> Path | None:
        if self.runtime_dir is None or not self.wayland_display:
            return None
        return self.runtime_dir / self.wayland_display


# (host path relative to home, container path relative to container home)
_GLOBAL_CONFIG = (
    (".claude/settings.json", ".claude/settings.json"),
    (".claude/CLAUDE.md", ".claude/CLAUDE.md"),
    (".claude/commands", ".claude/commands"),
    (".claude/agents", ".claude/agents"),
)

_CREDENTIALS = (
    (
        ".claude/.credentials.json",
        ".claude/.credentials.json",
        MountMode.READ_WRITE,
    ),
    (".claude.json", ".claude.json", MountMode.READ_WRITE),
    (".gitconfig", ".gitconfig", MountMode.READ_ONLY),
    (".config/gcloud", ".config/gcloud", MountMode.READ_ONLY),
)


def plan_mounts(
    project: Project, flags: FeatureFlags, host: HostContext
) -> list[Mount]:
    """Compute the ordered bind mounts for a session.

    Order: workspace, project data, shared global config, credentials,
    firewall allow-list, display sockets.

    Args:
        project: The project being launched.
        flags: Launch feature flags.
        host: Host environment snapshot.

    Returns:
        Mounts in the order they are passed to the runtime.
    """
    mounts = [
        Mount(project.path, CONTAINER_WORKSPACE),
        Mount(project.history_dir, f"{CONTAINER_HOME}/.claude/projects"),
        Mount(project.todos_dir, f"{CONTAINER_HOME}/.claude/todos"),
        Mount(project.tasks_dir, f"{CONTAINER_HOME}/.claude/tasks"),
    ]

    for host_rel, container_rel in _GLOBAL_CONFIG:
        path = host.home / host_rel
        if path.exists():
            target = f"{CONTAINER_HOME}/{container_rel}"
            mounts.append(Mount(path, target, MountMode.READ_ONLY))

    for host_rel, container_rel, mode in _CREDENTIALS:
        path = host.home / host_rel
        if path.exists():
            target = f"{CONTAINER_HOME}/{container_rel}"
            mounts.append(Mount(path, target, mode))

    if flags.firewall and host.domains_file and host.domains_file.is_file():
        mounts.append(
            Mount(
                host.domains_file,
                CONTAINER_DOMAINS_FILE,
                MountMode.READ_ONLY,
            )
        )

    if not flags.no_clipboard:
        mounts.extend(display_mounts(host))

    return mounts


def display_mounts(host: HostContext) -> list[Mount]:
    """Mounts for the X11 and Wayland sockets that exist on the host."""
    mounts: list[Mount] = []
    if host.x11_socket_dir.is_dir():
        mounts.append(
            Mount(
                host.x11_socket_dir,
                str(X11_SOCKET_DIR),
                MountMode.READ_ONLY,
            )
        )
    wayland = host.wayland_socket
    if wayland is not None and wayland.exists():
        mounts.append(
            Mount(wayland, CONTAINER_WAYLAND_SOCKET, MountMode.READ_ONLY)
        )
    return mounts

