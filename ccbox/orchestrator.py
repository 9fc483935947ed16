# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Session launch orchestration.

``LaunchOrchestrator.launch()`` drives one session through its phases::

    PARSING_ARGS -> RESOLVING_VERSION -> PLANNING -> REGISTERING
        -> STARTING -> RUNNING | FAILED

Every fallible planning step (version, image, mounts) runs before the
session is registered, so a launch that fails early leaves no registry
entry.  Once registered, a session that never got a container is marked
failed and unregistered before the error propagates.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ccbox._entrypoint import FIREWALL_EXIT_CODE
from ccbox.config import (
    ConfigError,
    LauncherConfig,
    is_truthy,
    read_list_file,
)
from ccbox.image import (
    build_local_image,
    local_image_ref,
    registry_image_ref,
    resolve_version,
)
from ccbox.logging import SecretFilter
from ccbox.mounts import (
    CONTAINER_WAYLAND_SOCKET,
    X11_SOCKET_DIR,
    FeatureFlags,
    HostContext,
    Mount,
    plan_mounts,
)
from ccbox.project import Project
from ccbox.registry_lock import RegistryLockTimeout
from ccbox.runtime import (
    LABEL_PROJECT,
    LABEL_SESSION,
    START_FAILURE_CODES,
    ContainerRuntime,
    ContainerSpec,
    RuntimeStartError,
)
from ccbox.session import Session, SessionRegistry, SessionStatus


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_RUNTIME = 2
EXIT_FIREWALL = FIREWALL_EXIT_CODE

#: Capabilities the firewall bootstrap needs for iptables and ipset.
FIREWALL_CAPABILITIES = ("NET_ADMIN", "NET_RAW")

# Passed-through variables whose names contain these are secrets.
_SECRET_MARKERS = ("KEY", "TOKEN", "SECRET", "PASSWORD")


class LaunchPhase(Enum):
    PARSING_ARGS = "parsing_args"
    RESOLVING_VERSION = "resolving_version"
    PLANNING = "planning"
    REGISTERING = "registering"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


@dataclass(frozen=True)
class LaunchRequest:
    """A validated launch request built from the command line.

    Attributes:
        workdir: Project working directory.
        claude_version: Agent version override.
        local: Use the locally built image.
        build: Build the local image first (implies ``local``).
        firewall: Enable the in-container egress firewall.
        no_clipboard: Do not mount display/clipboard sockets.
        agent_args: Arguments forwarded verbatim to the agent.
        tty: Allocate a terminal for the container.
    """

    workdir: Path
    claude_version: str | None = None
    local: bool = False
    build: bool = False
    firewall: bool = False
    no_clipboard: bool = False
    agent_args: tuple[str, ...] = ()
    tty: bool = True

    @property
    def use_local_image(self) -> bool:
        return self.local or self.build


@dataclass(frozen=True)
class LaunchOutcome:
    """Result of a completed launch.

    Attributes:
        session: The session record (final status).
        image: Image the container ran.
        exit_code: Exit status of the contained agent.
    """

    session: Session
    image: str
    exit_code: int


class LaunchOrchestrator:
    """Coordinates image selection, mount planning, registration and the
    container runtime for one launcher process."""

    def __init__(
        self,
        config: LauncherConfig,
        runtime: ContainerRuntime,
        registry: SessionRegistry,
        *,
        environ: Mapping[str, str] | None = None,
        host: HostContext | None = None,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._registry = registry
        self._environ = os.environ if environ is None else environ
        self._host = host
        self._phase = LaunchPhase.PARSING_ARGS

    @property
    def phase(self) -> LaunchPhase:
        """Current phase, for diagnostics."""
        return self._phase

    # ------------------------------------------------------------------
    # Launch pipeline
    # ------------------------------------------------------------------

    def launch(self, request: LaunchRequest) -> LaunchOutcome:
        """Launch a session and wait for the agent to exit.

        Raises:
            ConfigError: Invalid request, configuration, or missing
                local image.
            ImageBuildError: The local image build failed.
            DuplicateSessionError: The container name is already active.
            RegistryLockTimeout: The registry stayed locked.
            RuntimeStartError: The container could not be created or
                started.
        """
        try:
            return self._launch(request)
        except BaseException:
            self._phase = LaunchPhase.FAILED
            raise

    def _launch(self, request: LaunchRequest) -> LaunchOutcome:
        self._phase = LaunchPhase.PARSING_ARGS
        if not request.workdir.is_dir():
            raise ConfigError(
                f"Working directory does not exist: {request.workdir}"
            )

        self._phase = LaunchPhase.RESOLVING_VERSION
        image = self._resolve_image(request)

        self._phase = LaunchPhase.PLANNING
        project = Project.from_path(request.workdir, self._config.data_dir)
        flags = FeatureFlags(
            no_clipboard=request.no_clipboard,
            vertex_ai=is_truthy(self._environ.get("CLAUDE_CODE_USE_VERTEX")),
            local=request.use_local_image,
            firewall=request.firewall,
        )
        host = self._host or HostContext.from_environ(
            self._environ, domains_file=self._config.domains_file
        )
        if flags.firewall and not (
            host.domains_file and host.domains_file.is_file()
        ):
            raise ConfigError(
                f"Firewall allow-list not found: {host.domains_file} "
                "(run 'ccbox --init' to create one)"
            )
        project.ensure_data_dirs()
        mounts = plan_mounts(project, flags, host)
        session = Session.new(
            project.key,
            mounts=[m.summary() for m in mounts],
            image=image,
        )
        spec = ContainerSpec(
            name=session.container_name,
            image=image,
            mounts=tuple(mounts),
            env=self._collect_env(flags, mounts, session),
            labels={
                LABEL_SESSION: session.session_id,
                LABEL_PROJECT: project.key,
            },
            cap_add=FIREWALL_CAPABILITIES if flags.firewall else (),
            command=request.agent_args,
            pull_policy="never" if flags.local else self._config.pull_policy,
            tty=request.tty,
            selinux_relabel=self._config.selinux_relabel,
        )

        self._phase = LaunchPhase.REGISTERING
        self._registry.register(session)

        self._phase = LaunchPhase.STARTING
        try:
            self._runtime.create(spec)
        except RuntimeStartError:
            self._abandon(session)
            raise

        # The entry stays STARTING (guarded by the launcher PID) until the
        # runtime reports the container running.
        def mark_running() -> None:
            session.status = SessionStatus.RUNNING
            self._phase = LaunchPhase.RUNNING
            try:
                self._registry.update_status(
                    session.project_key,
                    session.session_id,
                    SessionStatus.RUNNING,
                )
            except RegistryLockTimeout as e:
                logger.warning("Could not mark session running: %s", e)
                return
            logger.info(
                "Session %s running in %s",
                session.session_id,
                session.container_name,
            )

        try:
            exit_code = self._runtime.start_attached(
                session.container_name, on_started=mark_running
            )
        except RuntimeStartError:
            self._abandon(session, remove_container=True)
            raise
        except KeyboardInterrupt:
            self._finish(session, SessionStatus.FAILED)
            raise

        if exit_code in START_FAILURE_CODES:
            self._abandon(session, remove_container=True)
            raise RuntimeStartError(
                f"Container {session.container_name} failed to start "
                f"(runtime exit status {exit_code})"
            )

        self._phase = LaunchPhase.RUNNING
        status = (
            SessionStatus.STOPPED if exit_code == 0 else SessionStatus.FAILED
        )
        self._finish(session, status)
        logger.info(
            "Session %s exited with status %d", session.session_id, exit_code
        )
        return LaunchOutcome(session=session, image=image, exit_code=exit_code)

    def _resolve_image(self, request: LaunchRequest) -> str:
        """Pick (and with ``build``, build) the image for a request.

        Raises:
            ConfigError: If the local image is requested but missing.
            ImageBuildError: If the build fails.
        """
        version = resolve_version(
            request.claude_version, self._config.version_file
        )
        if request.build:
            packages_file = self._config.packages_file
            packages = (
                read_list_file(packages_file)
                if packages_file and packages_file.exists()
                else []
            )
            return build_local_image(
                self._config.container_command,
                self._config.base_image,
                packages,
                version,
            )
        if request.local:
            image = local_image_ref(version)
            if not self._runtime.image_exists(image):
                raise ConfigError(
                    f"Local image {image} not found "
                    "(run with --build to create it)"
                )
            return image
        return registry_image_ref(self._config.image_repository, version)

    def _collect_env(
        self,
        flags: FeatureFlags,
        mounts: list[Mount],
        session: Session,
    ) -> dict[str, str]:
        env: dict[str, str] = {}
        for name in self._config.passthrough_env:
            value = self._environ.get(name)
            if value is None:
                continue
            env[name] = value
            if value and any(marker in name for marker in _SECRET_MARKERS):
                SecretFilter.register_secret(value)

        container_paths = {m.container_path for m in mounts}
        display = self._environ.get("DISPLAY")
        if display and str(X11_SOCKET_DIR) in container_paths:
            env["DISPLAY"] = display
        if CONTAINER_WAYLAND_SOCKET in container_paths:
            socket_path = Path(CONTAINER_WAYLAND_SOCKET)
            env["XDG_RUNTIME_DIR"] = str(socket_path.parent)
            env["WAYLAND_DISPLAY"] = socket_path.name

        if flags.firewall:
            env["CCBOX_FIREWALL"] = "1"
        env["CCBOX_SESSION_ID"] = session.session_id
        env["CCBOX_PROJECT_KEY"] = session.project_key
        return env

    def _finish(self, session: Session, status: SessionStatus) -> None:
        session.status = status
        self._registry.update_status(
            session.project_key, session.session_id, status
        )

    def _abandon(
        self, session: Session, *, remove_container: bool = False
    ) -> None:
        """Mark a session that never ran as failed and drop it."""
        logger.debug("Abandoning session %s", session.session_id)
        self._finish(session, SessionStatus.FAILED)
        if remove_container:
            self._runtime.remove(session.container_name)
        self._registry.unregister(session.project_key, session.session_id)

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def list_sessions(self, workdir: Path) -> list[Session]:
        """Live sessions of the project at *workdir*, newest first."""
        project = Project.from_path(workdir, self._config.data_dir)
        return self._registry.list(project.key)

    def stop_session(self, workdir: Path, session_id: str) -> Session:
        """Stop a session of the project at *workdir* and unregister it.

        Args:
            workdir: Project working directory.
            session_id: Full session ID or a unique prefix.

        Raises:
            ConfigError: If no single session matches.
        """
        project = Project.from_path(workdir, self._config.data_dir)
        session = self._registry.get(project.key, session_id)
        if session is None:
            raise ConfigError(
                f"No unique session matching {session_id!r} in this project"
            )
        if self._registry.is_live(session):
            self._runtime.stop(session.container_name)
        else:
            logger.info("Session %s is not running", session.session_id)
        self._registry.unregister(project.key, session.session_id)
        return session

    def gc(self) -> int:
        """Prune stale sessions in every project registry."""
        removed = self._registry.gc()
        logger.info("Removed %d stale session(s)", removed)
        return removed
