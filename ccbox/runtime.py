# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Thin wrapper around the container runtime CLI.

All interaction with podman (or a CLI-compatible runtime such as docker)
goes through ``ContainerRuntime``.  Creation and attachment are separate
steps: ``create()`` either yields a container or raises
``RuntimeStartError``, and ``start_attached()`` hands the terminal to the
container and returns the contained process's exit status.
"""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ccbox.logging import redact_command
from ccbox.mounts import CONTAINER_WORKSPACE, Mount
from ccbox.session import CONTAINER_PREFIX


logger = logging.getLogger(__name__)

#: Exit statuses the runtime itself uses for "could not run the container"
#: (125: runtime error, 126: command not executable, 127: not found).
START_FAILURE_CODES = frozenset({125, 126, 127})

#: Labels attached to every session container.
LABEL_SESSION = "ccbox.session"
LABEL_PROJECT = "ccbox.project"


class RuntimeStartError(Exception):
    """The container runtime could not create or start a container."""


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to create a session container.

    Attributes:
        name: Container name.
        image: Image reference.
        mounts: Bind mounts in order.
        env: Environment variables set in the container.
        labels: Container labels.
        cap_add: Extra Linux capabilities.
        command: Arguments appended after the image (agent arguments).
        pull_policy: Runtime pull policy.
        tty: Allocate a pseudo-terminal.
        selinux_relabel: Add the shared relabel option to bind mounts.
    """

    name: str
    image: str
    mounts: tuple[Mount, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    cap_add: tuple[str, ...] = ()
    command: tuple[str, ...] = ()
    pull_policy: str = "missing"
    tty: bool = True
    selinux_relabel: bool = False


class ContainerRuntime:
    """Runs container runtime commands.

    Attributes:
        command: Runtime executable (``podman`` or ``docker``).
        poll_interval: Seconds between running-state polls while
            attaching.
    """

    def __init__(
        self, command: str = "podman", *, poll_interval: float = 0.2
    ) -> None:
        self.command = command
        self.poll_interval = poll_interval

    def create_command(self, spec: ContainerSpec) -> list[str]:
        """Build the ``create`` command line for a container spec."""
        cmd = [
            self.command,
            "create",
            "--rm",
            "--interactive",
            "--name",
            spec.name,
            "--pull",
            spec.pull_policy,
            "--workdir",
            CONTAINER_WORKSPACE,
        ]
        if spec.tty:
            cmd.append("--tty")

        for key, value in spec.labels.items():
            cmd.extend(["--label", f"{key}={value}"])

        for cap in spec.cap_add:
            cmd.extend(["--cap-add", cap])

        for env_var, value in spec.env.items():
            cmd.extend(["-e", f"{env_var}={value}"])

        for mount in spec.mounts:
            cmd.extend(
                ["-v", mount.volume_arg(relabel=spec.selinux_relabel)]
            )

        cmd.append(spec.image)
        cmd.extend(spec.command)
        return cmd

    def create(self, spec: ContainerSpec) -> str:
        """Create (but do not start) a container.

        Returns:
            The container ID reported by the runtime.

        Raises:
            RuntimeStartError: If the runtime is missing or creation fails.
        """
        cmd = self.create_command(spec)
        logger.debug("Creating container: %s", " ".join(redact_command(cmd)))
        try:
            result = subprocess.run(
                cmd, check=True, capture_output=True, text=True
            )
        except FileNotFoundError as e:
            raise RuntimeStartError(
                f"Container runtime not found: {self.command}"
            ) from e
        except subprocess.CalledProcessError as e:
            error_msg = e.stderr.strip() if e.stderr else str(e)
            raise RuntimeStartError(
                f"Failed to create container {spec.name}: {error_msg}"
            ) from e
        container_id = result.stdout.strip()
        logger.info("Created container %s (%s)", spec.name, container_id[:12])
        return container_id

    def start_attached(
        self,
        name: str,
        on_started: Callable[[], None] | None = None,
    ) -> int:
        """Start a created container attached to the current terminal.

        Blocks until the contained process exits.

        Args:
            name: Container name.
            on_started: Called once, as soon as the runtime reports the
                container running.  Not called when the container exits
                before it is ever seen running.

        Returns:
            Exit status of the contained process (or of the runtime, when
            it failed to start the container).

        Raises:
            RuntimeStartError: If the runtime executable is missing.
        """
        cmd = [self.command, "start", "--attach", "--interactive", name]
        logger.debug("Attaching: %s", " ".join(cmd))
        try:
            process = subprocess.Popen(cmd)
        except FileNotFoundError as e:
            raise RuntimeStartError(
                f"Container runtime not found: {self.command}"
            ) from e

        try:
            if on_started is not None and self._wait_until_running(
                process, name
            ):
                on_started()
            return process.wait()
        except BaseException:
            process.kill()
            process.wait()
            raise

    def _wait_until_running(
        self, process: subprocess.Popen[bytes], name: str
    ) -> bool:
        """Poll until *name* is running.

        Returns False if the process exits first or the runtime cannot be
        queried.
        """
        while process.poll() is None:
            live = self.running_containers(prefix=name)
            if live is None:
                return False
            if name in live:
                return True
            time.sleep(self.poll_interval)
        return False

    def running_containers(
        self, prefix: str = CONTAINER_PREFIX
    ) -> set[str] | None:
        """Names of running containers whose name starts with *prefix*.

        Returns:
            The set of names, or None if the runtime could not be queried.
        """
        cmd = [
            self.command,
            "ps",
            "--filter",
            f"name={prefix}",
            "--format",
            "{{.Names}}",
        ]
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, check=True
            )
        except (FileNotFoundError, subprocess.CalledProcessError) as e:
            logger.warning("Failed to list running containers: %s", e)
            return None
        names = set()
        for line in result.stdout.splitlines():
            name = line.strip()
            # The runtime filter is a substring/regex match
            if name.startswith(prefix):
                names.add(name)
        return names

    def image_exists(self, image: str) -> bool:
        """Check whether an image is present in local storage."""
        try:
            subprocess.run(
                [self.command, "image", "inspect", image],
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError:
            logger.warning("Container runtime not found: %s", self.command)
            return False
        except subprocess.CalledProcessError:
            return False
        return True

    def stop(self, name: str, timeout: int = 10) -> bool:
        """Stop a running container.

        Returns:
            True if the runtime stopped it, False if it was not running.
        """
        try:
            subprocess.run(
                [self.command, "stop", "--time", str(timeout), name],
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            logger.debug("Failed to stop %s: %s", name, e.stderr.strip())
            return False
        logger.info("Stopped container: %s", name)
        return True

    def remove(self, name: str) -> None:
        """Force-remove a container (idempotent)."""
        try:
            subprocess.run(
                [self.command, "rm", "-f", name],
                check=True,
                capture_output=True,
                text=True,
            )
            logger.debug("Removed container: %s", name)
        except subprocess.CalledProcessError:
            logger.debug("Container already gone: %s", name)

