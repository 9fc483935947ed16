# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Agent version resolution and local image builds.

Published images live at ``<image_repository>:<version>``.  Locally built
images are tagged ``localhost/ccbox:<version>`` and are built from a
generated Dockerfile: the configured base image, the OS packages from
``packages.txt``, the requested agent version, the generated entrypoint,
and a copy of the ``ccbox`` package (the firewall bootstrap runs from it
inside the container).
"""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
import subprocess
import tempfile
import time
from pathlib import Path

from ccbox._entrypoint import get_entrypoint_content
from ccbox.config import ConfigError, read_pinned_version


logger = logging.getLogger(__name__)

LATEST = "latest"
LOCAL_IMAGE_REPOSITORY = "localhost/ccbox"
AGENT_PACKAGE = "@anthropic-ai/claude-code"

#: Packages every image needs regardless of ``packages.txt``.
BASE_PACKAGES: tuple[str, ...] = (
    "ca-certificates",
    "curl",
    "git",
    "iproute2",
    "ipset",
    "iptables",
    "python3",
    "python3-dotenv",
    "python3-httpx",
    "python3-platformdirs",
    "python3-yaml",
)

_VERSION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
_PACKAGE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9+.:=~_-]*$")

_PACKAGE_DIR = Path(__file__).resolve().parent


class ImageBuildError(Exception):
    """Raised when the local image build fails."""


def validate_version(version: str) -> str:
    """Check that *version* is usable as an image tag and npm version.

    Raises:
        ConfigError: If the version contains unsupported characters.
    """
    if not _VERSION_PATTERN.match(version):
        raise ConfigError(f"Invalid agent version: {version!r}")
    return version


def resolve_version(flag: str | None, pinned_file: Path | None) -> str:
    """Pick the agent version.

    Precedence: explicit flag, then the pinned-version file, then
    ``latest``.

    Raises:
        ConfigError: If the chosen version is invalid or the pinned file
            cannot be read.
    """
    if flag:
        logger.debug("Agent version from command line: %s", flag)
        return validate_version(flag)
    if pinned_file is not None:
        pinned = read_pinned_version(pinned_file)
        if pinned:
            logger.debug("Agent version pinned in %s: %s", pinned_file, pinned)
            return validate_version(pinned)
    return LATEST


def local_image_ref(version: str) -> str:
    return f"{LOCAL_IMAGE_REPOSITORY}:{version}"


def registry_image_ref(repository: str, version: str) -> str:
    return f"{repository}:{version}"


def _content_hash(content: bytes | str) -> str:
    """Compute SHA-256 hex digest of content."""
    if isinstance(content, str):
        content = content.encode()
    return hashlib.sha256(content).hexdigest()


def validate_packages(packages: list[str]) -> list[str]:
    """Reject package list entries that are not plain package names.

    Raises:
        ConfigError: If an entry contains unsupported characters.
    """
    for package in packages:
        if not _PACKAGE_PATTERN.match(package):
            raise ConfigError(f"Invalid package name: {package!r}")
    return packages


def generate_dockerfile(
    base_image: str, packages: list[str], version: str
) -> str:
    """Render the Dockerfile for a local build.

    Args:
        base_image: Base image providing Node.js and npm.
        packages: Extra OS packages (from ``packages.txt``).
        version: Agent version to install.

    Returns:
        Dockerfile text.
    """
    all_packages = list(dict.fromkeys([*BASE_PACKAGES, *packages]))
    package_args = " \\\n        ".join(all_packages)
    return (
        f"FROM {base_image}\n"
        "RUN apt-get update \\\n"
        " && apt-get install -y --no-install-recommends \\\n"
        f"        {package_args} \\\n"
        " && rm -rf /var/lib/apt/lists/*\n"
        f"RUN npm install -g {AGENT_PACKAGE}@{version}\n"
        "COPY ccbox /opt/ccbox/ccbox\n"
        "COPY ccbox-entrypoint.sh /entrypoint.sh\n"
        "RUN chmod +x /entrypoint.sh\n"
        "ENV PYTHONPATH=/opt/ccbox\n"
        "WORKDIR /workspace\n"
        'ENTRYPOINT ["/entrypoint.sh"]\n'
    )


def build_local_image(
    container_command: str,
    base_image: str,
    packages: list[str],
    version: str,
) -> str:
    """Build the local image for an agent version.

    Args:
        container_command: Container runtime command.
        base_image: Base image for the build.
        packages: Extra OS packages.
        version: Agent version.

    Returns:
        Image tag (``localhost/ccbox:<version>``).

    Raises:
        ConfigError: If the version or a package name is invalid.
        ImageBuildError: If the build fails.
    """
    validate_version(version)
    validate_packages(packages)

    tag = local_image_ref(version)
    dockerfile = generate_dockerfile(base_image, packages, version)
    entrypoint = get_entrypoint_content()
    content_hash = _content_hash(dockerfile.encode() + entrypoint)

    logger.info("Building local image: %s", tag)
    start_time = time.time()

    with tempfile.TemporaryDirectory() as tmpdir:
        context = Path(tmpdir)
        (context / "Dockerfile").write_text(dockerfile)
        (context / "ccbox-entrypoint.sh").write_bytes(entrypoint)
        shutil.copytree(
            _PACKAGE_DIR,
            context / "ccbox",
            ignore=shutil.ignore_patterns("__pycache__", "*.pyc"),
        )

        cmd = [
            container_command,
            "build",
            "-t",
            tag,
            "--label",
            f"ccbox.content-hash={content_hash}",
            "--label",
            f"ccbox.agent-version={version}",
            "-f",
            str(context / "Dockerfile"),
            tmpdir,
        ]

        try:
            subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as e:
            raise ImageBuildError(
                f"Container runtime not found: {container_command}"
            ) from e
        except subprocess.CalledProcessError as e:
            error_msg = e.stderr.strip() if e.stderr else str(e)
            logger.error("Failed to build local image: %s", error_msg)
            raise ImageBuildError(
                f"Local image build failed: {error_msg}"
            ) from e

    elapsed = time.time() - start_time
    logger.info("Local image built in %.2fs: %s", elapsed, tag)
    return tag
