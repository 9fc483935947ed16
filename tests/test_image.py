# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for ccbox/image.py."""

import ast
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from ccbox.config import ConfigError
import ccbox.image
from ccbox.image import (
    AGENT_PACKAGE,
    BASE_PACKAGES,
    LATEST,
    ImageBuildError,
    build_local_image,
    generate_dockerfile,
    local_image_ref,
    registry_image_ref,
    resolve_version,
    validate_packages,
    validate_version,
)


class TestResolveVersion:
    """Tests for resolve_version precedence."""

    def test_flag_wins(self, tmp_path: Path) -> None:
        """The command-line flag beats the pinned file."""
        pinned = tmp_path / "version"
        pinned.write_text("1.0.0\n")
        assert resolve_version("2.0.1", pinned) == "2.0.1"

    def test_pinned_file(self, tmp_path: Path) -> None:
        pinned = tmp_path / "version"
        pinned.write_text("# pinned\n1.0.30\n")
        assert resolve_version(None, pinned) == "1.0.30"

    def test_latest_without_pin(self, tmp_path: Path) -> None:
        assert resolve_version(None, tmp_path / "version") == LATEST
        assert resolve_version(None, None) == LATEST

    def test_empty_flag_ignored(self, tmp_path: Path) -> None:
        assert resolve_version("", None) == LATEST

    def test_invalid_flag(self) -> None:
        with pytest.raises(ConfigError, match="Invalid agent version"):
            resolve_version("1.0; rm -rf /", None)

    def test_invalid_pin(self, tmp_path: Path) -> None:
        pinned = tmp_path / "version"
        pinned.write_text("../1.0\n")
        with pytest.raises(ConfigError):
            resolve_version(None, pinned)


class TestValidation:
    """Tests for version and package validation."""

    @pytest.mark.parametrize("version", ["1.0.30", "latest", "2.0.0-beta.1"])
    def test_valid_versions(self, version: str) -> None:
        assert validate_version(version) == version

    @pytest.mark.parametrize("version", ["", "-1", "1 0", "1/0"])
    def test_invalid_versions(self, version: str) -> None:
        with pytest.raises(ConfigError):
            validate_version(version)

    def test_valid_packages(self) -> None:
        packages = ["ripgrep", "libssl3", "g++", "python3.12=3.12.3-1"]
        assert validate_packages(packages) == packages

    def test_invalid_package(self) -> None:
        with pytest.raises(ConfigError, match="Invalid package name"):
            validate_packages(["jq && curl evil"])


class TestImageRefs:
    """Tests for image reference helpers."""

    def test_local(self) -> None:
        assert local_image_ref("1.0.30") == "localhost/ccbox:1.0.30"

    def test_registry(self) -> None:
        assert (
            registry_image_ref("ghcr.io/ccbox/ccbox", "latest")
            == "ghcr.io/ccbox/ccbox:latest"
        )


class TestGenerateDockerfile:
    """Tests for generate_dockerfile."""

    def test_contents(self) -> None:
        dockerfile = generate_dockerfile("node:20-slim", ["ripgrep"], "1.0.30")
        assert dockerfile.startswith("FROM node:20-slim\n")
        assert f"npm install -g {AGENT_PACKAGE}@1.0.30" in dockerfile
        assert "ripgrep" in dockerfile
        assert "COPY ccbox /opt/ccbox/ccbox" in dockerfile
        assert 'ENTRYPOINT ["/entrypoint.sh"]' in dockerfile

    def test_base_packages_always_installed(self) -> None:
        """Firewall tooling is present even with an empty package list."""
        dockerfile = generate_dockerfile("node:20-slim", [], LATEST)
        for package in BASE_PACKAGES:
            assert package in dockerfile

    def test_duplicates_collapsed(self) -> None:
        dockerfile = generate_dockerfile("node:20-slim", ["git"], LATEST)
        assert dockerfile.count(" git ") == 1


class TestBuildLocalImage:
    """Tests for build_local_image."""

    @patch("ccbox.image.subprocess.run")
    def test_builds_and_returns_tag(self, mock_run: MagicMock) -> None:
        """Builds with labels and returns the local tag."""
        mock_run.return_value = MagicMock(returncode=0)

        tag = build_local_image("podman", "node:20-slim", [], "1.0.30")

        assert tag == "localhost/ccbox:1.0.30"
        mock_run.assert_called_once()
        cmd = mock_run.call_args[0][0]
        assert cmd[:4] == ["podman", "build", "-t", tag]
        assert "ccbox.agent-version=1.0.30" in cmd
        assert any(arg.startswith("ccbox.content-hash=") for arg in cmd)

    @patch("ccbox.image.subprocess.run")
    def test_context_contents(self, mock_run: MagicMock) -> None:
        """The build context holds Dockerfile, entrypoint and package."""
        seen: dict[str, bool] = {}

        def check_context(cmd: list[str], **kwargs: object) -> MagicMock:
            context = Path(cmd[-1])
            seen["dockerfile"] = (context / "Dockerfile").is_file()
            seen["entrypoint"] = (context / "ccbox-entrypoint.sh").is_file()
            seen["package"] = (context / "ccbox" / "session.py").is_file()
            seen["firewall"] = (
                context / "ccbox" / "firewall" / "__main__.py"
            ).is_file()
            return MagicMock(returncode=0)

        mock_run.side_effect = check_context
        build_local_image("podman", "node:20-slim", ["jq"], LATEST)

        assert seen == {
            "dockerfile": True,
            "entrypoint": True,
            "package": True,
            "firewall": True,
        }

    @patch("ccbox.image.subprocess.run")
    def test_build_failure(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["podman"], stderr="E: Unable to locate package nope\n"
        )
        with pytest.raises(ImageBuildError, match="Unable to locate"):
            build_local_image("podman", "node:20-slim", ["nope"], LATEST)

    @patch("ccbox.image.subprocess.run")
    def test_runtime_missing(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = FileNotFoundError("podman")
        with pytest.raises(ImageBuildError, match="not found"):
            build_local_image("podman", "node:20-slim", [], LATEST)

    @patch("ccbox.image.subprocess.run")
    def test_invalid_package_rejected_before_build(
        self, mock_run: MagicMock
    ) -> None:
        with pytest.raises(ConfigError):
            build_local_image("podman", "node:20-slim", ["a;b"], LATEST)
        mock_run.assert_not_called()


class TestImagePythonCompatibility:
    """The package copied into the image runs under the base image's
    ``python3`` (Python 3.11 on Debian bookworm)."""

    def test_package_parses_as_python_311(self) -> None:
        package_dir = Path(ccbox.image.__file__).resolve().parent
        sources = sorted(package_dir.rglob("*.py"))
        assert package_dir / "firewall" / "__main__.py" in sources

        for source in sources:
            ast.parse(
                source.read_text(),
                filename=str(source),
                feature_version=(3, 11),
            )
