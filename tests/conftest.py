# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test packages."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from ccbox.dotenv_loader import reset_dotenv_state
from ccbox.logging import SecretFilter
from tests.fakes import FakeRuntime


@pytest.fixture(autouse=True)
def isolated_dirs(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Iterator[Path]:
    """Point HOME and the XDG directories into the test's tmp_path.

    Returns:
        The fake home directory.
    """
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg-data"))
    monkeypatch.delenv("XDG_RUNTIME_DIR", raising=False)
    monkeypatch.delenv("WAYLAND_DISPLAY", raising=False)
    monkeypatch.delenv("DISPLAY", raising=False)
    reset_dotenv_state()
    yield home
    reset_dotenv_state()
    SecretFilter.clear_secrets()


@pytest.fixture
def data_root(tmp_path: Path) -> Path:
    """Root of per-project data for registry and orchestrator tests."""
    root = tmp_path / "data"
    root.mkdir()
    return root


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A project working directory with a name that needs slugging."""
    path = tmp_path / "src" / "My App"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()
