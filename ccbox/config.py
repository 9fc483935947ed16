# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Launcher configuration.

Configuration is optional: every setting has a default, and the YAML file
follows the XDG Base Directory Specification:

    ``$XDG_CONFIG_HOME/ccbox/ccbox.yaml``
    (typically ``~/.config/ccbox/ccbox.yaml``)

``!env VAR_NAME`` tags resolve values from environment variables.  A
``.env`` file in the same directory is loaded first.

The plain-text inputs (OS package list, firewall domain allow-list, pinned
agent version) live next to the YAML file.  They are newline-delimited;
``#`` starts a comment and blank lines are ignored.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar, overload

import yaml
from platformdirs import user_config_path, user_data_path

from ccbox.dotenv_loader import load_dotenv_once


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "ccbox"

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})

_PULL_POLICIES = frozenset({"always", "missing", "never", "newer"})

#: Provider toggles and credentials forwarded into the container unmodified.
DEFAULT_PASSTHROUGH_ENV: tuple[str, ...] = (
    "CLAUDE_CODE_USE_VERTEX",
    "CLAUDE_CODE_USE_BEDROCK",
    "ANTHROPIC_VERTEX_PROJECT_ID",
    "CLOUD_ML_REGION",
    "GOOGLE_CLOUD_PROJECT",
    "AWS_REGION",
    "AWS_PROFILE",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_MODEL",
    "ANTHROPIC_BASE_URL",
)


class ConfigError(Exception):
    """Invalid or missing configuration, flags, or local image."""


def get_config_dir() -> Path:
    """Return ``$XDG_CONFIG_HOME/ccbox`` (typically ``~/.config/ccbox``)."""
    return user_config_path(_APP_NAME)


def get_config_path() -> Path:
    """Return the default YAML config file path."""
    return get_config_dir() / "ccbox.yaml"


def get_default_data_dir() -> Path:
    """Return ``$XDG_DATA_HOME/ccbox`` (typically ``~/.local/share/ccbox``).

    Per-project data (history, todos, session registry) lives under
    ``projects/`` in this directory.
    """
    return user_data_path(_APP_NAME)


# ---------------------------------------------------------------------------
# Plain-text list files
# ---------------------------------------------------------------------------


def parse_list_text(text: str) -> list[str]:
    """Parse newline-delimited entries, dropping comments and blank lines.

    Trailing comments (``example.com  # docs``) are stripped as well.

    Args:
        text: File contents.

    Returns:
        Entries in file order.
    """
    entries: list[str] = []
    for line in text.splitlines():
        stripped = line.split("#", 1)[0].strip()
        if stripped:
            entries.append(stripped)
    return entries


def read_list_file(path: Path) -> list[str]:
    """Read a newline-delimited list file.

    Args:
        path: File to read.

    Returns:
        Entries in file order.

    Raises:
        ConfigError: If the file cannot be read.
    """
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    return parse_list_text(text)


def read_pinned_version(path: Path) -> str | None:
    """Return the pinned agent version, or None if no usable pin exists.

    A missing file is not an error; the first entry wins when the file
    lists several.
    """
    if not path.exists():
        return None
    entries = read_list_file(path)
    if not entries:
        logger.debug("Pinned version file %s has no entries", path)
        return None
    if len(entries) > 1:
        logger.warning(
            "Pinned version file %s has %d entries, using %s",
            path,
            len(entries),
            entries[0],
        )
    return entries[0]


# ---------------------------------------------------------------------------
# YAML tag placeholders and value resolution
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


def _coerce_bool(value: object) -> bool:
    """Coerce a value to bool, handling string representations."""
    if isinstance(value, bool):
        return value
    s = str(value).lower().strip()
    if s in _BOOL_TRUTHY:
        return True
    if s in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {value!r} to bool")


def is_truthy(value: str | None) -> bool:
    """Interpret an environment toggle such as ``CLAUDE_CODE_USE_VERTEX``.

    Unset, empty and unrecognised values are false.
    """
    if value is None:
        return False
    return value.lower().strip() in _BOOL_TRUTHY


def _raw_resolve(value: object) -> str | None:
    """Resolve an ``_EnvVar`` to its string value, or stringify literals.

    Returns None if the value is None or the env var is unset/empty.
    """
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name) or None
    if value is None:
        return None
    return str(value)


_MISSING = object()

_T = TypeVar("_T")


@overload
def _resolve(value: object, coerce: type[_T], *, default: _T) -> _T: ...


@overload
def _resolve(value: object, coerce: type[_T]) -> _T | None: ...


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    Args:
        value: Raw value from YAML (may be ``_EnvVar``, None, or a
            literal already parsed by PyYAML).
        coerce: Target type (``str``, ``int``, ``float``, ``bool``,
            ``Path``).
        default: Default when value is absent.

    Returns:
        The resolved, coerced value, or None when absent without default.

    Raises:
        ConfigError: If the value cannot be coerced.
    """
    if not isinstance(value, _EnvVar) and value is not None:
        if coerce is bool:
            return _coerce_bool(value)
        if isinstance(value, coerce) and not isinstance(value, bool):
            return value

    resolved = _raw_resolve(value)
    if resolved is None:
        if default is not _MISSING:
            return default
        return None

    if coerce is bool:
        return _coerce_bool(resolved)
    if coerce is Path:
        return Path(resolved).expanduser()
    try:
        return coerce(resolved)
    except (TypeError, ValueError) as e:
        raise ConfigError(
            f"Cannot convert {resolved!r} to {coerce.__name__}"
        ) from e


def _resolve_string_list(value: object, *, name: str) -> list[str]:
    """Resolve a list of strings, handling ``!env`` for each element.

    Raises:
        ConfigError: If the value is present but not a list.
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(
            f"Config '{name}' must be a list, got {type(value).__name__}"
        )
    result: list[str] = []
    for item in value:
        resolved = _raw_resolve(item)
        if resolved:
            result.append(resolved)
    return result


# ---------------------------------------------------------------------------
# Launcher configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LauncherConfig:
    """Settings shared by every launch.

    Attributes:
        container_command: Container runtime command (podman or docker).
        image_repository: Registry repository for published images.
        pull_policy: Runtime pull policy for registry images.
        base_image: Base image for locally built images.
        data_dir: Root of per-project persistent data.
        config_dir: Directory holding the plain-text input files.
        packages_file: OS package list for local builds.
        domains_file: Firewall domain allow-list.
        version_file: Optional pinned agent version.
        selinux_relabel: Append ``z`` to bind mounts for SELinux hosts.
        passthrough_env: Environment variables forwarded unmodified.
        lock_timeout: Seconds to wait for the session registry lock.
    """

    container_command: str = "podman"
    image_repository: str = "ghcr.io/ccbox/ccbox"
    pull_policy: str = "missing"
    base_image: str = "node:20-bookworm-slim"
    data_dir: Path = field(default_factory=get_default_data_dir)
    config_dir: Path = field(default_factory=get_config_dir)
    packages_file: Path | None = None
    domains_file: Path | None = None
    version_file: Path | None = None
    selinux_relabel: bool = False
    passthrough_env: tuple[str, ...] = DEFAULT_PASSTHROUGH_ENV
    lock_timeout: float = 10.0

    def __post_init__(self) -> None:
        """Validate settings and fill in file paths from ``config_dir``.

        Raises:
            ConfigError: If a setting is invalid.
        """
        if not self.container_command:
            raise ConfigError("container_command must not be empty")
        if self.pull_policy not in _PULL_POLICIES:
            raise ConfigError(
                f"pull_policy must be one of {sorted(_PULL_POLICIES)}, "
                f"got {self.pull_policy!r}"
            )
        if self.lock_timeout <= 0:
            raise ConfigError(
                f"lock_timeout must be > 0: {self.lock_timeout}"
            )
        # Frozen dataclass: derived defaults go through object.__setattr__.
        if self.packages_file is None:
            object.__setattr__(
                self, "packages_file", self.config_dir / "packages.txt"
            )
        if self.domains_file is None:
            object.__setattr__(
                self, "domains_file", self.config_dir / "firewall-domains.txt"
            )
        if self.version_file is None:
            object.__setattr__(
                self, "version_file", self.config_dir / "version"
            )

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> "LauncherConfig":
        """Load configuration, falling back to defaults.

        A missing file at the default location yields the default
        configuration; an explicitly given path must exist.

        Args:
            config_path: Path to the YAML file.  Defaults to
                ``get_config_path()``.

        Returns:
            LauncherConfig instance.

        Raises:
            ConfigError: If the file is malformed or values are invalid.
        """
        explicit = config_path is not None
        if config_path is None:
            config_path = get_config_path()

        load_dotenv_once(config_path.parent / ".env")

        if not config_path.exists():
            if explicit:
                raise ConfigError(f"Config file not found: {config_path}")
            logger.debug("No config file at %s, using defaults", config_path)
            return cls(config_dir=config_path.parent)

        try:
            with open(config_path) as f:
                raw = yaml.load(f, Loader=_make_loader())
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(
                f"Config file must be a YAML mapping: {config_path}"
            )

        return cls._from_raw(raw, config_dir=config_path.parent)

    @classmethod
    def _from_raw(cls, raw: dict, *, config_dir: Path) -> "LauncherConfig":
        """Build config from parsed (but unresolved) YAML dict."""
        extra_env = _resolve_string_list(
            raw.get("passthrough_env"), name="passthrough_env"
        )
        passthrough = tuple(
            dict.fromkeys([*DEFAULT_PASSTHROUGH_ENV, *extra_env])
        )
        return cls(
            container_command=_resolve(
                raw.get("container_command"), str, default="podman"
            ),
            image_repository=_resolve(
                raw.get("image_repository"), str, default="ghcr.io/ccbox/ccbox"
            ),
            pull_policy=_resolve(
                raw.get("pull_policy"), str, default="missing"
            ),
            base_image=_resolve(
                raw.get("base_image"), str, default="node:20-bookworm-slim"
            ),
            data_dir=_resolve(
                raw.get("data_dir"), Path, default=get_default_data_dir()
            ),
            config_dir=config_dir,
            packages_file=_resolve(raw.get("packages_file"), Path),
            domains_file=_resolve(raw.get("domains_file"), Path),
            version_file=_resolve(raw.get("version_file"), Path),
            selinux_relabel=_resolve(
                raw.get("selinux_relabel"), bool, default=False
            ),
            passthrough_env=passthrough,
            lock_timeout=_resolve(raw.get("lock_timeout"), float, default=10.0),
        )
