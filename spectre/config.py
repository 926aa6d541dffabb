# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Configuration for the session orchestrator.

Configuration is loaded from a YAML file.  The default location follows
the XDG Base Directory Specification:

    ``$XDG_CONFIG_HOME/spectre/spectre.yaml``
    (typically ``~/.config/spectre/spectre.yaml``)

``!env`` tags resolve values from environment variables.  Mirrors,
workspaces and the session file default to the XDG state directory
(typically ``~/.local/state/spectre``).

Example::

    storage:
      mirrors_dir: /srv/spectre/mirrors
      deploy_keys_dir: !env SPECTRE_DEPLOY_KEYS
    container:
      command: podman
      image: codercom/code-server:latest
      url_template: "https://{name}.ide.example.com"
    sessions:
      inactivity_timeout_minutes: 60
      max_sessions_per_user: 3
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar, overload

import yaml
from platformdirs import user_config_path, user_state_path

from spectre.dotenv_loader import load_dotenv_once


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "spectre"

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})


def get_config_path() -> Path:
    """Return the default config file path.

    Returns:
        ``$XDG_CONFIG_HOME/spectre/spectre.yaml``.
    """
    return user_config_path(_APP_NAME) / "spectre.yaml"


def get_dotenv_path() -> Path:
    """Return the ``.env`` path inside the XDG config directory."""
    return user_config_path(_APP_NAME) / ".env"


def get_state_dir() -> Path:
    """Return the XDG state directory holding mirrors and workspaces."""
    return user_state_path(_APP_NAME)


class ConfigError(Exception):
    """Base exception for configuration errors."""


# ---------------------------------------------------------------------------
# YAML tag placeholders
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


# ---------------------------------------------------------------------------
# Value resolution
# ---------------------------------------------------------------------------


def _coerce_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).lower().strip()
    if s in _BOOL_TRUTHY:
        return True
    if s in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {value!r} to bool")


_MISSING = object()

_T = TypeVar("_T")


@overload
def _resolve(
    value: object, coerce: type[_T], *, default: _T, field_name: str = ""
) -> _T: ...


@overload
def _resolve(
    value: object, coerce: type[_T], *, field_name: str = ""
) -> _T | None: ...


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
    field_name: str = "",
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    Args:
        value: Raw value from YAML (may be ``_EnvVar``, None, or a
            literal already parsed by PyYAML).
        coerce: Target type (``str``, ``int``, ``float``, ``bool``,
            ``Path``).
        default: Value used when the YAML value (or its env var) is
            absent.
        field_name: Dotted name used in error messages.

    Returns:
        The resolved, coerced value, or None when absent without default.

    Raises:
        ConfigError: If the value cannot be coerced.
    """
    if isinstance(value, _EnvVar):
        resolved: object = os.environ.get(value.var_name)
    else:
        resolved = value

    if resolved is None:
        if default is not _MISSING:
            return default
        return None

    try:
        if coerce is bool:
            return _coerce_bool(resolved)
        if coerce is Path:
            return Path(str(resolved)).expanduser()
        if coerce is int and isinstance(resolved, bool):
            raise ValueError("booleans are not integers")
        if isinstance(resolved, coerce):
            return resolved
        return coerce(resolved)
    except (TypeError, ValueError) as e:
        raise ConfigError(
            f"Invalid value for '{field_name or coerce.__name__}': "
            f"{resolved!r} ({e})"
        ) from e


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a YAML mapping")
    return value


# ---------------------------------------------------------------------------
# Config sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StorageConfig:
    """On-disk locations.

    Attributes:
        mirrors_dir: Bare mirrors, one ``repo_<id>.git`` per repository.
        workspaces_dir: Per-session checkouts mounted into containers.
        sessions_file: JSON file the session store persists to.
        deploy_keys_dir: SSH deploy keys named ``repo_<id>``, if any.
    """

    mirrors_dir: Path = field(
        default_factory=lambda: get_state_dir() / "mirrors"
    )
    workspaces_dir: Path = field(
        default_factory=lambda: get_state_dir() / "workspaces"
    )
    sessions_file: Path = field(
        default_factory=lambda: get_state_dir() / "sessions.json"
    )
    deploy_keys_dir: Path | None = None


@dataclass(frozen=True)
class GitConfig:
    """Git subprocess settings.

    Attributes:
        timeout: Seconds before a git command is abandoned.
        push_new_branches: Publish newly created branches to origin.
    """

    timeout: float = 300
    push_new_branches: bool = True

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ConfigError(f"Git timeout must be > 0: {self.timeout}")


@dataclass(frozen=True)
class ContainerConfig:
    """IDE container settings.

    Attributes:
        command: Container runtime CLI (podman or docker).
        image: IDE image.
        network: Network to attach containers to, if any.
        url_template: Session URL, formatted with ``{name}``.
        memory: Memory limit passed to ``--memory``.
        cpus: CPU limit passed to ``--cpus``.
        extensions_dir: Host directory mounted read-only as extensions.
        port: Port the IDE listens on inside the container.
    """

    command: str = "podman"
    image: str = "codercom/code-server:latest"
    network: str | None = None
    url_template: str = "http://{name}.localhost"
    memory: str = "2g"
    cpus: float = 1.0
    extensions_dir: Path | None = None
    port: int = 8080

    def __post_init__(self) -> None:
        if "{name}" not in self.url_template:
            raise ConfigError(
                f"container.url_template must contain '{{name}}': "
                f"{self.url_template!r}"
            )
        if self.cpus <= 0:
            raise ConfigError(f"CPU limit must be > 0: {self.cpus}")
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"Invalid container port: {self.port}")


@dataclass(frozen=True)
class SessionsConfig:
    """Session lifecycle limits.

    Attributes:
        inactivity_timeout_minutes: Idle time before cleanup stops a
            session.
        max_sessions_per_user: Running sessions allowed per user.
        max_containers: Running sessions allowed in total.
        startup_timeout: Seconds to wait for a new container to become
            healthy.
        stop_timeout: Seconds given to a container to stop.
        remove_workspace_on_stop: Delete the workspace when a session
            stops.
    """

    inactivity_timeout_minutes: int = 60
    max_sessions_per_user: int = 3
    max_containers: int = 50
    startup_timeout: float = 30
    stop_timeout: float = 10
    remove_workspace_on_stop: bool = True

    def __post_init__(self) -> None:
        if self.inactivity_timeout_minutes < 1:
            raise ConfigError(
                f"Inactivity timeout must be >= 1 minute: "
                f"{self.inactivity_timeout_minutes}"
            )
        if self.max_sessions_per_user < 1:
            raise ConfigError(
                f"Max sessions per user must be >= 1: "
                f"{self.max_sessions_per_user}"
            )
        if self.max_containers < 1:
            raise ConfigError(
                f"Max containers must be >= 1: {self.max_containers}"
            )
        if self.startup_timeout <= 0 or self.stop_timeout <= 0:
            raise ConfigError("Startup and stop timeouts must be > 0")


@dataclass(frozen=True)
class HealthConfig:
    """Health probe settings.

    Attributes:
        probe_timeout: Seconds a single probe may take.
        max_workers: Probes run concurrently.
    """

    probe_timeout: float = 2.0
    max_workers: int = 16

    def __post_init__(self) -> None:
        if self.probe_timeout <= 0:
            raise ConfigError(
                f"Probe timeout must be > 0: {self.probe_timeout}"
            )
        if self.max_workers < 1:
            raise ConfigError(
                f"Max probe workers must be >= 1: {self.max_workers}"
            )


@dataclass(frozen=True)
class MaintenanceConfig:
    """Background maintenance loop settings."""

    interval_seconds: float = 300
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ConfigError(
                f"Maintenance interval must be > 0: {self.interval_seconds}"
            )


@dataclass(frozen=True)
class SpectreConfig:
    """Complete orchestrator configuration."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    git: GitConfig = field(default_factory=GitConfig)
    container: ContainerConfig = field(default_factory=ContainerConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> "SpectreConfig":
        """Load configuration from a YAML file.

        Values tagged with ``!env VAR_NAME`` are resolved from the
        environment at load time.  A ``.env`` file is loaded first if
        present.

        Args:
            config_path: Path to YAML config file.  Defaults to
                ``~/.config/spectre/spectre.yaml`` (XDG).

        Raises:
            ConfigError: If the file is missing or values are invalid.
        """
        load_dotenv_once()

        if config_path is None:
            config_path = get_config_path()

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            try:
                raw = yaml.load(f, Loader=_make_loader())
            except yaml.YAMLError as e:
                raise ConfigError(
                    f"Invalid YAML in {config_path}: {e}"
                ) from e

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(
                f"Config file must be a YAML mapping: {config_path}"
            )

        config = cls.from_raw(raw)
        logger.info(
            "Config loaded from %s: runtime=%s, image=%s",
            config_path,
            config.container.command,
            config.container.image,
        )
        return config

    @classmethod
    def from_raw(cls, raw: dict) -> "SpectreConfig":
        """Build config from a parsed (but unresolved) YAML mapping."""
        storage = _section(raw, "storage")
        git = _section(raw, "git")
        container = _section(raw, "container")
        sessions = _section(raw, "sessions")
        health = _section(raw, "health")
        maintenance = _section(raw, "maintenance")

        defaults = StorageConfig()
        return cls(
            storage=StorageConfig(
                mirrors_dir=_resolve(
                    storage.get("mirrors_dir"),
                    Path,
                    default=defaults.mirrors_dir,
                ),
                workspaces_dir=_resolve(
                    storage.get("workspaces_dir"),
                    Path,
                    default=defaults.workspaces_dir,
                ),
                sessions_file=_resolve(
                    storage.get("sessions_file"),
                    Path,
                    default=defaults.sessions_file,
                ),
                deploy_keys_dir=_resolve(storage.get("deploy_keys_dir"), Path),
            ),
            git=GitConfig(
                timeout=_resolve(
                    git.get("timeout"),
                    float,
                    default=300.0,
                    field_name="git.timeout",
                ),
                push_new_branches=_resolve(
                    git.get("push_new_branches"), bool, default=True
                ),
            ),
            container=ContainerConfig(
                command=_resolve(
                    container.get("command"), str, default="podman"
                ),
                image=_resolve(
                    container.get("image"),
                    str,
                    default="codercom/code-server:latest",
                ),
                network=_resolve(container.get("network"), str),
                url_template=_resolve(
                    container.get("url_template"),
                    str,
                    default="http://{name}.localhost",
                ),
                memory=_resolve(container.get("memory"),
                str,
                default="2g"),
                cpus=_resolve(
                    container.get("cpus"),
                    float,
                    default=1.0,
                    field_name="container.cpus",
                ),
                extensions_dir=_resolve(container.get("extensions_dir"), Path),
                port=_resolve(
                    container.get("port"),
                    int,
                    default=8080,
                    field_name="container.port",
                ),
            ),
            sessions=SessionsConfig(
                inactivity_timeout_minutes=_resolve(
                    sessions.get("inactivity_timeout_minutes"),
                    int,
                    default=60,
                    field_name="sessions.inactivity_timeout_minutes",
                ),
                max_sessions_per_user=_resolve(
                    sessions.get("max_sessions_per_user"),
                    int,
                    default=3,
                    field_name="sessions.max_sessions_per_user",
                ),
                max_containers=_resolve(
                    sessions.get("max_containers"),
                    int,
                    default=50,
                    field_name="sessions.max_containers",
                ),
                startup_timeout=_resolve(
                    sessions.get("startup_timeout"),
                    float,
                    default=30.0,
                    field_name="sessions.startup_timeout",
                ),
                stop_timeout=_resolve(
                    sessions.get("stop_timeout"),
                    float,
                    default=10.0,
                    field_name="sessions.stop_timeout",
                ),
                remove_workspace_on_stop=_resolve(
                    sessions.get("remove_workspace_on_stop"),
                    bool,
                    default=True,
                ),
            ),
            health=HealthConfig(
                probe_timeout=_resolve(
                    health.get("probe_timeout"),
                    float,
                    default=2.0,
                    field_name="health.probe_timeout",
                ),
                max_workers=_resolve(
                    health.get("max_workers"),
                    int,
                    default=16,
                    field_name="health.max_workers",
                ),
            ),
            maintenance=MaintenanceConfig(
                interval_seconds=_resolve(
                    maintenance.get("interval_seconds"),
                    float,
                    default=300.0,
                    field_name="maintenance.interval_seconds",
                ),
                enabled=_resolve(
                    maintenance.get("enabled"), bool, default=True
                ),
            ),
        )
