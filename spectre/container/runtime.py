# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container runtime interface and the podman/docker CLI implementation.

The session manager talks to containers only through ``ContainerRuntime``.
Every method is a blocking, timeout-bearing call that either returns a
value or raises ``ProvisioningError``; not-found is never an error for
stop, remove, probe, or inspect.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from spectre.errors import ProvisioningError


logger = logging.getLogger(__name__)

#: Label marking containers owned by this orchestrator.
MANAGED_LABEL = "spectre.managed"

#: Where the session workspace is mounted inside the IDE container.
WORKSPACE_MOUNT = "/home/coder/workspace"

#: Where the shared extensions directory is mounted.
EXTENSIONS_MOUNT = "/home/coder/.local/share/code-server/extensions"


@dataclass(frozen=True)
class Mount:
    """A volume mount for the container.

    Attributes:
        host_path: Absolute path on the host.
        container_path: Path inside the container.
        read_only: Whether the mount is read-only.
    """

    host_path: Path
    container_path: str
    read_only: bool = False

    def to_arg(self) -> str:
        mode = "ro" if self.read_only else "rw"
        return f"{self.host_path}:{self.container_path}:{mode}"


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to start one IDE container.

    Attributes:
        name: Unique container name.
        image: Image to run.
        labels: Container labels (the managed label is always added).
        mounts: Volume mounts.
        env: Environment variables.
        memory: Memory limit (``--memory``), or None for unlimited.
        cpus: CPU limit (``--cpus``), or None for unlimited.
        network: Network to attach to, or None for the default.
        port: Port the IDE listens on inside the container.
    """

    name: str
    image: str
    labels: dict[str, str] = field(default_factory=dict)
    mounts: tuple[Mount, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    memory: str | None = None
    cpus: float | None = None
    network: str | None = None
    port: int = 8080


@dataclass(frozen=True)
class ContainerHandle:
    """A started container.

    Attributes:
        container_id: Runtime-assigned container ID.
        name: Container name.
        url: URL the IDE is reachable at.
    """

    container_id: str
    name: str
    url: str


class ContainerState(Enum):
    """Container state as reported by the runtime."""

    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    EXITED = "exited"
    STOPPED = "stopped"
    DEAD = "dead"
    UNHEALTHY = "unhealthy"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class ContainerRuntime(Protocol):
    """Blocking, timeout-bearing container operations."""

    def start(self, spec: ContainerSpec, timeout: float) -> ContainerHandle:
        """Start a container, removing it again if the start fails."""
        ...

    def stop(self, container_id: str, timeout: float) -> None:
        """Stop a container. Not found counts as success."""
        ...

    def remove(self, container_id: str, timeout: float) -> None:
        """Force-remove a container. Not found counts as success."""
        ...

    def probe(self, container_id: str, timeout: float) -> bool:
        """Whether the container is running and not reported unhealthy."""
        ...

    def inspect(self, container_id: str, timeout: float) -> ContainerState:
        """Current state of a container, NOT_FOUND if it does not exist."""
        ...

    def list_managed(self, timeout: float) -> list[str]:
        """IDs of all containers carrying the managed label."""
        ...


def _is_not_found(stderr: str | None) -> bool:
    text = (stderr or "").lower()
    return "no such" in text or "not found" in text


class PodmanRuntime:
    """``ContainerRuntime`` driving the podman (or docker) CLI.

    Args:
        container_command: CLI to invoke (``podman`` or ``docker``).
        url_template: Session URL, formatted with the container ``name``.
    """

    def __init__(
        self,
        container_command: str = "podman",
        url_template: str = "http://{name}.localhost",
    ) -> None:
        self._cmd = container_command
        self._url_template = url_template

    def _run(
        self, args: list[str], timeout: float
    ) -> subprocess.CompletedProcess[str]:
        """Run the container CLI without raising on a non-zero exit.

        Raises:
            ProvisioningError: If the command times out or cannot be run.
        """
        try:
            return subprocess.run(
                [self._cmd, *args],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ProvisioningError(
                f"{self._cmd} {args[0]} timed out after {timeout}s"
            ) from e
        except OSError as e:
            raise ProvisioningError(
                f"Failed to run {self._cmd}: {e}"
            ) from e

    def build_run_command(self, spec: ContainerSpec) -> list[str]:
        """Build the ``run`` argument list for *spec*."""
        args = [
            "run",
            "-d",
            "--name",
            spec.name,
            "--security-opt",
            "no-new-privileges",
            "--label",
            f"{MANAGED_LABEL}=true",
        ]
        for key, value in sorted(spec.labels.items()):
            args.extend(["--label", f"{key}={value}"])
        if spec.memory:
            args.extend(["--memory", spec.memory])
        if spec.cpus:
            args.extend(["--cpus", str(spec.cpus)])
        if spec.network:
            args.extend(["--network", spec.network])
        for mount in spec.mounts:
            args.extend(["-v", mount.to_arg()])
        for key, value in sorted(spec.env.items()):
            args.extend(["-e", f"{key}={value}"])
        args.extend(["--expose", str(spec.port)])
        args.append(spec.image)
        args.extend(["--bind-addr", f"0.0.0.0:{spec.port}", "--auth", "none"])
        return args

    def start(self, spec: ContainerSpec, timeout: float) -> ContainerHandle:
        logger.info("Starting container %s (image %s)", spec.name, spec.image)
        try:
            result = self._run(self.build_run_command(spec), timeout)
        except ProvisioningError:
            self._remove_by_name(spec.name, timeout)
            raise

        if result.returncode != 0:
            self._remove_by_name(spec.name, timeout)
            raise ProvisioningError(
                f"Failed to start container {spec.name}: "
                f"{result.stderr.strip()}"
            )

        lines = result.stdout.strip().splitlines()
        if not lines:
            self._remove_by_name(spec.name, timeout)
            raise ProvisioningError(
                f"Failed to start container {spec.name}: "
                "runtime returned no container ID"
            )
        container_id = lines[-1]
        url = self._url_template.format(name=spec.name)
        logger.info("Container %s started: %s", spec.name, container_id[:12])
        return ContainerHandle(
            container_id=container_id, name=spec.name, url=url
        )

    def _remove_by_name(self, name: str, timeout: float) -> None:
        """Best-effort cleanup after a failed start."""
        try:
            result = self._run(["rm", "-f", name], timeout)
        except ProvisioningError as e:
            logger.warning("Cleanup of container %s failed: %s", name, e)
            return
        if result.returncode == 0:
            logger.debug("Removed container: %s", name)
        else:
            logger.debug("Container already gone: %s", name)

    def stop(self, container_id: str, timeout: float) -> None:
        grace = max(int(timeout) - 1, 1)
        result = self._run(["stop", "-t", str(grace), container_id], timeout)
        if result.returncode != 0:
            if _is_not_found(result.stderr):
                logger.debug("Container already gone: %s", container_id)
                return
            raise ProvisioningError(
                f"Failed to stop container {container_id}: "
                f"{result.stderr.strip()}"
            )
        logger.debug("Stopped container: %s", container_id)

    def remove(self, container_id: str, timeout: float) -> None:
        result = self._run(["rm", "-f", container_id], timeout)
        if result.returncode != 0:
            if _is_not_found(result.stderr):
                logger.debug("Container already gone: %s", container_id)
                return
            raise ProvisioningError(
                f"Failed to remove container {container_id}: "
                f"{result.stderr.strip()}"
            )
        logger.debug("Removed container: %s", container_id)

    def inspect(self, container_id: str, timeout: float) -> ContainerState:
        result = self._run(
            ["inspect", "--format", "{{json .State}}", container_id], timeout
        )
        if result.returncode != 0:
            if _is_not_found(result.stderr):
                return ContainerState.NOT_FOUND
            raise ProvisioningError(
                f"Failed to inspect container {container_id}: "
                f"{result.stderr.strip()}"
            )
        return _parse_state(result.stdout)

    def probe(self, container_id: str, timeout: float) -> bool:
        return self.inspect(container_id, timeout) is ContainerState.RUNNING

    def list_managed(self, timeout: float) -> list[str]:
        result = self._run(
            [
                "ps",
                "-a",
                "--no-trunc",
                "--filter",
                f"label={MANAGED_LABEL}=true",
                "--format",
                "{{.ID}}",
            ],
            timeout,
        )
        if result.returncode != 0:
            raise ProvisioningError(
                f"Failed to list managed containers: {result.stderr.strip()}"
            )
        return [
            line.strip() for line in result.stdout.splitlines() if line.strip()
        ]


def _parse_state(output: str) -> ContainerState:
    """Map ``{{json .State}}`` output to a ContainerState.

    A running container whose health check reports unhealthy maps to
    UNHEALTHY. Podman names the health key ``Health``; older releases
    use ``Healthcheck``.
    """
    try:
        state = json.loads(output)
    except json.JSONDecodeError:
        logger.warning("Unparseable container state: %r", output[:200])
        return ContainerState.UNKNOWN
    if not isinstance(state, dict):
        return ContainerState.UNKNOWN

    status = str(state.get("Status", "")).lower()
    health = state.get("Health") or state.get("Healthcheck") or {}
    if (
        status == "running"
        and isinstance(health, dict)
        and str(health.get("Status", "")).lower() == "unhealthy"
    ):
        return ContainerState.UNHEALTHY

    try:
        return ContainerState(status)
    except ValueError:
        return ContainerState.UNKNOWN
