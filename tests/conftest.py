# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test packages."""

import subprocess
import threading
import time
import uuid
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from spectre.config import (
    ContainerConfig,
    GitConfig,
    HealthConfig,
    SessionsConfig,
    SpectreConfig,
    StorageConfig,
)
from spectre.container import ContainerHandle, ContainerSpec, ContainerState
from spectre.errors import ProvisioningError
from spectre.git_mirror import GitMirrorService
from spectre.logging import SecretFilter
from spectre.session.store import InMemorySessionStore


REPO_ID = 1


def _git(*args: str, cwd: Path | None = None) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@pytest.fixture(autouse=True)
def _clear_secrets() -> Iterator[None]:
    yield
    SecretFilter.clear_secrets()


@pytest.fixture
def origin_repo(tmp_path: Path) -> Path:
    """Create a bare origin repository with ``main`` and ``develop``.

    Returns:
        Path to the bare repository.
    """
    work = tmp_path / "origin_work"
    work.mkdir()
    _git("init", "-b", "main", cwd=work)
    _git("config", "user.name", "Test User", cwd=work)
    _git("config", "user.email", "test@example.com", cwd=work)

    (work / "README.md").write_text("# Test Repo\n")
    _git("add", ".", cwd=work)
    _git("commit", "-m", "Initial commit", cwd=work)

    _git("checkout", "-b", "develop", cwd=work)
    (work / "feature.txt").write_text("in progress\n")
    _git("add", ".", cwd=work)
    _git("commit", "-m", "Develop work", cwd=work)
    _git("checkout", "main", cwd=work)

    bare = tmp_path / "origin.git"
    _git("clone", "--bare", str(work), str(bare))
    return bare


@pytest.fixture
def origin_url(origin_repo: Path) -> str:
    return f"file://{origin_repo}"


@pytest.fixture
def mirror_service(tmp_path: Path) -> GitMirrorService:
    """A GitMirrorService with no mirrors yet."""
    service = GitMirrorService(
        tmp_path / "mirrors",
        tmp_path / "workspaces",
        git_timeout=30,
    )
    service.initialize()
    return service


@pytest.fixture
def cloned_mirror(
    mirror_service: GitMirrorService, origin_url: str
) -> GitMirrorService:
    """A GitMirrorService with repository REPO_ID already mirrored."""
    mirror_service.clone_repository(origin_url, REPO_ID)
    return mirror_service


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs: float) -> None:
        with self._lock:
            self._now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FakeRuntime:
    """Thread-safe in-memory ContainerRuntime.

    Attributes:
        start_delay: Seconds each start() sleeps before creating.
        fail_start: Make start() raise.
        never_ready: Make probe() always answer unhealthy.
        fail_stop: Make stop() raise.
        hung: Container IDs whose probes block until ``release`` is set.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.containers: dict[str, ContainerState] = {}
        self.names: dict[str, str] = {}
        self.specs: list[ContainerSpec] = []
        self.removed: list[str] = []
        self.start_count = 0
        self.stop_count = 0
        self.start_delay = 0.0
        self.fail_start = False
        self.never_ready = False
        self.fail_stop = False
        self.hung: set[str] = set()
        self.release = threading.Event()

    def start(self, spec: ContainerSpec, timeout: float) -> ContainerHandle:
        with self._lock:
            self.start_count += 1
            self.specs.append(spec)
        if self.start_delay:
            time.sleep(self.start_delay)
        if self.fail_start:
            raise ProvisioningError(f"Failed to start container {spec.name}")
        container_id = uuid.uuid4().hex + uuid.uuid4().hex
        with self._lock:
            self.containers[container_id] = ContainerState.RUNNING
            self.names[container_id] = spec.name
        return ContainerHandle(
            container_id=container_id,
            name=spec.name,
            url=f"http://{spec.name}.test",
        )

    def stop(self, container_id: str, timeout: float) -> None:
        with self._lock:
            self.stop_count += 1
        if self.fail_stop:
            raise ProvisioningError(f"Failed to stop container {container_id}")
        with self._lock:
            if container_id in self.containers:
                self.containers[container_id] = ContainerState.EXITED

    def remove(self, container_id: str, timeout: float) -> None:
        with self._lock:
            self.containers.pop(container_id, None)
            self.removed.append(container_id)

    def probe(self, container_id: str, timeout: float) -> bool:
        if container_id in self.hung:
            self.release.wait()
        if self.never_ready:
            return False
        return self.inspect(container_id, timeout) is ContainerState.RUNNING

    def inspect(self, container_id: str, timeout: float) -> ContainerState:
        with self._lock:
            return self.containers.get(container_id, ContainerState.NOT_FOUND)

    def list_managed(self, timeout: float) -> list[str]:
        with self._lock:
            return list(self.containers)

    def set_state(self, container_id: str, state: ContainerState) -> None:
        with self._lock:
            if state is ContainerState.NOT_FOUND:
                self.containers.pop(container_id, None)
            else:
                self.containers[container_id] = state

    def add_orphan(self) -> str:
        container_id = uuid.uuid4().hex + uuid.uuid4().hex
        with self._lock:
            self.containers[container_id] = ContainerState.RUNNING
        return container_id


@pytest.fixture
def fake_runtime() -> Iterator[FakeRuntime]:
    runtime = FakeRuntime()
    yield runtime
    # Unblock any probe threads left hanging by the test
    runtime.release.set()


@pytest.fixture
def spectre_config(tmp_path: Path) -> SpectreConfig:
    """Configuration with short timeouts, rooted in tmp_path."""
    return SpectreConfig(
        storage=StorageConfig(
            mirrors_dir=tmp_path / "mirrors",
            workspaces_dir=tmp_path / "workspaces",
            sessions_file=tmp_path / "sessions.json",
        ),
        git=GitConfig(timeout=30),
        container=ContainerConfig(url_template="http://{name}.test"),
        sessions=SessionsConfig(startup_timeout=2, stop_timeout=1),
        health=HealthConfig(probe_timeout=0.5, max_workers=4),
    )


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()
