# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Session lifecycle orchestration.

``SessionManager`` maps (user, repository, branch) requests to running
IDE containers and owns every state transition of the session records.

Locking:
- ``_lock`` guards the in-flight registries and the per-session lock
  table.  It is held only briefly and never while doing I/O.
- One lock per session serializes decisions about that session
  (reactivation, heartbeat, stop claim, health and status updates).
- Ordering: a session lock may be held while taking ``_lock``; never
  the other way around.

Creates for the same triple coalesce on one in-flight Future, and stops
of the same session coalesce the same way.  Provisioning and teardown
run with no lock held.
"""

from __future__ import annotations

import logging
import re
import secrets
import threading
import time
from typing import TypeAlias
from collections.abc import Callable, Iterator
from concurrent.futures import Future
from contextlib import contextmanager
from datetime import datetime, timedelta

from spectre.config import SpectreConfig
from spectre.container import (
    EXTENSIONS_MOUNT,
    WORKSPACE_MOUNT,
    ContainerHandle,
    ContainerRuntime,
    ContainerSpec,
    ContainerState,
    Mount,
)
from spectre.errors import (
    ConflictError,
    GitOperationError,
    NotFoundError,
    PermissionDeniedError,
    ProvisioningError,
    SessionLimitError,
    SpectreError,
)
from spectre.git_mirror import GitMirrorService, require_valid_branch_name
from spectre.session.maintenance import probe_sessions
from spectre.session.store import SessionStore
from spectre.types import (
    CleanupReport,
    HealthResult,
    Permission,
    Session,
    SessionInfo,
    SessionStatus,
    utcnow,
)


logger = logging.getLogger(__name__)

#: Seconds between readiness probes while a new container starts.
STARTUP_POLL_INTERVAL = 0.2

_STOPPED_STATES = frozenset(
    {ContainerState.EXITED, ContainerState.STOPPED, ContainerState.DEAD}
)

_Triple: TypeAlias = tuple[int, int, str]


def container_name_for(
    user_id: int, repository_id: int, branch_name: str
) -> str:
    """Build a unique, DNS-safe container name for a session."""
    safe_branch = re.sub(r"[^a-z0-9]+", "-", branch_name.lower()).strip("-")
    return (
        f"spectre-u{user_id}-r{repository_id}-{safe_branch[:40] or 'branch'}"
        f"-{secrets.token_hex(3)}"
    )


class SessionManager:
    """Creates, stops, and tracks container-backed IDE sessions.

    Args:
        runtime: Container runtime used for all container operations.
        git_mirror: Mirror service providing branches and workspaces.
        store: Authoritative session record store.
        config: Orchestrator configuration.
        clock: Source of the current time.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        git_mirror: GitMirrorService,
        store: SessionStore,
        config: SpectreConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._runtime = runtime
        self._git_mirror = git_mirror
        self._store = store
        self._config = config
        self._clock = clock

        self._lock = threading.Lock()
        self._session_locks: dict[str, threading.Lock] = {}
        self._inflight_creates: dict[_Triple, Future[SessionInfo]] = {}
        # Container ID per in-flight create, None until the start returns
        self._inflight_containers: dict[_Triple, str | None] = {}
        self._inflight_stops: dict[str, Future[bool]] = {}

    @property
    def store(self) -> SessionStore:
        return self._store

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Reconcile persisted sessions with the runtime.

        Orphaned containers are reaped and, when workspaces are removed on
        stop, workspaces left behind by dead sessions are pruned.
        """
        self._git_mirror.initialize()
        running = self._store.list(status=SessionStatus.RUNNING)
        for session in running:
            self.get_session_status(session.session_id)
        try:
            self.reap_orphaned_containers()
        except ProvisioningError as e:
            logger.error("Orphan reaping at startup failed: %s", e)
        if self._config.sessions.remove_workspace_on_stop:
            keep = [
                self._git_mirror.workspace_path(
                    s.repository_id, s.branch_name, s.user_id
                )
                for s in self._store.list(status=SessionStatus.RUNNING)
            ]
            pruned = self._git_mirror.prune_workspaces(keep)
            if pruned:
                logger.info("Pruned %d stale workspaces", pruned)
        logger.info(
            "Session manager started: %d sessions running",
            len(self._store.list(status=SessionStatus.RUNNING)),
        )

    def stop(self) -> None:
        """Stop every running session. Failures are logged per session."""
        running = self._store.list(status=SessionStatus.RUNNING)
        if running:
            logger.info("Stopping %d running sessions...", len(running))
        for session in running:
            try:
                self.stop_session(session.session_id)
            except SpectreError as e:
                logger.error(
                    "Failed to stop session %s: %s", session.session_id, e
                )
        logger.info("Session manager stopped")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _session_lock(self, session_id: str) -> Iterator[None]:
        with self._lock:
            if session_id not in self._session_locks:
                self._session_locks[session_id] = threading.Lock()
            lock = self._session_locks[session_id]
        with lock:
            yield

    def _is_stopping(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._inflight_stops

    def _transition(self, session: Session, target: SessionStatus) -> None:
        if not session.status.can_transition_to(target):
            raise ConflictError(
                f"Session {session.session_id} cannot move from "
                f"{session.status.value} to {target.value}"
            )
        session.status = target
        session.updated_at = self._clock()

    def _inspect(self, session_id: str) -> ContainerState | None:
        """Inspect a container; None if the runtime call itself failed."""
        try:
            return self._runtime.inspect(
                session_id, self._config.health.probe_timeout
            )
        except ProvisioningError as e:
            logger.warning("Failed to inspect container %s: %s", session_id, e)
            return None

    def _require(self, session_id: str) -> Session:
        session = self._store.get(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_session(
        self,
        user_id: int,
        repository_id: int,
        branch_name: str,
        permission: Permission,
    ) -> SessionInfo:
        """Return a running session for the triple, creating one if needed.

        Raises:
            ValidationError: If the branch name is malformed.
            PermissionDeniedError: If *permission* is for another user or
                repository.
            SessionLimitError: If a session quota is exhausted.
            NotFoundError: If the mirror or branch does not exist.
            ProvisioningError: If the container could not be brought up
                (everything created by the attempt has been removed).
        """
        require_valid_branch_name(branch_name)
        if (
            permission.user_id != user_id
            or permission.repository_id != repository_id
        ):
            raise PermissionDeniedError(
                f"Permission does not grant user {user_id} access to "
                f"repository {repository_id}"
            )

        triple: _Triple = (user_id, repository_id, branch_name)
        while True:
            info = self._try_reactivate(triple)
            if info is not None:
                return info

            pending_stop: Future[bool] | None = None
            with self._lock:
                future = self._inflight_creates.get(triple)
                owner = future is None
                if owner:
                    existing = self._store.find_running(*triple)
                    if existing is not None:
                        pending_stop = self._inflight_stops.get(
                            existing.session_id
                        )
                        if pending_stop is None:
                            # Another create finished since the reuse check
                            continue
                    else:
                        self._check_quotas(user_id)
                        future = Future()
                        self._inflight_creates[triple] = future
                        self._inflight_containers[triple] = None
            if pending_stop is not None:
                # The old session still owns the workspace until its
                # teardown commits
                self._await_stop(pending_stop, existing.session_id)
                continue
            break

        if not owner:
            logger.debug(
                "Joining in-flight create for user %d on %s (repository %d)",
                user_id,
                branch_name,
                repository_id,
            )
            return future.result()

        try:
            info = self._provision(triple, permission)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(info)
            return info
        finally:
            with self._lock:
                self._inflight_creates.pop(triple, None)
                self._inflight_containers.pop(triple, None)

    def _await_stop(self, stop: Future[bool], session_id: str) -> None:
        """Block until an in-flight stop of *session_id* has committed."""
        logger.debug("Waiting for in-flight stop of session %s", session_id)
        try:
            stop.result()
        except SpectreError as e:
            # The stopper reports the failure; the session is terminal
            # either way
            logger.debug(
                "In-flight stop of session %s failed: %s", session_id, e
            )

    def _try_reactivate(self, triple: _Triple) -> SessionInfo | None:
        """Return the live running session for *triple*, if there is one.

        A running record whose container is gone is moved to error.
        """
        existing = self._store.find_running(*triple)
        if existing is None or self._is_stopping(existing.session_id):
            return None

        state = self._inspect(existing.session_id)
        with self._session_lock(existing.session_id):
            current = self._store.get(existing.session_id)
            if (
                current is None
                or current.status is not SessionStatus.RUNNING
                or self._is_stopping(current.session_id)
            ):
                return None

            if state is ContainerState.RUNNING:
                now = self._clock()
                self._transition(current, SessionStatus.RUNNING)
                current.last_accessed_at = now
                self._store.save(current)
                logger.info(
                    "Reactivated session %s for user %d",
                    current.session_id,
                    current.user_id,
                )
                return current.to_info()

            self._transition(current, SessionStatus.ERROR)
            self._store.save(current)
            logger.warning(
                "Session %s container is gone (state %s); marked error",
                current.session_id,
                state.value if state else "unknown",
            )
            return None

    def _check_quotas(self, user_id: int) -> None:
        """Enforce session limits. Called with ``_lock`` held."""
        active = [
            session
            for session in self._store.list(status=SessionStatus.RUNNING)
            if session.session_id not in self._inflight_stops
        ]
        sessions_config = self._config.sessions

        user_count = sum(1 for s in active if s.user_id == user_id) + sum(
            1 for (uid, _, _) in self._inflight_creates if uid == user_id
        )
        if user_count >= sessions_config.max_sessions_per_user:
            raise SessionLimitError(
                f"User {user_id} already has {user_count} active sessions "
                f"(max {sessions_config.max_sessions_per_user})"
            )

        total = len(active) + len(self._inflight_creates)
        if total >= sessions_config.max_containers:
            raise SessionLimitError(
                f"Container limit reached ({sessions_config.max_containers})"
            )

    def _build_spec(
        self, triple: _Triple, workspace_mount: Mount, permission: Permission
    ) -> ContainerSpec:
        user_id, repository_id, branch_name = triple
        container_config = self._config.container

        mounts = [workspace_mount]
        if container_config.extensions_dir is not None:
            mounts.append(
                Mount(
                    container_config.extensions_dir,
                    EXTENSIONS_MOUNT,
                    read_only=True,
                )
            )

        env = {"DISABLE_TELEMETRY": "true"}
        if not permission.allow_terminal_access:
            env["DISABLE_TERMINAL"] = "true"

        return ContainerSpec(
            name=container_name_for(user_id, repository_id, branch_name),
            image=container_config.image,
            labels={
                "spectre.user-id": str(user_id),
                "spectre.repository-id": str(repository_id),
                "spectre.branch-name": branch_name,
            },
            mounts=tuple(mounts),
            env=env,
            memory=container_config.memory,
            cpus=container_config.cpus,
            network=container_config.network,
            port=container_config.port,
        )

    def _provision(
        self, triple: _Triple, permission: Permission
    ) -> SessionInfo:
        user_id, repository_id, branch_name = triple
        if not self._git_mirror.branch_exists(repository_id, branch_name):
            raise NotFoundError(
                f"Branch {branch_name!r} not found in repository "
                f"{repository_id}"
            )

        workspace_existed = self._git_mirror.workspace_path(
            repository_id, branch_name, user_id
        ).exists()
        handle: ContainerHandle | None = None
        try:
            workspace = self._git_mirror.prepare_workspace(
                repository_id, branch_name, user_id
            )
            spec = self._build_spec(
                triple, Mount(workspace, WORKSPACE_MOUNT), permission
            )
            handle = self._runtime.start(
                spec, self._config.sessions.startup_timeout
            )
            with self._lock:
                self._inflight_containers[triple] = handle.container_id
            self._wait_until_healthy(handle)

            now = self._clock()
            session = Session(
                session_id=handle.container_id,
                user_id=user_id,
                repository_id=repository_id,
                branch_name=branch_name,
                container_url=handle.url,
                container_name=handle.name,
                status=SessionStatus.PENDING,
                created_at=now,
                last_accessed_at=now,
                updated_at=now,
            )
            self._transition(session, SessionStatus.RUNNING)
            self._store.save(session)
        except Exception as e:
            self._rollback(
                triple, handle, remove_workspace=not workspace_existed
            )
            if isinstance(e, ProvisioningError):
                raise
            if isinstance(e, (GitOperationError, OSError)):
                raise ProvisioningError(
                    f"Failed to provision session for user {user_id} on "
                    f"{branch_name} (repository {repository_id}): {e}"
                ) from e
            raise

        logger.info(
            "Created session %s for user %d on %s (repository %d): %s",
            session.session_id[:12],
            user_id,
            branch_name,
            repository_id,
            session.container_url,
        )
        return session.to_info()

    def _wait_until_healthy(self, handle: ContainerHandle) -> None:
        startup_timeout = self._config.sessions.startup_timeout
        deadline = time.monotonic() + startup_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProvisioningError(
                    f"Container {handle.name} not healthy after "
                    f"{startup_timeout}s"
                )
            probe_timeout = min(remaining, self._config.health.probe_timeout)
            if self._runtime.probe(handle.container_id, probe_timeout):
                logger.debug("Container %s is healthy", handle.name)
                return
            time.sleep(
                min(STARTUP_POLL_INTERVAL, max(deadline - time.monotonic(), 0))
            )

    def _rollback(
        self,
        triple: _Triple,
        handle: ContainerHandle | None,
        *,
        remove_workspace: bool,
    ) -> None:
        user_id, repository_id, branch_name = triple
        logger.warning(
            "Rolling back failed create for user %d on %s (repository %d)",
            user_id,
            branch_name,
            repository_id,
        )
        if handle is not None:
            try:
                self._runtime.remove(
                    handle.container_id, self._config.sessions.stop_timeout
                )
            except ProvisioningError as e:
                # Left for the orphan reaper
                logger.error(
                    "Failed to remove container %s during rollback: %s",
                    handle.name,
                    e,
                )
        if remove_workspace:
            try:
                self._git_mirror.remove_workspace(
                    repository_id, branch_name, user_id
                )
            except OSError as e:
                logger.error(
                    "Failed to remove workspace during rollback: %s", e
                )

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def stop_session(self, session_id: str) -> bool:
        """Stop a session's container and mark it stopped.

        Returns:
            True if this call stopped the session, False if it was
            already stopped (or another call was stopping it).

        Raises:
            NotFoundError: If the session is unknown.
            ProvisioningError: If teardown failed (session is now error).
        """
        return self._stop(session_id)

    def _stop(
        self, session_id: str, idle_before: datetime | None = None
    ) -> bool:
        """Claim, tear down, and commit a stop.

        With *idle_before*, the stop is only claimed if the session is
        still running and was last accessed before that time.
        """
        with self._session_lock(session_id):
            session = self._require(session_id)
            with self._lock:
                future = self._inflight_stops.get(session_id)
            owner = future is None
            if owner:
                if session.status.is_terminal:
                    return False
                if idle_before is not None and (
                    session.status is not SessionStatus.RUNNING
                    or session.last_accessed_at >= idle_before
                ):
                    return False
                if not session.status.can_transition_to(SessionStatus.STOPPED):
                    raise ConflictError(
                        f"Session {session_id} cannot be stopped while "
                        f"{session.status.value}"
                    )
                future = Future()
                with self._lock:
                    self._inflight_stops[session_id] = future

        if not owner:
            future.result()
            return False

        try:
            self._teardown(session)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(True)
        finally:
            with self._lock:
                self._inflight_stops.pop(session_id, None)
        return True

    def _teardown(self, session: Session) -> None:
        stop_timeout = self._config.sessions.stop_timeout
        try:
            self._runtime.stop(session.session_id, stop_timeout)
            self._runtime.remove(session.session_id, stop_timeout)
            if self._config.sessions.remove_workspace_on_stop:
                self._git_mirror.remove_workspace(
                    session.repository_id, session.branch_name, session.user_id
                )
        except (ProvisioningError, OSError) as e:
            self._commit_status(session.session_id, SessionStatus.ERROR)
            logger.error("Failed to stop session %s: %s", session.session_id, e)
            if isinstance(e, ProvisioningError):
                raise
            raise ProvisioningError(
                f"Failed to stop session {session.session_id}: {e}"
            ) from e

        self._commit_status(session.session_id, SessionStatus.STOPPED)
        logger.info("Stopped session %s", session.session_id[:12])

    def _commit_status(self, session_id: str, target: SessionStatus) -> None:
        with self._session_lock(session_id):
            current = self._require(session_id)
            if current.status.can_transition_to(target):
                self._transition(current, target)
                self._store.save(current)

    # ------------------------------------------------------------------
    # Status, heartbeat, listing
    # ------------------------------------------------------------------

    def get_session_status(self, session_id: str) -> SessionInfo:
        """Reconcile a session's status with its container and return it.

        Raises:
            NotFoundError: If the session is unknown.
        """
        session = self._require(session_id)
        if session.status.is_terminal or self._is_stopping(session_id):
            return session.to_info()

        state = self._inspect(session_id)
        if state is ContainerState.RUNNING:
            derived = SessionStatus.RUNNING
        elif state in _STOPPED_STATES:
            derived = SessionStatus.STOPPED
        else:
            derived = SessionStatus.ERROR

        with self._session_lock(session_id):
            current = self._require(session_id)
            if (
                current.status.is_terminal
                or self._is_stopping(session_id)
                or derived is current.status
                or not current.status.can_transition_to(derived)
            ):
                return current.to_info()
            self._transition(current, derived)
            self._store.save(current)
            logger.info(
                "Session %s reconciled to %s (container state %s)",
                session_id[:12],
                derived.value,
                state.value if state else "unknown",
            )
            return current.to_info()

    def touch_session(self, session_id: str) -> Session:
        """Record activity on a running session.

        Raises:
            NotFoundError: If the session is unknown.
            ConflictError: If the session is not running or is stopping.
        """
        with self._session_lock(session_id):
            session = self._require(session_id)
            if (
                session.status is not SessionStatus.RUNNING
                or self._is_stopping(session_id)
            ):
                raise ConflictError(
                    f"Session {session_id} is not running "
                    f"({session.status.value})"
                )
            now = self._clock()
            session.last_accessed_at = now
            session.updated_at = now
            self._store.save(session)
            return session

    def list_sessions(
        self,
        user_id: int | None = None,
        status: SessionStatus | None = None,
    ) -> list[Session]:
        """Sessions matching the filters, most recently accessed first."""
        sessions = self._store.list(status=status, user_id=user_id)
        sessions.sort(key=lambda s: s.last_accessed_at, reverse=True)
        return sessions

    # ------------------------------------------------------------------
    # Health, cleanup, orphans
    # ------------------------------------------------------------------

    def perform_health_checks(self) -> list[HealthResult]:
        """Probe all non-terminal sessions; unhealthy running ones -> error."""
        sessions = [
            session
            for session in self._store.list()
            if not session.status.is_terminal
        ]
        results = probe_sessions(
            self._runtime,
            sessions,
            probe_timeout=self._config.health.probe_timeout,
            max_workers=self._config.health.max_workers,
        )

        for result in results:
            if result.healthy:
                continue
            with self._session_lock(result.session_id):
                current = self._store.get(result.session_id)
                if (
                    current is None
                    or current.status is not SessionStatus.RUNNING
                    or self._is_stopping(result.session_id)
                ):
                    continue
                self._transition(current, SessionStatus.ERROR)
                self._store.save(current)
            logger.warning(
                "Session %s failed health check: %s",
                result.session_id[:12],
                result.error,
            )
        return results

    def cleanup_inactive_sessions(self) -> CleanupReport:
        """Stop running sessions idle for longer than the inactivity timeout.

        The cutoff is fixed when the sweep starts; each session's last
        access is re-read under its lock when the decision is made.
        """
        cutoff = self._clock() - timedelta(
            minutes=self._config.sessions.inactivity_timeout_minutes
        )
        report = CleanupReport()

        for candidate in self._store.list(status=SessionStatus.RUNNING):
            if candidate.last_accessed_at >= cutoff:
                continue
            try:
                if self._stop(candidate.session_id, idle_before=cutoff):
                    report.cleaned.append(candidate.session_id)
                    logger.info(
                        "Stopped inactive session %s (last access %s)",
                        candidate.session_id[:12],
                        candidate.last_accessed_at.isoformat(),
                    )
            except SpectreError as e:
                logger.error(
                    "Failed to clean up session %s: %s",
                    candidate.session_id,
                    e,
                )
                report.errors.append(f"{candidate.session_id}: {e}")

        try:
            self.reap_orphaned_containers()
        except ProvisioningError as e:
            logger.error("Orphan reaping failed: %s", e)
            report.errors.append(f"orphan reaping: {e}")

        return report

    def reap_orphaned_containers(self) -> list[str]:
        """Remove managed containers that back no running session.

        Skipped while a create is between starting its container and
        learning the container ID.

        Returns:
            IDs of removed containers.

        Raises:
            ProvisioningError: If managed containers cannot be listed.
        """
        stop_timeout = self._config.sessions.stop_timeout
        listed = self._runtime.list_managed(stop_timeout)

        with self._lock:
            if any(cid is None for cid in self._inflight_containers.values()):
                logger.debug("Create in flight; deferring orphan reaping")
                return []
            known = {
                cid for cid in self._inflight_containers.values() if cid
            }
        known.update(
            session.session_id
            for session in self._store.list(status=SessionStatus.RUNNING)
        )

        reaped = []
        for container_id in listed:
            if container_id in known:
                continue
            try:
                self._runtime.remove(container_id, stop_timeout)
            except ProvisioningError as e:
                logger.error(
                    "Failed to remove orphaned container %s: %s",
                    container_id[:12],
                    e,
                )
                continue
            logger.info("Removed orphaned container %s", container_id[:12])
            reaped.append(container_id)
        return reaped
