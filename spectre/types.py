# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Domain types shared by the mirror service and the session manager.

Provides Repository, Permission, Branch, the MirrorState and SessionStatus
enums, the Session record, and the value objects returned by session
operations (SessionInfo, HealthResult, CleanupReport).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from spectre.errors import ValidationError


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class Repository:
    """A git repository managed by the platform.

    Attributes:
        id: Numeric repository identifier.
        git_url: Canonical remote URL.
        name: Display name.
    """

    id: int
    git_url: str
    name: str = ""


class MirrorState(Enum):
    """On-disk state of a repository's local mirror."""

    ABSENT = "absent"
    CLONING = "cloning"
    READY = "ready"


@dataclass(frozen=True)
class Permission:
    """Access grant of one user on one repository.

    Read-only input to the orchestrator. Defaults mirror the values the
    administrative workflow assigns to a fresh grant.

    Attributes:
        user_id: Grantee.
        repository_id: Repository the grant applies to.
        can_create_branches: Whether the user may create branches.
        branch_limit: Maximum number of branches the user may create.
        allowed_base_branches: Branches new branches may start from.
        allow_terminal_access: Whether the IDE exposes a terminal.
    """

    user_id: int
    repository_id: int
    can_create_branches: bool = False
    branch_limit: int = 5
    allowed_base_branches: frozenset[str] = frozenset({"main", "develop"})
    allow_terminal_access: bool = True

    def __post_init__(self) -> None:
        if self.branch_limit < 0:
            raise ValidationError(
                f"Branch limit must be >= 0: {self.branch_limit}"
            )


@dataclass(frozen=True)
class Branch:
    """A branch head in a mirror.

    Attributes:
        name: Short branch name (without ``refs/heads/``).
        commit: Full SHA the branch points to.
    """

    name: str
    commit: str


class SessionStatus(Enum):
    """Session lifecycle status.

    Sessions progress through: PENDING → RUNNING → STOPPED or ERROR.
    STOPPED and ERROR are terminal; a later create for the same triple
    produces a new session rather than resurrecting the old record.
    """

    PENDING = "pending"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"

    @classmethod
    def parse(cls, value: str) -> SessionStatus:
        """Parse a persisted status string.

        Raises:
            ValidationError: If the value is not a known status.
        """
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Unknown session status: {value!r}"
            ) from None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: SessionStatus) -> bool:
        """Whether the state machine allows moving to *target*."""
        return target in _TRANSITIONS[self]


TERMINAL_STATUSES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.STOPPED, SessionStatus.ERROR}
)

_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset(
        {SessionStatus.RUNNING, SessionStatus.ERROR}
    ),
    # running -> running is the reactivation path
    SessionStatus.RUNNING: frozenset(
        {SessionStatus.RUNNING, SessionStatus.STOPPED, SessionStatus.ERROR}
    ),
    SessionStatus.STOPPED: frozenset(),
    SessionStatus.ERROR: frozenset(),
}


@dataclass
class Session:
    """Record of one container-backed IDE session.

    The container ID doubles as the external session ID. Records are
    never deleted; terminal states are retained as history.

    Attributes:
        session_id: Container ID backing the session.
        user_id: Owner of the session.
        repository_id: Repository the workspace was cloned from.
        branch_name: Branch checked out in the workspace.
        container_url: URL the IDE is served at.
        container_name: Runtime container name.
        status: Current lifecycle status.
        created_at: When the session was created.
        last_accessed_at: Last create/reactivation/heartbeat time.
        updated_at: Last time the record changed.
    """

    session_id: str
    user_id: int
    repository_id: int
    branch_name: str
    container_url: str
    container_name: str = ""
    status: SessionStatus = SessionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def triple(self) -> tuple[int, int, str]:
        """The (user, repository, branch) key sessions are reused by."""
        return (self.user_id, self.repository_id, self.branch_name)

    def to_info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            container_url=self.container_url,
            status=self.status,
            created_at=self.created_at,
        )


@dataclass(frozen=True)
class SessionInfo:
    """Session identity returned to the caller for persistence."""

    session_id: str
    container_url: str
    status: SessionStatus
    created_at: datetime


@dataclass(frozen=True)
class HealthResult:
    """Outcome of probing one session's container.

    Attributes:
        session_id: Probed session.
        healthy: True only if the probe answered healthy in time.
        error: Why the session was judged unhealthy, if it was.
    """

    session_id: str
    healthy: bool
    error: str | None = None


@dataclass
class CleanupReport:
    """Outcome of an inactivity sweep.

    Attributes:
        cleaned: Session IDs stopped by the sweep.
        errors: One message per session that could not be stopped.
    """

    cleaned: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
