# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Session record persistence.

The session manager reads and writes Session records only through the
``SessionStore`` protocol.  Two implementations ship here: an in-memory
store for embedding and tests, and a JSON-file store that is loaded into
memory at startup and flushed to disk atomically on each write.

Stores hand out copies; mutating a returned Session does not change the
stored record until it is passed back to ``save()``.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from spectre.errors import StoreError, ValidationError
from spectre.types import Session, SessionStatus


logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    """Authoritative record of known sessions."""

    def get(self, session_id: str) -> Session | None: ...

    def save(self, session: Session) -> None: ...

    def list(
        self,
        status: SessionStatus | None = None,
        user_id: int | None = None,
    ) -> list[Session]: ...

    def find_running(
        self, user_id: int, repository_id: int, branch_name: str
    ) -> Session | None: ...


class InMemorySessionStore:
    """Thread-safe, process-local session store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return dataclasses.replace(session) if session else None

    def save(self, session: Session) -> None:
        with self._lock:
            previous = self._sessions.get(session.session_id)
            self._sessions[session.session_id] = dataclasses.replace(session)
            try:
                self._persist()
            except BaseException:
                # Memory never runs ahead of what is on disk
                if previous is None:
                    del self._sessions[session.session_id]
                else:
                    self._sessions[session.session_id] = previous
                raise

    def list(
        self,
        status: SessionStatus | None = None,
        user_id: int | None = None,
    ) -> list[Session]:
        with self._lock:
            return [
                dataclasses.replace(session)
                for session in self._sessions.values()
                if (status is None or session.status is status)
                and (user_id is None or session.user_id == user_id)
            ]

    def find_running(
        self, user_id: int, repository_id: int, branch_name: str
    ) -> Session | None:
        triple = (user_id, repository_id, branch_name)
        with self._lock:
            for session in self._sessions.values():
                if (
                    session.status is SessionStatus.RUNNING
                    and session.triple == triple
                ):
                    return dataclasses.replace(session)
        return None

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held."""


def session_to_dict(session: Session) -> dict[str, Any]:
    """Serialize a Session to a JSON-compatible dict."""
    return {
        "session_id": session.session_id,
        "user_id": session.user_id,
        "repository_id": session.repository_id,
        "branch_name": session.branch_name,
        "container_url": session.container_url,
        "container_name": session.container_name,
        "status": session.status.value,
        "created_at": session.created_at.isoformat(),
        "last_accessed_at": session.last_accessed_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
    }


def session_from_dict(data: dict[str, Any]) -> Session:
    """Deserialize a Session, validating its shape.

    Raises:
        ValidationError: If a field is missing or malformed.
    """
    try:
        return Session(
            session_id=str(data["session_id"]),
            user_id=int(data["user_id"]),
            repository_id=int(data["repository_id"]),
            branch_name=str(data["branch_name"]),
            container_url=str(data["container_url"]),
            container_name=str(data.get("container_name", "")),
            status=SessionStatus.parse(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_accessed_at=datetime.fromisoformat(data["last_accessed_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed session record: {e}") from e


class JsonSessionStore(InMemorySessionStore):
    """Session store backed by a single JSON file.

    The file holds ``{"sessions": [...]}``.  A missing file is an empty
    store; malformed entries are logged and skipped.  A file that cannot
    be read or parsed raises StoreError instead of loading as empty.

    Args:
        path: Location of the JSON file (parent created if missing).

    Raises:
        StoreError: If an existing file cannot be read or parsed.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            with open(self._path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise StoreError(
                f"Failed to load session store {self._path}: {e}"
            ) from e
        if not isinstance(data, dict):
            raise StoreError(
                f"Failed to load session store {self._path}: expected an "
                f"object, got {type(data).__name__}"
            )

        entries = data.get("sessions", [])
        if not isinstance(entries, list):
            raise StoreError(
                f"Failed to load session store {self._path}: "
                "'sessions' is not a list"
            )
        for entry in entries:
            try:
                session = session_from_dict(entry)
            except ValidationError as e:
                logger.warning(
                    "Skipping session entry in %s: %s", self._path, e
                )
                continue
            self._sessions[session.session_id] = session
        logger.info(
            "Loaded %d sessions from %s", len(self._sessions), self._path
        )

    def _persist(self) -> None:
        """Write all sessions to disk atomically."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "sessions": [
                session_to_dict(session)
                for session in self._sessions.values()
            ]
        }
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
        try:
            with open(fd, "w") as f:
                json.dump(payload, f, indent=2)
            Path(tmp).replace(self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
