# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Local git mirrors, one per repository, plus per-session workspaces.

Each repository gets a bare ``--mirror`` clone under ``mirrors_dir``.
Branch listing and branch creation run against the mirror; IDE sessions
get a regular clone of one branch (a *workspace*) that is mounted into
their container.

Concurrency:
- Writers (clone, update, branch creation) hold an exclusive lock.
- Readers (branch listing, workspace checkout) hold a shared lock.
- Locks are two-level: an in-process ``threading`` lock per repository
  and an ``fcntl.flock`` on a lock file next to the mirror, so separate
  processes sharing the mirrors directory are serialized too.
- Concurrent clones of the same repository coalesce into one in-flight
  clone whose outcome every caller observes.
"""

from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import re
import shutil
import subprocess
import tempfile
import threading
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from spectre.errors import (
    ConflictError,
    GitOperationError,
    NotFoundError,
    ValidationError,
)
from spectre.types import Branch, MirrorState, utcnow


logger = logging.getLogger(__name__)

MAX_BRANCH_NAME_LENGTH = 250

#: Grammar accepted by validate_branch_name(), as a single expression.
BRANCH_NAME_PATTERN = re.compile(
    r"""
    (?!.*\.\.)              # no '..'
    (?!.*//)                # no empty path component
    (?!(?:.*/)?\.)          # no component starting with '.'
    (?!(?:.*/)?[^/]*\.lock(?:/|\Z))  # no component ending in .lock
    (?![-/])                # no leading dash or slash
    [A-Za-z0-9._/+-]{1,250}
    (?<![/.])               # no trailing slash or dot
    \Z
    """,
    re.VERBOSE,
)

_ALLOWED_CHARS = re.compile(r"[A-Za-z0-9._/+-]+")

# (pattern, message) rules applied in order; the first match rejects.
_BRANCH_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"^-"), "Cannot start with dash"),
    (re.compile(r"^/"), "Cannot start with slash"),
    (re.compile(r"/$"), "Cannot end with slash"),
    (re.compile(r"\.\."), "Cannot contain double dots"),
    (re.compile(r"//"), "Cannot contain double slash"),
    (re.compile(r"(^|/)\."), "Path components cannot start with dot"),
    (re.compile(r"\.$"), "Cannot end with dot"),
    (
        re.compile(r"\.lock(/|$)"),
        "Path components cannot end with .lock",
    ),
]

_SCP_URL = re.compile(r"^[\w.-]+@[\w.-]+:[\w./~-]+?(\.git)?/?$")
_SCHEME_URL = re.compile(r"^(https|ssh|file)://[^\s]+$")


@dataclass(frozen=True)
class BranchNameCheck:
    """Result of validate_branch_name().

    Attributes:
        valid: Whether the name is acceptable.
        error: Human-readable reason when invalid.
    """

    valid: bool
    error: str | None = None


def validate_branch_name(name: str) -> BranchNameCheck:
    """Check a proposed branch name without touching any repository.

    Pure function: no I/O, no side effects.

    Args:
        name: Proposed branch name (without ``refs/heads/``).

    Returns:
        BranchNameCheck describing the first rule the name breaks.
    """
    if not name:
        return BranchNameCheck(False, "Branch name cannot be empty")
    if len(name) > MAX_BRANCH_NAME_LENGTH:
        return BranchNameCheck(
            False,
            f"Branch name too long (max {MAX_BRANCH_NAME_LENGTH} characters)",
        )
    if not _ALLOWED_CHARS.fullmatch(name):
        return BranchNameCheck(
            False,
            "Only letters, digits, and . _ / + - are allowed",
        )
    for pattern, message in _BRANCH_RULES:
        if pattern.search(name):
            return BranchNameCheck(False, message)
    return BranchNameCheck(True)


def require_valid_branch_name(name: str) -> None:
    """Raise ValidationError unless *name* passes validate_branch_name()."""
    check = validate_branch_name(name)
    if not check.valid:
        raise ValidationError(f"Invalid branch name {name!r}: {check.error}")


def validate_git_url(git_url: str) -> None:
    """Accept SSH (scp-style or ``ssh://``), HTTPS, and ``file://`` URLs.

    Raises:
        ValidationError: If the URL has none of the supported forms.
    """
    if not git_url or not (
        _SCP_URL.match(git_url) or _SCHEME_URL.match(git_url)
    ):
        raise ValidationError(
            f"Unsupported git URL {git_url!r}: expected "
            "git@host:owner/repo.git, ssh://, https:// or file://"
        )


def safe_path_component(name: str) -> str:
    """Map a branch name to a single filesystem path component.

    The readable part replaces unsafe characters with ``_``; a short
    digest of the original name keeps distinct branches (``feat/x`` and
    ``feat_x``) on distinct paths.
    """
    sanitized = re.sub(r"[^a-zA-Z0-9_-]", "_", name)
    digest = hashlib.sha256(name.encode()).hexdigest()[:8]
    return f"{sanitized}-{digest}"


class GitMirrorService:
    """Owns one bare mirror per repository ID.

    Attributes:
        mirrors_dir: Directory holding ``repo_<id>.git`` mirrors.
        workspaces_dir: Directory holding per-session workspaces.
    """

    def __init__(
        self,
        mirrors_dir: Path,
        workspaces_dir: Path,
        *,
        git_timeout: float = 300,
        deploy_keys_dir: Path | None = None,
        push_new_branches: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.mirrors_dir = mirrors_dir
        self.workspaces_dir = workspaces_dir
        self._git_timeout = git_timeout
        self._deploy_keys_dir = deploy_keys_dir
        self._push_new_branches = push_new_branches
        self._clock = clock

        self._lock = threading.Lock()
        self._repo_locks: dict[int, threading.RLock] = {}
        self._inflight_clones: dict[int, Future[None]] = {}
        self._last_fetched: dict[int, datetime] = {}

    def initialize(self) -> None:
        """Create the mirrors and workspaces directories."""
        self.mirrors_dir.mkdir(parents=True, exist_ok=True)
        self.workspaces_dir.mkdir(parents=True, exist_ok=True)
        logger.info(
            "Git mirror service initialized: mirrors=%s, workspaces=%s",
            self.mirrors_dir,
            self.workspaces_dir,
        )

    # ------------------------------------------------------------------
    # Paths and state
    # ------------------------------------------------------------------

    def mirror_path(self, repository_id: int) -> Path:
        return self.mirrors_dir / f"repo_{repository_id}.git"

    def _lock_file(self, repository_id: int) -> Path:
        path = self.mirror_path(repository_id)
        return path.parent / f".{path.name}.lock"

    def workspace_path(
        self, repository_id: int, branch_name: str, user_id: int
    ) -> Path:
        return (
            self.workspaces_dir
            / f"repo_{repository_id}"
            / f"user_{user_id}"
            / safe_path_component(branch_name)
        )

    def get_mirror_state(self, repository_id: int) -> MirrorState:
        """Current state of a repository's mirror."""
        with self._lock:
            if repository_id in self._inflight_clones:
                return MirrorState.CLONING
        if self.mirror_path(repository_id).exists():
            return MirrorState.READY
        return MirrorState.ABSENT

    def last_fetched_at(self, repository_id: int) -> datetime | None:
        """When the mirror was last cloned or updated by this service."""
        with self._lock:
            return self._last_fetched.get(repository_id)

    def _repo_lock(self, repository_id: int) -> threading.RLock:
        with self._lock:
            if repository_id not in self._repo_locks:
                self._repo_locks[repository_id] = threading.RLock()
            return self._repo_locks[repository_id]

    @contextmanager
    def _locked(
        self, repository_id: int, *, exclusive: bool
    ) -> Iterator[None]:
        """Hold the repository lock (in-process and on-disk).

        Readers in the same process still serialize on the thread lock;
        the file lock is what lets other processes share read access.
        """
        lock_file = self._lock_file(repository_id)
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        with self._repo_lock(repository_id):
            with open(lock_file, "w") as lock:
                fcntl.flock(lock.fileno(), mode)
                yield

    def _require_mirror(self, repository_id: int) -> Path:
        path = self.mirror_path(repository_id)
        if not path.exists():
            raise NotFoundError(
                f"Mirror for repository {repository_id} does not exist. "
                "Call clone_repository() first."
            )
        return path

    # ------------------------------------------------------------------
    # Git plumbing
    # ------------------------------------------------------------------

    def _git_env(self, repository_id: int) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        if self._deploy_keys_dir is not None:
            key_path = self._deploy_keys_dir / f"repo_{repository_id}"
            if key_path.exists():
                env["GIT_SSH_COMMAND"] = (
                    f"ssh -i {key_path} -o IdentitiesOnly=yes "
                    "-o StrictHostKeyChecking=accept-new"
                )
        return env

    def _run_git(
        self,
        args: list[str],
        *,
        repository_id: int,
        action: str,
    ) -> subprocess.CompletedProcess[str]:
        """Run git, translating failures and timeouts to GitOperationError."""
        try:
            return subprocess.run(
                ["git", *args],
                check=True,
                capture_output=True,
                text=True,
                timeout=self._git_timeout,
                env=self._git_env(repository_id),
            )
        except subprocess.CalledProcessError as e:
            error_msg = e.stderr.strip() if e.stderr else str(e)
            logger.error(
                "Failed to %s for repository %d: %s",
                action,
                repository_id,
                error_msg,
            )
            raise GitOperationError(f"Failed to {action}: {error_msg}") from e
        except subprocess.TimeoutExpired as e:
            logger.error(
                "Timed out after %ss trying to %s for repository %d",
                self._git_timeout,
                action,
                repository_id,
            )
            raise GitOperationError(
                f"Failed to {action}: timed out after {self._git_timeout}s"
            ) from e

    def _resolve_branch(self, mirror: Path, branch_name: str) -> str | None:
        """Return the commit a branch points to, or None if absent."""
        result = subprocess.run(
            [
                "git",
                "-C",
                str(mirror),
                "rev-parse",
                "--verify",
                "--quiet",
                f"refs/heads/{branch_name}^{{commit}}",
            ],
            capture_output=True,
            text=True,
            timeout=self._git_timeout,
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    # ------------------------------------------------------------------
    # Mirror lifecycle
    # ------------------------------------------------------------------

    def clone_repository(self, git_url: str, repository_id: int) -> None:
        """Create the mirror for a repository if it does not exist yet.

        Idempotent: a ready mirror returns without any network operation.
        Concurrent calls for the same repository share one clone.

        Raises:
            ValidationError: If the URL is malformed.
            GitOperationError: If the clone fails (mirror stays absent).
        """
        validate_git_url(git_url)

        if self.mirror_path(repository_id).exists():
            logger.debug(
                "Mirror for repository %d already exists", repository_id
            )
            return

        with self._lock:
            future = self._inflight_clones.get(repository_id)
            owner = future is None
            if owner:
                future = Future()
                self._inflight_clones[repository_id] = future

        if not owner:
            logger.debug(
                "Joining in-flight clone of repository %d", repository_id
            )
            future.result()
            return

        try:
            self._clone(git_url, repository_id)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(None)
        finally:
            with self._lock:
                self._inflight_clones.pop(repository_id, None)

    def _clone(self, git_url: str, repository_id: int) -> None:
        mirror = self.mirror_path(repository_id)
        with self._locked(repository_id, exclusive=True):
            # Another process may have finished the clone while we waited
            if mirror.exists():
                return

            logger.info(
                "Cloning repository %d from %s into %s",
                repository_id,
                git_url,
                mirror,
            )
            mirror.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(
                tempfile.mkdtemp(
                    prefix=f".{mirror.name}.", dir=mirror.parent
                )
            )
            try:
                self._run_git(
                    ["clone", "--mirror", git_url, str(staging)],
                    repository_id=repository_id,
                    action="clone repository",
                )
                staging.rename(mirror)
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise

        with self._lock:
            self._last_fetched[repository_id] = self._clock()
        logger.info("Repository %d cloned successfully", repository_id)

    def update_repository(self, repository_id: int) -> None:
        """Fetch all refs from origin into the mirror, pruning deleted refs.

        Raises:
            NotFoundError: If the mirror does not exist.
            GitOperationError: If the fetch fails.
        """
        with self._locked(repository_id, exclusive=True):
            mirror = self._require_mirror(repository_id)
            logger.info("Updating mirror for repository %d", repository_id)
            self._run_git(
                ["-C", str(mirror), "remote", "update", "--prune"],
                repository_id=repository_id,
                action="update repository",
            )
        with self._lock:
            self._last_fetched[repository_id] = self._clock()
        logger.info("Repository %d updated successfully", repository_id)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def list_branches(self, repository_id: int) -> Iterator[Branch]:
        """List branch heads as the mirror currently stands.

        Every call re-reads the mirror; nothing is cached.

        Raises:
            NotFoundError: If the mirror does not exist.
            GitOperationError: If the refs cannot be read.
        """
        with self._locked(repository_id, exclusive=False):
            mirror = self._require_mirror(repository_id)
            result = self._run_git(
                [
                    "-C",
                    str(mirror),
                    "for-each-ref",
                    "--format=%(refname:lstrip=2)%00%(objectname)",
                    "refs/heads/",
                ],
                repository_id=repository_id,
                action="list branches",
            )

        branches = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            name, _, commit = line.partition("\0")
            branches.append(Branch(name=name, commit=commit))
        logger.debug(
            "Listed %d branches for repository %d",
            len(branches),
            repository_id,
        )
        return iter(branches)

    def branch_exists(self, repository_id: int, branch_name: str) -> bool:
        """Whether the mirror has a head named *branch_name*.

        Raises:
            NotFoundError: If the mirror does not exist.
        """
        with self._locked(repository_id, exclusive=False):
            mirror = self._require_mirror(repository_id)
            return self._resolve_branch(mirror, branch_name) is not None

    def create_branch(
        self, repository_id: int, branch_name: str, base_branch: str
    ) -> Branch:
        """Create *branch_name* at the tip of *base_branch*.

        The ref is created with ``git update-ref`` and an empty old value,
        so git refuses to overwrite a ref that appeared concurrently. When
        push is enabled the branch is published to origin; if that fails
        the local ref is removed again.

        Raises:
            ValidationError: If the branch name is malformed.
            NotFoundError: If the mirror or the base branch is missing.
            ConflictError: If the branch already exists.
            GitOperationError: If creating or pushing the ref fails.
        """
        require_valid_branch_name(branch_name)

        with self._locked(repository_id, exclusive=True):
            mirror = self._require_mirror(repository_id)

            base_commit = self._resolve_branch(mirror, base_branch)
            if base_commit is None:
                raise NotFoundError(
                    f"Base branch {base_branch!r} not found in repository "
                    f"{repository_id}"
                )
            if self._resolve_branch(mirror, branch_name) is not None:
                raise ConflictError(
                    f"Branch {branch_name!r} already exists in repository "
                    f"{repository_id}"
                )

            ref = f"refs/heads/{branch_name}"
            try:
                self._run_git(
                    ["-C", str(mirror), "update-ref", ref, base_commit, ""],
                    repository_id=repository_id,
                    action=f"create branch {branch_name}",
                )
            except GitOperationError as e:
                # Lost a race against another process
                if self._resolve_branch(mirror, branch_name) is not None:
                    raise ConflictError(
                        f"Branch {branch_name!r} already exists in "
                        f"repository {repository_id}"
                    ) from e
                raise

            if self._push_new_branches:
                try:
                    # Mirror remotes refuse explicit refspecs
                    self._run_git(
                        [
                            "-C",
                            str(mirror),
                            "-c",
                            "remote.origin.mirror=false",
                            "push",
                            "origin",
                            f"{ref}:{ref}",
                        ],
                        repository_id=repository_id,
                        action=f"push branch {branch_name}",
                    )
                except GitOperationError:
                    subprocess.run(
                        ["git", "-C", str(mirror), "update-ref", "-d", ref],
                        capture_output=True,
                        text=True,
                        timeout=self._git_timeout,
                    )
                    raise

        logger.info(
            "Created branch %s from %s (%s) in repository %d",
            branch_name,
            base_branch,
            base_commit[:12],
            repository_id,
        )
        return Branch(name=branch_name, commit=base_commit)

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    def prepare_workspace(
        self, repository_id: int, branch_name: str, user_id: int
    ) -> Path:
        """Check out *branch_name* into the user's workspace for a session.

        Clones from the local mirror (no network), then points ``origin``
        at the upstream URL so pushes from the IDE reach the real remote.
        An existing workspace is reused as-is.

        Returns:
            Path to the workspace.

        Raises:
            NotFoundError: If the mirror does not exist.
            GitOperationError: If the checkout fails (nothing is left
                behind on disk).
        """
        dest = self.workspace_path(repository_id, branch_name, user_id)
        if dest.exists():
            logger.debug("Reusing workspace %s", dest)
            return dest

        with self._locked(repository_id, exclusive=False):
            mirror = self._require_mirror(repository_id)
            dest.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._run_git(
                    [
                        "clone",
                        "--quiet",
                        "--branch",
                        branch_name,
                        str(mirror),
                        str(dest),
                    ],
                    repository_id=repository_id,
                    action=f"check out {branch_name}",
                )
                upstream = self._run_git(
                    ["-C", str(mirror), "config", "--get", "remote.origin.url"],
                    repository_id=repository_id,
                    action="read upstream URL",
                ).stdout.strip()
                self._run_git(
                    ["-C", str(dest), "remote", "set-url", "origin", upstream],
                    repository_id=repository_id,
                    action="set workspace origin",
                )
            except GitOperationError:
                shutil.rmtree(dest, ignore_errors=True)
                raise

        logger.info(
            "Prepared workspace for user %d on %s (repository %d): %s",
            user_id,
            branch_name,
            repository_id,
            dest,
        )
        return dest

    def remove_workspace(
        self, repository_id: int, branch_name: str, user_id: int
    ) -> None:
        """Delete a session workspace. Safe if it does not exist."""
        dest = self.workspace_path(repository_id, branch_name, user_id)
        if not dest.exists():
            return
        shutil.rmtree(dest)
        logger.info("Removed workspace %s", dest)

    def prune_workspaces(self, keep: Iterable[Path]) -> int:
        """Remove workspace directories not listed in *keep*.

        Returns:
            Number of workspaces removed.
        """
        keep_set = {path.resolve() for path in keep}
        removed = 0
        if not self.workspaces_dir.exists():
            return 0
        for workspace in self.workspaces_dir.glob("repo_*/user_*/*"):
            if workspace.is_dir() and workspace.resolve() not in keep_set:
                logger.info("Pruning orphaned workspace %s", workspace)
                shutil.rmtree(workspace, ignore_errors=True)
                removed += 1
        return removed
