# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Branch creation policy.

Permissions carry a branch limit; the ledger records how many branches a
user has created per repository so the limit can be enforced.  Counting
and recording are serialized per (user, repository), so concurrent
requests cannot overshoot the limit.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Protocol

from spectre.errors import PermissionDeniedError
from spectre.git_mirror import GitMirrorService, require_valid_branch_name
from spectre.types import Branch, Permission


logger = logging.getLogger(__name__)


class BranchLedger(Protocol):
    """Record of branches created through the orchestrator."""

    def count(self, user_id: int, repository_id: int) -> int: ...

    def record(
        self, user_id: int, repository_id: int, branch_name: str
    ) -> None: ...


class InMemoryBranchLedger:
    """Thread-safe, process-local BranchLedger."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._branches: dict[tuple[int, int], list[str]] = defaultdict(list)

    def count(self, user_id: int, repository_id: int) -> int:
        with self._lock:
            return len(self._branches.get((user_id, repository_id), []))

    def record(
        self, user_id: int, repository_id: int, branch_name: str
    ) -> None:
        with self._lock:
            self._branches[(user_id, repository_id)].append(branch_name)

    def branches(self, user_id: int, repository_id: int) -> list[str]:
        with self._lock:
            return list(self._branches.get((user_id, repository_id), []))


def check_branch_creation(
    permission: Permission, base_branch: str, branches_created: int
) -> None:
    """Raise PermissionDeniedError unless the permission allows the create."""
    if not permission.can_create_branches:
        raise PermissionDeniedError(
            f"User {permission.user_id} may not create branches in "
            f"repository {permission.repository_id}"
        )
    if base_branch not in permission.allowed_base_branches:
        allowed = ", ".join(sorted(permission.allowed_base_branches))
        raise PermissionDeniedError(
            f"Base branch {base_branch!r} is not allowed (allowed: {allowed})"
        )
    if branches_created >= permission.branch_limit:
        raise PermissionDeniedError(
            f"Branch limit reached ({branches_created}/"
            f"{permission.branch_limit})"
        )


class BranchPolicy:
    """Permission-checked branch creation on top of the mirror service.

    Args:
        git_mirror: Mirror service that creates the branch.
        ledger: Where created branches are counted.
    """

    def __init__(self, git_mirror: GitMirrorService, ledger: BranchLedger):
        self._git_mirror = git_mirror
        self._ledger = ledger
        self._lock = threading.Lock()
        self._key_locks: dict[tuple[int, int], threading.Lock] = {}

    def _key_lock(self, user_id: int, repository_id: int) -> threading.Lock:
        with self._lock:
            key = (user_id, repository_id)
            if key not in self._key_locks:
                self._key_locks[key] = threading.Lock()
            return self._key_locks[key]

    def create_branch(
        self,
        user_id: int,
        permission: Permission,
        repository_id: int,
        branch_name: str,
        base_branch: str,
    ) -> Branch:
        """Validate, check policy, create the branch, and record it.

        Raises:
            ValidationError: If the branch name is malformed.
            PermissionDeniedError: If the permission does not allow it.
            NotFoundError: If the mirror or base branch is missing.
            ConflictError: If the branch already exists.
            GitOperationError: If git fails.
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

        with self._key_lock(user_id, repository_id):
            created = self._ledger.count(user_id, repository_id)
            check_branch_creation(permission, base_branch, created)
            branch = self._git_mirror.create_branch(
                repository_id, branch_name, base_branch
            )
            self._ledger.record(user_id, repository_id, branch_name)

        logger.info(
            "User %d created branch %s in repository %d (%d/%d)",
            user_id,
            branch_name,
            repository_id,
            created + 1,
            permission.branch_limit,
        )
        return branch

    def remaining_branches(self, user_id: int, permission: Permission) -> int:
        """How many more branches the user may create in the repository."""
        if not permission.can_create_branches:
            return 0
        created = self._ledger.count(user_id, permission.repository_id)
        return max(permission.branch_limit - created, 0)
