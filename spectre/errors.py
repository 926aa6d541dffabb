# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Exception hierarchy for the session orchestrator.

Every error raised by the mirror service, the container runtime, and the
session manager derives from ``SpectreError`` so callers (the
authorization and persistence layer) can map the whole family to their
own responses in one place.
"""


class SpectreError(Exception):
    """Base exception for orchestrator errors."""


class ValidationError(SpectreError):
    """Malformed input: branch name, git URL, status value, or shape.

    Always raised before any mirror mutation or container runtime call.
    """


class NotFoundError(SpectreError):
    """Unknown repository, mirror, branch, or session."""


class ConflictError(SpectreError):
    """Request collides with existing state.

    Raised when a branch already exists, when a session is not in a state
    that allows the requested transition, or when the loser of a create
    race must be told the name is taken.
    """


class SessionLimitError(ConflictError):
    """Per-user or global session quota is exhausted."""


class PermissionDeniedError(SpectreError):
    """Caller lacks the permission for the requested operation."""


class GitOperationError(SpectreError):
    """Clone, fetch, checkout, or branch creation failed at the mirror."""


class ProvisioningError(SpectreError):
    """Container start, stop, probe, or removal failed."""


class StoreError(SpectreError):
    """Session store file is unreadable or corrupt."""
