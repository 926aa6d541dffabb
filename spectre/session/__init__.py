# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Session lifecycle: records, orchestration, and maintenance.

SessionManager maps (user, repository, branch) requests to running IDE
containers.  Session records persist through a SessionStore; health
probing and inactivity cleanup run from MaintenanceLoop.
"""

from spectre.session.maintenance import MaintenanceLoop, probe_sessions
from spectre.session.manager import SessionManager, container_name_for
from spectre.session.store import (
    InMemorySessionStore,
    JsonSessionStore,
    SessionStore,
    session_from_dict,
    session_to_dict,
)


__all__ = [
    "MaintenanceLoop",
    "probe_sessions",
    "SessionManager",
    "container_name_for",
    "InMemorySessionStore",
    "JsonSessionStore",
    "SessionStore",
    "session_from_dict",
    "session_to_dict",
]
