"""Session persistence.

Exports:
    SessionStore - JSON store with atomic whole-file writes
    SessionRecord - Durable metadata for one container session
    SessionConfigSnapshot - Launch settings captured with the record
"""

from agentbox.sessions.store import (
    ExitType,
    SessionConfigSnapshot,
    SessionRecord,
    SessionStatus,
    SessionStore,
    utc_now,
)

__all__ = [
    "ExitType",
    "SessionConfigSnapshot",
    "SessionRecord",
    "SessionStatus",
    "SessionStore",
    "utc_now",
]
