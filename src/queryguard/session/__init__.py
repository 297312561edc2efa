"""Session lifecycle and snapshot persistence."""

from queryguard.session.manager import (
    SESSION_NOT_FOUND,
    SessionConstraintResult,
    SessionManager,
    SessionQueryValidation,
    SessionStats,
    generate_session_id,
)
from queryguard.session.store import InMemorySessionStore, RedisSessionStore, SessionStore

__all__ = [
    "SESSION_NOT_FOUND",
    "InMemorySessionStore",
    "RedisSessionStore",
    "SessionConstraintResult",
    "SessionManager",
    "SessionQueryValidation",
    "SessionStats",
    "SessionStore",
    "generate_session_id",
]
