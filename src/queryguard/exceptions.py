"""
Package-level exception hierarchy for QueryGuard.

All exceptions inherit from QueryGuardError, enabling:
- Catching all QueryGuard errors with a single except clause
- Rich context fields for debugging (rule_id, session_id, config_key, etc.)
- Structured serialization via to_dict() for JSON error responses

Validation failures (unsafe SQL, mode violations, expired sessions) are
reported as result objects. Only the conditions below are raised.

Hierarchy:
    QueryGuardError
    ├── ParseError             – SQL text could not be parsed
    ├── SerializationError     – A rewritten tree could not be rendered
    ├── RuleError              – An optimization rule failed during execution
    ├── ConfigurationError     – Invalid configuration value or file
    ├── ModeError              – Workflow mode problems
    │   ├── UnsupportedModeError
    │   └── ModeLockedError    – Attempt to change a locked session's mode
    ├── SessionError           – Session lifecycle problems
    │   ├── SessionNotFoundError
    │   └── UploadContextError – Upload context rejected by the mode
    └── PersistenceError       – Session store unreachable or corrupt
"""

from __future__ import annotations

from typing import Any


class QueryGuardError(Exception):
    """
    Base exception for all QueryGuard errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON error responses."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
        }


# ── SQL Errors ───────────────────────────────────────────────────────────


class ParseError(QueryGuardError):
    """
    Failed to parse SQL text.

    Attributes:
        sql: The SQL text that failed to parse (may be truncated in messages).
    """

    def __init__(self, message: str, sql: str | None = None) -> None:
        self.sql = sql
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.sql is not None:
            result["sql"] = self.sql[:200]
        return result


class SerializationError(QueryGuardError):
    """A parsed (and possibly rewritten) tree could not be rendered back to SQL."""
    pass


class RuleError(QueryGuardError):
    """
    Error during rule execution.

    Attributes:
        rule_id: The ID of the rule that failed.
        original_error: The underlying exception.
    """

    def __init__(self, rule_id: str, original_error: Exception) -> None:
        self.rule_id = rule_id
        self.original_error = original_error
        super().__init__(
            f"Rule '{rule_id}' failed: "
            f"{original_error.__class__.__name__}: {original_error}"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output / logging."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "rule_id": self.rule_id,
            "original_error_type": self.original_error.__class__.__name__,
            "original_error_message": str(self.original_error),
        }


class ConfigurationError(QueryGuardError):
    """
    Error in configuration.

    Attributes:
        config_key: The configuration key that caused the error (if known).
    """

    def __init__(self, message: str, config_key: str | None = None) -> None:
        self.config_key = config_key
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.config_key:
            result["config_key"] = self.config_key
        return result


# ── Mode Errors ──────────────────────────────────────────────────────────


class ModeError(QueryGuardError):
    """Errors related to workflow modes."""
    pass


class UnsupportedModeError(ModeError):
    """Requested workflow mode has no registered strategy."""

    def __init__(self, mode: object) -> None:
        self.mode = mode
        super().__init__(f"Unsupported workflow mode: {mode}")


class ModeLockedError(ModeError):
    """
    A session's mode cannot change once the session exists.

    Attributes:
        session_id: The locked session.
        current_mode: The mode the session is locked to.
        requested_mode: The mode that was requested.
    """

    def __init__(self, session_id: str, current_mode: str, requested_mode: str) -> None:
        self.session_id = session_id
        self.current_mode = current_mode
        self.requested_mode = requested_mode
        super().__init__(
            f"Session {session_id} is locked to {current_mode} mode "
            f"and cannot switch to {requested_mode}"
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update(
            session_id=self.session_id,
            current_mode=self.current_mode,
            requested_mode=self.requested_mode,
        )
        return result


# ── Session Errors ───────────────────────────────────────────────────────


class SessionError(QueryGuardError):
    """Errors in session lifecycle management."""
    pass


class SessionNotFoundError(SessionError):
    """Session does not exist or has expired."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class UploadContextError(SessionError):
    """
    Upload context was rejected by the session's workflow mode.

    Attributes:
        upload_id: The rejected upload.
        errors: Validation errors reported by the mode strategy.
    """

    def __init__(self, upload_id: str, errors: list[str]) -> None:
        self.upload_id = upload_id
        self.errors = list(errors)
        super().__init__(f"Invalid upload context: {', '.join(self.errors)}")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update(upload_id=self.upload_id, errors=self.errors)
        return result


class PersistenceError(QueryGuardError):
    """Session store operation failed."""
    pass
