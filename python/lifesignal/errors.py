"""
LifeSignal error taxonomy.

Every error carries a stable code so callers (and the HTTP layer) can react
without parsing messages.
"""

from __future__ import annotations


class SafetyError(Exception):
    """Base class for all core errors."""

    code = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class InvalidArgument(SafetyError):
    code = "invalid_argument"


class NotFound(SafetyError):
    code = "not_found"


class AlreadyExists(SafetyError):
    code = "already_exists"


class PermissionDenied(SafetyError):
    code = "permission_denied"


class Conflict(SafetyError):
    """Transaction contention, or a second in-flight alert request."""
    code = "conflict"


class Unavailable(SafetyError):
    """A storage or notification collaborator could not be reached."""
    code = "unavailable"


# Errors worth retrying; everything else is a caller mistake.
TRANSIENT_ERRORS = (Conflict, Unavailable)
