"""Typed failures raised by directory workflows.

Services raise these; the HTTP layer maps each ``code`` to a status.
"""

from __future__ import annotations


class DirectoryError(Exception):
    """Base class for directory domain errors."""

    code: str = "directory_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class Unauthenticated(DirectoryError):
    code = "unauthenticated"


class InvalidInput(DirectoryError):
    code = "invalid_input"


class NotFound(DirectoryError):
    code = "not_found"


class ConflictExistingAccount(DirectoryError):
    code = "existing_account"


class ConflictDuplicateInvite(DirectoryError):
    code = "duplicate_invite"


class AlreadyUsed(DirectoryError):
    code = "invitation_used"


class Expired(DirectoryError):
    code = "invitation_expired"


class Forbidden(DirectoryError):
    code = "forbidden"
