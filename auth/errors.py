"""
auth/errors.py -- Exception taxonomy for the auth subsystem.

InvalidCredentials and AccountInactive never leave AuthService: login() turns
them into a LoginOutcome and the route layer reports both with the same
generic message. ProvisioningConflict is normally recovered inside
AccountProvisioner; it only escapes when the winning row cannot be re-read.
SessionStoreFailure and PermissionDenied are mapped to HTTP responses by the
exception handlers in api/main.py.

Directory unavailability is deliberately NOT an exception here -- the
directory client returns a typed DirectoryUnavailable result instead.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for auth subsystem errors."""


class InvalidCredentials(AuthError):
    """Unknown username or wrong password."""


class AccountInactive(AuthError):
    """Credentials were correct but the account status is not Active."""


class ProvisioningConflict(AuthError):
    """A concurrent insert won a race and its row could not be re-read."""


class SessionStoreFailure(AuthError):
    """The session table could not be read or written."""


class PermissionDenied(AuthError):
    """The authenticated user lacks the permission or role an operation requires."""

    def __init__(self, requirement: str) -> None:
        super().__init__(requirement)
        self.requirement = requirement
