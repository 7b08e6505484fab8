"""
account/errors.py -- Typed error taxonomy for the account engines.

Each exception class carries a stable machine-readable code, the HTTP status
the transport layer should use, and a human message. Engines raise these;
api/main.py has a single exception handler that renders any AccountError into
the ErrorResponse envelope. Nothing in account/ knows about HTTP beyond the
status_code integer.

Codes:
  ACC0001-ACC0011 -- account domain failures
  GBL0003         -- request/field validation
  GBL9999         -- store or hasher failure not caused by user input

debug_description is only rendered when Settings.debug is true.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class FieldError:
    """All validation messages for a single request property."""

    property: str
    errors: list[str] = field(default_factory=list)


class AccountError(Exception):
    """Base class for errors that are recovered at the engine boundary."""

    code: str = "ACC0000"
    status_code: int = 400
    message: str = "Account error."

    def __init__(self, message: str | None = None, *, debug_description: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)
        self.debug_description = debug_description


class UserAlreadyExists(AccountError):
    code = "ACC0001"
    status_code = 400

    def __init__(self, email: str) -> None:
        super().__init__(f"User {email} already exists.")
        self.email = email


class UserNotFound(AccountError):
    """No user by email (ACC0002) or by id (ACC0003)."""

    code = "ACC0002"
    status_code = 404

    def __init__(self, email: str | None = None, *, user_id: int | None = None) -> None:
        if user_id is not None:
            self.code = "ACC0003"
            super().__init__(f"User {user_id} does not exist.")
        else:
            super().__init__(f"User {email} does not exist.")
        self.email = email
        self.user_id = user_id


class InvalidCredentials(AccountError):
    code = "ACC0004"
    status_code = 400
    message = "Email or password is incorrect."


class AccountLocked(AccountError):
    code = "ACC0005"
    status_code = 400
    message = "Account locked. You have entered an invalid password too many times."


class MissingToken(AccountError):
    code = "ACC0006"
    status_code = 401
    message = "Missing session token in header."


class InvalidOrExpiredToken(AccountError):
    code = "ACC0007"
    status_code = 401
    message = "Session token is invalid or expired."


class InvalidOrExpiredOtp(AccountError):
    code = "ACC0008"
    status_code = 400
    message = "OTP is invalid or expired."


class TokenPairMismatch(AccountError):
    code = "ACC0009"
    status_code = 401
    message = "Session and refresh tokens do not match."


class InsufficientPrivilege(AccountError):
    code = "ACC0010"
    status_code = 403
    message = "Insufficient privilege to access this resource."


class SessionConflict(AccountError):
    """A concurrent login for the same user committed a session first."""

    code = "ACC0011"
    status_code = 409
    message = "Another session was created concurrently. Please retry."


class ValidationError(AccountError):
    code = "GBL0003"
    status_code = 400
    message = "One or more validation errors has occured."

    def __init__(self, errors: list[FieldError]) -> None:
        super().__init__()
        self.validation_errors = errors


class InternalFailure(AccountError):
    code = "GBL9999"
    status_code = 500
    message = "An unknown error has occured."
