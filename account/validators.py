"""
account/validators.py -- Field-level validation for credentials.

Each check returns a list of messages (empty when the value is fine) so
callers can collect every failing property before raising a single
ValidationError, the same shape the API returns as validationErrors.
"""

from __future__ import annotations

import re

from email_validator import EmailNotValidError, validate_email

from account.errors import FieldError, ValidationError

_PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,12}$")

INVALID_PASSWORD_MESSAGE = (
    "Password must contain a minimum of 8-12 characters, with at least 1 uppercase letter, "
    "1 lowercase letter, 1 number and 1 special character."
)


def email_errors(email: str) -> list[str]:
    """Syntax check only. No DNS lookup; the address is stored exactly as given."""
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return [f"{email} is not a valid email address."]
    return []


def password_errors(password: str) -> list[str]:
    if not _PASSWORD_RE.match(password):
        return [INVALID_PASSWORD_MESSAGE]
    return []


def validate_credentials(email: str, password: str, admin_email: str = "") -> None:
    """Raise ValidationError if the email or password fails policy.

    The configured admin email skips the password-strength rule but not the
    email format rule.
    """
    errors: list[FieldError] = []
    if messages := email_errors(email):
        errors.append(FieldError("email", messages))
    if not (admin_email and email == admin_email):
        if messages := password_errors(password):
            errors.append(FieldError("password", messages))
    if errors:
        raise ValidationError(errors)


def validate_new_password(password: str) -> None:
    if messages := password_errors(password):
        raise ValidationError([FieldError("password", messages)])
