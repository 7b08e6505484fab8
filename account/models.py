"""
account/models.py -- Domain dataclasses for account entities.

Pattern: Data class. Dataclasses own the domain shape; stores and engines do
the work. Whether a session is live or renewable, and whether a reset
transaction is still pending, is decided only by the SQL predicates in
account/store.py.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class Role(str, Enum):
    USER = "User"
    ADMIN = "Admin"


class RevocationReason(str, Enum):
    NEW_SESSION = "NewSession"
    SESSION_EXTENDED = "SessionExtended"
    LOGGED_OUT = "LoggedOut"


@dataclass
class User:
    """An account holder.

    password_hash is an opaque bcrypt string. login_attempts only ever goes
    up on a failed login and back to 0 on a successful password reset.
    """

    email: str
    password_hash: str
    role: Role = Role.USER
    id: int | None = None
    login_attempts: int = 0
    last_failed_login_attempt: datetime | None = None
    created_at: datetime | None = None

    def is_locked(self, threshold: int) -> bool:
        return self.login_attempts >= threshold


@dataclass
class Session:
    """A live or historical authentication grant.

    refresh_token_expiry is always later than token_expiry, so the renewable
    window strictly contains the live window.
    """

    user_id: int
    token: str
    refresh_token: str
    token_expiry: datetime
    refresh_token_expiry: datetime
    id: int | None = None
    revoked_at: datetime | None = None
    revocation_reason: RevocationReason | None = None


@dataclass
class NewSession:
    """A session that has been minted but not yet persisted."""

    token: str
    refresh_token: str
    token_expiry: datetime
    refresh_token_expiry: datetime


@dataclass
class PasswordResetTransaction:
    """A single OTP challenge: unverified -> verified -> used."""

    user_id: int
    otp: str
    reset_token: str
    expires_at: datetime
    id: int | None = None
    verified_at: datetime | None = None
    used_at: datetime | None = None


@dataclass(frozen=True)
class PageRequest:
    take: int = 20
    skip: int = 0


@dataclass
class Page(Generic[T]):
    request: PageRequest
    total: int
    content: list[T] = field(default_factory=list)


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock. Engines take a Clock so tests can move time."""
    return datetime.now(timezone.utc)
