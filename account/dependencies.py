"""
account/dependencies.py -- Access-control gate and its FastAPI Depends() helpers.

The session token always travels in the X-Session-Id header. Three levels of
capability can be resolved from it:

  get_possibly_expired_session() -- unrevoked session still inside its refresh
      window, even if the session token itself has expired. Only the
      extend-session route uses this.
  get_current_user()  -- live session (session token not yet expired),
      resolved straight to its owning User.
  require_role(...)   -- get_current_user() plus a role check. Adding a role
      means adding a Role member, not touching the gate.

Failures: MissingToken when the header is absent or empty,
InvalidOrExpiredToken when no matching row exists, InsufficientPrivilege on a
role mismatch. api/main.py renders all three.

Every resolution is exactly one database read. There is no cache.

The dependency callables are plain `def`, so FastAPI runs the store read on
its threadpool rather than on the event loop.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from account.errors import InsufficientPrivilege, InvalidOrExpiredToken, MissingToken
from account.models import Clock, Role, Session, User, utc_now
from account.store import AccountDatabase, SessionStore, translate_errors

SESSION_HEADER = "X-Session-Id"


def require_role(user: User, expected: Role) -> User:
    """Return the user if it holds `expected`, else raise InsufficientPrivilege."""
    if user.role != expected:
        raise InsufficientPrivilege()
    return user


class AccessGate:
    """Resolves a bearer session token into a session or principal."""

    def __init__(self, db: AccountDatabase, clock: Clock = utc_now) -> None:
        self.sessions = SessionStore(db)
        self.clock = clock

    def possibly_expired_session(self, token: str | None) -> Session:
        if not token:
            raise MissingToken(debug_description=f"Missing token ({SESSION_HEADER}) in header.")
        with translate_errors("resolve_session"):
            session = self.sessions.find_renewable_by_token(token, self.clock())
        if session is None:
            raise InvalidOrExpiredToken()
        return session

    def current_user(self, token: str | None) -> User:
        if not token:
            raise MissingToken(debug_description=f"Missing token ({SESSION_HEADER}) in header.")
        with translate_errors("resolve_user"):
            user = self.sessions.find_live_user_by_token(token, self.clock())
        if user is None:
            raise InvalidOrExpiredToken()
        return user

    def current_role(self, token: str | None, role: Role) -> User:
        return require_role(self.current_user(token), role)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def _gate(request: Request) -> AccessGate:
    return request.app.state.access_gate


def _token(request: Request) -> str | None:
    return request.headers.get(SESSION_HEADER)


def get_possibly_expired_session(request: Request) -> Session:
    """Use as: session: Session = Depends(get_possibly_expired_session)"""
    return _gate(request).possibly_expired_session(_token(request))


def get_current_user(request: Request) -> User:
    """Use as: user: User = Depends(get_current_user)"""
    return _gate(request).current_user(_token(request))


def require_role_dependency(role: Role) -> Callable[[Request], User]:
    """Build a dependency that admits only users holding `role`.

        @router.get("/admin-only")
        def route(user: User = Depends(require_admin)): ...
    """

    def dependency(request: Request) -> User:
        return _gate(request).current_role(_token(request), role)

    dependency.__name__ = f"require_{role.value.lower()}"
    return dependency


require_admin = require_role_dependency(Role.ADMIN)
