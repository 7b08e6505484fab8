"""
account/engine.py -- Authentication engine: registration, login, lockout,
session issuance, rotation and revocation.

Session state machine:

    Active --(NewSession | SessionExtended | LoggedOut)--> Revoked

Revoked is terminal. Every revocation goes through a `revoked_at IS NULL`
predicate in account/store.py, so a revoked row can never be revoked again.

Login decision order (each step can end the call):
  1. unknown email               -> UserNotFound
  2. login_attempts >= threshold -> AccountLocked (password is not checked)
  3. wrong password              -> counter + 1, then InvalidCredentials
     broken stored hash          -> InternalFailure, counter untouched
  4. revoke any unrevoked session (NewSession) + create a new one, atomically

A successful login never resets the counter; only a password reset does
(account/password_reset.py).

All methods are synchronous. bcrypt is CPU-bound and the store is blocking
I/O, so the API layer calls these from FastAPI's threadpool (plain `def`
routes), never from the event loop thread.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from account.errors import (
    AccountLocked,
    InternalFailure,
    InvalidCredentials,
    InvalidOrExpiredToken,
    SessionConflict,
    TokenPairMismatch,
    UserAlreadyExists,
    UserNotFound,
)
from account.models import (
    Clock,
    NewSession,
    Page,
    PageRequest,
    RevocationReason,
    Role,
    Session,
    User,
    utc_now,
)
from account.security import HasherError, generate_token, hash_password, tokens_match, verify_password
from account.store import AccountDatabase, SessionStore, UserStore, translate_errors
from account.validators import validate_credentials
from core.config import AccountConfig

logger = logging.getLogger("accountd.auth")


class AuthenticationEngine:
    """Orchestrates the credential and session lifecycle for one database.

    Usage:
        engine = AuthenticationEngine(db, settings.account_config())
        user = engine.register("a@x.com", "Abcdef1!")
        session, user = engine.login("a@x.com", "Abcdef1!")
    """

    def __init__(self, db: AccountDatabase, config: AccountConfig, clock: Clock = utc_now) -> None:
        self.db = db
        self.config = config
        self.clock = clock
        self.users = UserStore(db)
        self.sessions = SessionStore(db)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, email: str, raw_password: str) -> User:
        """Create a User with role User and a zeroed lockout counter."""
        validate_credentials(email, raw_password, admin_email=self.config.admin_email)

        with translate_errors("register"):
            if self.users.exists_by_email(email):
                raise UserAlreadyExists(email)

            password_hash = self._hash(raw_password)
            try:
                user = self.users.create(User(email=email, password_hash=password_hash), self.clock())
            except IntegrityError as exc:
                # Lost a race with a concurrent registration for the same email.
                raise UserAlreadyExists(email) from exc

        logger.info("Registered user id=%s", user.id)
        return user

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, raw_password: str) -> tuple[Session, User]:
        with translate_errors("login"):
            user = self.users.get_by_email(email)
            if user is None:
                raise UserNotFound(email)

            if user.is_locked(self.config.lockout_threshold):
                logger.warning("Login refused for locked user id=%s", user.id)
                raise AccountLocked()

            try:
                matches = verify_password(raw_password, user.password_hash)
            except HasherError as exc:
                logger.error("Stored password hash unusable for user id=%s", user.id)
                raise InternalFailure(debug_description=str(exc)) from exc

            if not matches:
                attempts = self.users.record_failed_login(user.id, self.clock())
                logger.warning("Failed login for user id=%s (attempts=%d)", user.id, attempts)
                raise InvalidCredentials()

            session = self._rotate(user.id, RevocationReason.NEW_SESSION)

        logger.info("User id=%s logged in (session id=%s)", user.id, session.id)
        return session, user

    # ------------------------------------------------------------------
    # Extend / rotate
    # ------------------------------------------------------------------

    def extend_session(self, session: Session, presented_refresh_token: str) -> tuple[Session, User]:
        """Swap a renewable session for a fresh one.

        `session` must come from the gate's possibly-expired resolver, i.e. it
        is unrevoked and inside its refresh window. The caller must also
        present that session's refresh token.
        """
        if not tokens_match(presented_refresh_token, session.refresh_token):
            logger.warning("Refresh token mismatch for session id=%s", session.id)
            raise TokenPairMismatch()

        now = self.clock()
        with translate_errors("extend_session"):
            try:
                with self.db.transaction() as conn:
                    user = self.users.get_by_id(session.user_id, conn=conn)
                    if user is None:
                        raise UserNotFound(user_id=session.user_id)

                    # A concurrent extend of the same pair already rotated it.
                    if not self.sessions.revoke(session.id, RevocationReason.SESSION_EXTENDED, now, conn=conn):
                        raise InvalidOrExpiredToken()
                    self.sessions.revoke_for_user(user.id, RevocationReason.SESSION_EXTENDED, now, conn=conn)
                    new_session = self.sessions.create(user.id, self._mint(now), conn=conn)
            except IntegrityError as exc:
                raise SessionConflict() from exc

        logger.info("Session id=%s extended into id=%s for user id=%s", session.id, new_session.id, user.id)
        return new_session, user

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, user: User) -> None:
        """Revoke every unrevoked session of the user. No-op if there are none."""
        with translate_errors("logout"):
            revoked = self.sessions.revoke_for_user(user.id, RevocationReason.LOGGED_OUT, self.clock())
        logger.info("User id=%s logged out (%d session(s) revoked)", user.id, revoked)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user(self, user_id: int) -> User:
        with translate_errors("get_user"):
            user = self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFound(user_id=user_id)
        return user

    def list_users(self, request: PageRequest) -> Page[User]:
        with translate_errors("list_users"):
            return self.users.list_page(request)

    def promote(self, email: str, role: Role = Role.ADMIN) -> User:
        """Set a user's role. Used by the bootstrap CLI, not exposed over HTTP."""
        with translate_errors("promote"):
            user = self.users.get_by_email(email)
            if user is None:
                raise UserNotFound(email)
            self.users.set_role(user.id, role)
        logger.info("User id=%s role set to %s", user.id, role.value)
        user.role = role
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _rotate(self, user_id: int, reason: RevocationReason) -> Session:
        """Revoke whatever the user holds and issue a new session, in one transaction."""
        now = self.clock()
        try:
            with self.db.transaction() as conn:
                self.sessions.revoke_for_user(user_id, reason, now, conn=conn)
                return self.sessions.create(user_id, self._mint(now), conn=conn)
        except IntegrityError as exc:
            logger.warning("Concurrent session creation for user id=%s", user_id)
            raise SessionConflict() from exc

    def _mint(self, now) -> NewSession:
        return NewSession(
            token=generate_token(),
            refresh_token=generate_token(),
            token_expiry=now + self.config.session_duration,
            refresh_token_expiry=now + self.config.refresh_session_duration,
        )

    def _hash(self, raw_password: str) -> str:
        try:
            return hash_password(raw_password, rounds=self.config.bcrypt_rounds)
        except HasherError as exc:
            raise InternalFailure(debug_description=str(exc)) from exc
