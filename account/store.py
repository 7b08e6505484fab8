"""
account/store.py -- SQLAlchemy Core persistence layer for account entities.

Pattern: Repository + Data Mapper. UserStore, SessionStore and
ResetTransactionStore are the repositories; _row_to_* are the mappers. Engine
and route code never touches SQL directly.

Transactions:
  Every store method accepts an optional `conn`. Without one, the method
  opens its own connection via engine.begin() and commits on exit (one
  auto-committing logical statement). With one, it runs inside the caller's
  transaction -- that is how the engines make revoke-then-create and
  consume-then-update atomic:

      with db.transaction() as conn:
          sessions.revoke_for_user(user.id, reason, now, conn=conn)
          sessions.create(user.id, new_session, conn=conn)

  engine.begin() commits on normal exit, rolls back on exception and always
  returns the connection to the pool.

Soft delete:
  Sessions and reset transactions are never deleted. Whether a row is still
  usable is decided by the predicates in _live_clause / _renewable_clause and
  the verify/consume WHERE clauses below -- nowhere else.

  ux_sessions_live_user is a partial UNIQUE index on sessions(user_id) WHERE
  revoked_at IS NULL: a user has at most one unrevoked session. Two logins
  racing past each other's revoke make the second INSERT fail with
  IntegrityError instead of leaving two live sessions.

Timestamps:
  Stored as ISO 8601 UTC strings with fixed microsecond precision, so string
  comparison in SQL is chronological comparison.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from account.errors import InternalFailure
from account.models import (
    NewSession,
    Page,
    PageRequest,
    PasswordResetTransaction,
    RevocationReason,
    Role,
    Session,
    User,
)

logger = logging.getLogger("accountd.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(16), nullable=False, server_default=Role.USER.value),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("last_failed_login_attempt", String(32)),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("token", String(64), nullable=False, unique=True),
    Column("refresh_token", String(64), nullable=False, unique=True),
    Column("token_expiry", String(32), nullable=False),
    Column("refresh_token_expiry", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("revocation_reason", String(32)),
)

Index(
    "ux_sessions_live_user",
    _sessions.c.user_id,
    unique=True,
    sqlite_where=_sessions.c.revoked_at.is_(None),
    postgresql_where=_sessions.c.revoked_at.is_(None),
)

_reset_transactions = Table(
    "password_reset_transactions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("otp", String(16), nullable=False),
    Column("reset_token", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("verified_at", String(32)),
    Column("used_at", String(32)),
)

Index("ix_reset_transactions_user_otp", _reset_transactions.c.user_id, _reset_transactions.c.otp)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys. SQLite PRAGMAs are per-connection."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Turn driver/store failures into InternalFailure at the engine boundary.

    Domain errors raised inside the block pass through untouched; callers
    that expect a specific IntegrityError must catch it inside the block.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Store failure during %s", operation)
        raise InternalFailure(debug_description=str(exc)) from exc


# ---------------------------------------------------------------------------
# Database handle
# ---------------------------------------------------------------------------


class AccountDatabase:
    """Owns the SQLAlchemy engine and its connection pool.

    Usage:
        db = AccountDatabase("sqlite:///accountd.db")
        with db.transaction() as conn:
            ...
        db.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside BEGIN; COMMIT on exit, ROLLBACK on error."""
        with self.engine.begin() as conn:
            yield conn

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Database ping failed", exc_info=True)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


class _BaseStore:
    def __init__(self, db: AccountDatabase) -> None:
        self.db = db

    @contextmanager
    def _connection(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.db.transaction() as own:
            yield own


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore(_BaseStore):
    """Repository for User records."""

    def exists_by_email(self, email: str, conn: Connection | None = None) -> bool:
        with self._connection(conn) as c:
            count = c.execute(select(func.count()).select_from(_users).where(_users.c.email == email)).scalar()
        return (count or 0) > 0

    def create(self, user: User, now: datetime, conn: Connection | None = None) -> User:
        """Insert a new user and return it with its assigned id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self._connection(conn) as c:
            result = c.execute(
                _users.insert().values(
                    email=user.email,
                    password_hash=user.password_hash,
                    role=user.role.value,
                    login_attempts=0,
                    created_at=_iso(now),
                )
            )
            user_id = result.inserted_primary_key[0]
        return User(
            id=user_id,
            email=user.email,
            password_hash=user.password_hash,
            role=user.role,
            login_attempts=0,
            created_at=now,
        )

    def get_by_email(self, email: str, conn: Connection | None = None) -> User | None:
        """Look up a user by exact email (case-sensitive). Returns None if not found."""
        with self._connection(conn) as c:
            row = c.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int, conn: Connection | None = None) -> User | None:
        with self._connection(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def record_failed_login(self, user_id: int, now: datetime, conn: Connection | None = None) -> int:
        """Increment login_attempts, stamp the failure time, return the new count.

        The increment happens in SQL so concurrent failures are never lost to
        a read-modify-write race.
        """
        with self._connection(conn) as c:
            count = c.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    login_attempts=_users.c.login_attempts + 1,
                    last_failed_login_attempt=_iso(now),
                )
                .returning(_users.c.login_attempts)
            ).scalar()
        return count or 0

    def update_password(self, user_id: int, password_hash: str, conn: Connection | None = None) -> bool:
        """Replace the password hash and clear the lockout counter."""
        with self._connection(conn) as c:
            result = c.execute(
                _users.update().where(_users.c.id == user_id).values(password_hash=password_hash, login_attempts=0)
            )
        return result.rowcount > 0

    def set_role(self, user_id: int, role: Role, conn: Connection | None = None) -> bool:
        with self._connection(conn) as c:
            result = c.execute(_users.update().where(_users.c.id == user_id).values(role=role.value))
        return result.rowcount > 0

    def list_page(self, request: PageRequest, conn: Connection | None = None) -> Page[User]:
        """Return one page of users ordered by id, plus the total count."""
        with self._connection(conn) as c:
            rows = c.execute(
                _users.select().order_by(_users.c.id).limit(request.take).offset(request.skip)
            ).fetchall()
            total = c.execute(select(func.count()).select_from(_users)).scalar()
        return Page(request=request, total=total or 0, content=[_row_to_user(r) for r in rows])


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def _live_clause(now: datetime):
    """revoked_at IS NULL AND now < token_expiry"""
    return _sessions.c.revoked_at.is_(None) & (_sessions.c.token_expiry > _iso(now))


def _renewable_clause(now: datetime):
    """revoked_at IS NULL AND now < refresh_token_expiry"""
    return _sessions.c.revoked_at.is_(None) & (_sessions.c.refresh_token_expiry > _iso(now))


class SessionStore(_BaseStore):
    """Repository for Session records."""

    def create(self, user_id: int, new: NewSession, conn: Connection | None = None) -> Session:
        """Insert a session. Raises IntegrityError if the user already has an unrevoked one."""
        with self._connection(conn) as c:
            result = c.execute(
                _sessions.insert().values(
                    user_id=user_id,
                    token=new.token,
                    refresh_token=new.refresh_token,
                    token_expiry=_iso(new.token_expiry),
                    refresh_token_expiry=_iso(new.refresh_token_expiry),
                )
            )
            session_id = result.inserted_primary_key[0]
        return Session(
            id=session_id,
            user_id=user_id,
            token=new.token,
            refresh_token=new.refresh_token,
            token_expiry=new.token_expiry,
            refresh_token_expiry=new.refresh_token_expiry,
        )

    def find_renewable_by_token(self, token: str, now: datetime, conn: Connection | None = None) -> Session | None:
        """Resolve a session token ignoring its own expiry, within the refresh window."""
        with self._connection(conn) as c:
            row = c.execute(
                _sessions.select().where((_sessions.c.token == token) & _renewable_clause(now))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_live_user_by_token(self, token: str, now: datetime, conn: Connection | None = None) -> User | None:
        """Resolve a live session token straight to its owning user (one query)."""
        with self._connection(conn) as c:
            row = c.execute(
                select(_users)
                .select_from(_sessions.join(_users, _users.c.id == _sessions.c.user_id))
                .where((_sessions.c.token == token) & _live_clause(now))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def revoke(
        self, session_id: int, reason: RevocationReason, now: datetime, conn: Connection | None = None
    ) -> bool:
        """Revoke one session. False if it was already revoked."""
        with self._connection(conn) as c:
            result = c.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & _sessions.c.revoked_at.is_(None))
                .values(revoked_at=_iso(now), revocation_reason=reason.value)
            )
        return result.rowcount > 0

    def revoke_for_user(
        self, user_id: int, reason: RevocationReason, now: datetime, conn: Connection | None = None
    ) -> int:
        """Revoke every unrevoked session of a user. Returns the number revoked."""
        with self._connection(conn) as c:
            result = c.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & _sessions.c.revoked_at.is_(None))
                .values(revoked_at=_iso(now), revocation_reason=reason.value)
            )
        return result.rowcount


# ---------------------------------------------------------------------------
# Password reset transactions
# ---------------------------------------------------------------------------


class ResetTransactionStore(_BaseStore):
    """Repository for PasswordResetTransaction records."""

    def create(
        self, txn: PasswordResetTransaction, conn: Connection | None = None
    ) -> PasswordResetTransaction:
        with self._connection(conn) as c:
            result = c.execute(
                _reset_transactions.insert().values(
                    user_id=txn.user_id,
                    otp=txn.otp,
                    reset_token=txn.reset_token,
                    expires_at=_iso(txn.expires_at),
                )
            )
            txn_id = result.inserted_primary_key[0]
        return PasswordResetTransaction(
            id=txn_id,
            user_id=txn.user_id,
            otp=txn.otp,
            reset_token=txn.reset_token,
            expires_at=txn.expires_at,
        )

    def verify(self, user_id: int, otp: str, now: datetime, conn: Connection | None = None) -> str | None:
        """Mark the oldest pending transaction matching (user, otp) as verified.

        Returns its reset token, or None if nothing matched. The predicate is
        repeated on the outer UPDATE so two concurrent verifications of the
        same row cannot both succeed.
        """
        t = _reset_transactions
        pending = (t.c.user_id == user_id) & (t.c.otp == otp) & (t.c.expires_at > _iso(now))
        pending = pending & t.c.verified_at.is_(None) & t.c.used_at.is_(None)
        first_id = select(t.c.id).where(pending).order_by(t.c.id).limit(1).scalar_subquery()
        with self._connection(conn) as c:
            return c.execute(
                t.update()
                .where((t.c.id == first_id) & pending)
                .values(verified_at=_iso(now))
                .returning(t.c.reset_token)
            ).scalar()

    def consume(self, reset_token: str, now: datetime, conn: Connection | None = None) -> int | None:
        """Mark a verified, unexpired, unused transaction as used. Returns its user_id."""
        t = _reset_transactions
        with self._connection(conn) as c:
            return c.execute(
                t.update()
                .where(
                    (t.c.reset_token == reset_token)
                    & (t.c.expires_at > _iso(now))
                    & t.c.verified_at.is_not(None)
                    & t.c.used_at.is_(None)
                )
                .values(used_at=_iso(now))
                .returning(t.c.user_id)
            ).scalar()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=Role(row.role),
        login_attempts=row.login_attempts,
        last_failed_login_attempt=_parse(row.last_failed_login_attempt),
        created_at=_parse(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        refresh_token=row.refresh_token,
        token_expiry=_parse(row.token_expiry),
        refresh_token_expiry=_parse(row.refresh_token_expiry),
        revoked_at=_parse(row.revoked_at),
        revocation_reason=RevocationReason(row.revocation_reason) if row.revocation_reason else None,
    )
