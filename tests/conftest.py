"""
tests/conftest.py -- Shared test fixtures for accountd.

This module provides:
  - FakeClock: a controllable clock so expiry rules can be tested without sleeping
  - db / auth / reset / gate: engines over a fresh in-memory database per test
  - registered: a user already registered with a known password
  - inspector: raw session / reset-transaction rows for assertions
  - api: TestClient over the real app with a patched lifespan (module-scoped)

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit fixtures stay in one thread, so plain :memory: is enough.

Environment overrides must be set before any app import so get_settings()
picks them up: DEBUG turns on debugDescription, and the rate limits are
raised so the suite never trips them.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("OTP_RATE_LIMIT", "1000/minute")
os.environ.setdefault("DATABASE_URL", "sqlite:///file:accountd_unused?mode=memory&cache=shared&uri=true")

import pytest
from fastapi.testclient import TestClient

from account.dependencies import AccessGate
from account.engine import AuthenticationEngine
from account.models import PasswordResetTransaction, Session, User
from account.password_reset import PasswordResetEngine
from account.store import AccountDatabase, _parse, _reset_transactions, _row_to_session, _sessions
from api.main import app
from core.config import AccountConfig

PASSWORD = "Abcdef1!"
ADMIN_EMAIL = "admin@example.com"


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_config(**overrides) -> AccountConfig:
    """AccountConfig with test-friendly values (cheap bcrypt, short windows)."""
    values = dict(
        session_duration=timedelta(minutes=15),
        refresh_session_duration=timedelta(days=1),
        otp_validity_duration=timedelta(minutes=10),
        otp_length=6,
        lockout_threshold=3,
        admin_email=ADMIN_EMAIL,
        bcrypt_rounds=4,
    )
    values.update(overrides)
    return AccountConfig(**values)


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


# ---------------------------------------------------------------------------
# Unit fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> AccountConfig:
    return make_config()


@pytest.fixture
def db() -> Generator[AccountDatabase, None, None]:
    database = AccountDatabase("sqlite:///:memory:")
    yield database
    database.close()


@pytest.fixture
def auth(db: AccountDatabase, config: AccountConfig, clock: FakeClock) -> AuthenticationEngine:
    return AuthenticationEngine(db, config, clock=clock)


@pytest.fixture
def reset(db: AccountDatabase, config: AccountConfig, clock: FakeClock) -> PasswordResetEngine:
    return PasswordResetEngine(db, config, clock=clock)


@pytest.fixture
def gate(db: AccountDatabase, clock: FakeClock) -> AccessGate:
    return AccessGate(db, clock=clock)


@pytest.fixture
def registered(auth: AuthenticationEngine) -> User:
    """A freshly registered user whose password is PASSWORD."""
    return auth.register("a@x.com", PASSWORD)


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    db: AccountDatabase
    clock: FakeClock
    auth: AuthenticationEngine
    reset: PasswordResetEngine


def _patch_lifespan(db: AccountDatabase, auth: AuthenticationEngine, reset: PasswordResetEngine, gate: AccessGate):
    """Return an async context manager that replaces the real lifespan.

    Wires the test database and engines into app.state so TestClient routes
    see an isolated store and a controllable clock.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.db = db
        app.state.auth_engine = auth
        app.state.reset_engine = reset
        app.state.access_gate = gate
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api(request) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness wired to a per-module shared-memory database."""
    name = request.module.__name__.rsplit(".", 1)[-1]
    db = AccountDatabase(f"sqlite:///file:test_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    clock = FakeClock(datetime.now(timezone.utc))
    config = make_config()
    auth = AuthenticationEngine(db, config, clock=clock)
    reset = PasswordResetEngine(db, config, clock=clock)
    gate = AccessGate(db, clock=clock)

    app.router.lifespan_context = _patch_lifespan(db, auth, reset, gate)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, db=db, clock=clock, auth=auth, reset=reset)

    db.close()


# ---------------------------------------------------------------------------
# Row inspection -- read persisted state that no engine operation returns
# ---------------------------------------------------------------------------


class StoreInspector:
    """Read-only access to raw rows, including revoked and consumed history."""

    def __init__(self, db: AccountDatabase) -> None:
        self.db = db

    def session(self, session_id: int) -> Session | None:
        with self.db.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def sessions_for(self, user_id: int) -> list[Session]:
        with self.db.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.id)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def live_sessions_for(self, user_id: int) -> list[Session]:
        return [s for s in self.sessions_for(user_id) if s.revoked_at is None]

    def reset(self, reset_token: str) -> PasswordResetTransaction | None:
        t = _reset_transactions
        with self.db.engine.connect() as conn:
            row = conn.execute(t.select().where(t.c.reset_token == reset_token)).fetchone()
        if row is None:
            return None
        return PasswordResetTransaction(
            id=row.id,
            user_id=row.user_id,
            otp=row.otp,
            reset_token=row.reset_token,
            expires_at=_parse(row.expires_at),
            verified_at=_parse(row.verified_at),
            used_at=_parse(row.used_at),
        )


@pytest.fixture
def inspector(db: AccountDatabase) -> StoreInspector:
    return StoreInspector(db)
