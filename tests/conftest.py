"""
tests/conftest.py -- Shared test fixtures for the authcore test suite.

This module provides:
  - FakeClock: a frozen, manually advanced clock injected into every component
  - db / file_db: a fresh database per test (shared-memory or temp file)
  - component fixtures: credentials, otp, sessions, permissions, audit_log, facade
  - api: a TestClient harness with a patched lifespan and a capturing OTP sender

Design: Named shared-memory SQLite URIs (not plain :memory:) are used because
TestClient runs sync route handlers in a thread pool. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread. Each
test gets a uniquely named database, so nothing leaks between tests.

Concurrency tests use file_db instead: shared-cache memory databases report
lock conflicts immediately rather than waiting on the busy timeout.

The DEBUG env var must be set before any core/auth/api import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# Rate limits are shared per client address across the whole session.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("OTP_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.audit import AuditLogger
from auth.credentials import CredentialStore
from auth.database import Database
from auth.facade import AuthFacade, build_auth_facade
from auth.models import IssuedOtp
from auth.otp import OtpIssuer
from auth.permissions import PermissionEvaluator
from auth.sessions import SessionManager
from core.config import Settings

TEST_SECRET = "test-secret-key-for-authcore-suite-0123456789"
BCRYPT_TEST_ROUNDS = 4


class FakeClock:
    """Callable clock frozen at a fixed instant until advance() is called."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


def memory_url() -> str:
    return f"sqlite:///file:authcore_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Storage and components
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database(memory_url())
    yield database
    database.close()


@pytest.fixture
def file_db(tmp_path) -> Generator[Database, None, None]:
    database = Database(f"sqlite:///{tmp_path / 'authcore.db'}", timeout=10.0)
    yield database
    database.close()


@pytest.fixture
def credentials(db: Database, clock: FakeClock) -> CredentialStore:
    return CredentialStore(db, clock=clock, rounds=BCRYPT_TEST_ROUNDS)


@pytest.fixture
def make_otp(clock: FakeClock):
    """Build an OtpIssuer on a given database with optional overrides."""

    def factory(database: Database, **kwargs) -> OtpIssuer:
        return OtpIssuer(database, secret_key=TEST_SECRET, clock=clock, **kwargs)

    return factory


@pytest.fixture
def otp(make_otp, db: Database) -> OtpIssuer:
    return make_otp(db)


@pytest.fixture
def sessions(db: Database, clock: FakeClock) -> SessionManager:
    return SessionManager(db, secret_key=TEST_SECRET, clock=clock)


@pytest.fixture
def permissions(db: Database) -> PermissionEvaluator:
    return PermissionEvaluator(db)


@pytest.fixture
def audit_log(db: Database, clock: FakeClock) -> AuditLogger:
    return AuditLogger(db, clock=clock)


@pytest.fixture
def facade(
    credentials: CredentialStore,
    otp: OtpIssuer,
    sessions: SessionManager,
    permissions: PermissionEvaluator,
    audit_log: AuditLogger,
    clock: FakeClock,
) -> AuthFacade:
    return AuthFacade(credentials, otp, sessions, permissions, audit_log, clock=clock)


# ---------------------------------------------------------------------------
# HTTP harness
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    facade: AuthFacade
    outbox: list[tuple[str, IssuedOtp]] = field(default_factory=list)

    def login(self, identifier: str, secret: str, method: str = "password") -> str:
        """Log in over HTTP and return the session token.

        The cookie jar is cleared afterwards so each request chooses its own
        credentials explicitly (cookie auth would otherwise win over Bearer).
        """
        resp = self.client.post(
            "/api/v1/auth/login",
            json={"identifier": identifier, "secret": secret, "method": method},
        )
        assert resp.status_code == 200, resp.text
        self.client.cookies.clear()
        return resp.json()["session_id"]

    @staticmethod
    def bearer(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}


def _patch_lifespan(settings: Settings, database: Database, facade: AuthFacade, outbox: list):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.db = database
        app.state.auth = facade
        app.state.otp_sender = lambda identifier, issued: outbox.append((identifier, issued))
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness wired to a fresh database.

    Principals:
      admin@example.com     role=admin        password "admin-pass-1"
      ops@example.com       role=operator     password "ops-pass-1"
      client@example.com    role=client_user  password "client-pass-1"
    operator holds users.view, users.manage and audit.view; client_user holds
    admissions.view only.
    """
    settings = Settings(debug=True, secret_key=TEST_SECRET, database_url=memory_url())
    database = Database(settings.database_url)
    facade = build_auth_facade(settings, database=database, bcrypt_rounds=BCRYPT_TEST_ROUNDS)
    facade.credentials.create_principal("admin@example.com", role="admin", password="admin-pass-1")
    facade.credentials.create_principal("ops@example.com", role="operator", password="ops-pass-1")
    facade.credentials.create_principal("client@example.com", role="client_user", password="client-pass-1")
    facade.permissions.set_permissions("operator", ["users.view", "users.manage", "audit.view"])
    facade.permissions.set_permissions("client_user", ["admissions.view"])

    outbox: list[tuple[str, IssuedOtp]] = []
    app.router.lifespan_context = _patch_lifespan(settings, database, facade, outbox)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, facade=facade, outbox=outbox)

    database.close()
