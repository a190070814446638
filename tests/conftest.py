"""
tests/conftest.py -- Shared test fixtures for CCM portal tests.

This module provides:
  - FakeClock / FakeMailer: controllable time and a capturing mail sender
  - store / clock / otp_engine / invite_engine / flows: engine-level fixtures
    over a private in-memory SQLite database per test
  - _make_test_stores(): creates isolated in-memory DBs for credentials + submissions
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: module-scoped TestClient with seeded principals

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API fixture because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment variables must be set before any auth/core import so
get_settings() sees them: DEBUG auto-generates SECRET_KEY, ALLOWED_HOSTS lets
the TestClient host through, and the rate limits are raised so a module's
worth of logins does not trip them.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "10")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("OTP_RATE_LIMIT", "1000/minute")
os.environ.setdefault("CONTACT_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from auth.invites import InvitationEngine
from auth.models import SOURCE_ADMINS, SOURCE_USERS, AdminPrincipal, Claims, ManagedPrincipal
from auth.otp import OtpEngine
from auth.password_flows import PasswordFlows
from auth.passwords import hash_password
from auth.store import CredentialStore
from auth.tokens import AUTH_COOKIE, create_access_token
from core.mailer import MailerError
from submissions.store import SubmissionStore

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMailer:
    """Captures outgoing mail instead of calling Microsoft Graph.

    Set fail=True to make the next sends raise MailerError.
    """

    enabled = True

    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str]] = []
        self.fail = False

    def send(self, to: str, subject: str, html_body: str) -> bool:
        if self.fail:
            raise MailerError("Failed to send email.")
        self.messages.append((to, subject, html_body))
        return True

    def close(self) -> None:
        pass

    def last_code(self) -> str:
        """Six-digit code from the most recent message."""
        match = re.search(r"<b>(\d{6})</b>", self.messages[-1][2])
        assert match, f"No verification code in last message: {self.messages[-1][1]!r}"
        return match.group(1)

    def last_invite_token(self) -> str:
        match = re.search(r"token=([0-9a-f]{64})", self.messages[-1][2])
        assert match, f"No invitation link in last message: {self.messages[-1][1]!r}"
        return match.group(1)


# ---------------------------------------------------------------------------
# Engine-level fixtures (private :memory: DB per test)
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def otp_engine(store: CredentialStore, clock: FakeClock) -> OtpEngine:
    return OtpEngine(store, clock=clock)


@pytest.fixture
def invite_engine(store: CredentialStore, clock: FakeClock) -> InvitationEngine:
    return InvitationEngine(store, ttl_seconds=300, clock=clock)


@pytest.fixture
def flows(store: CredentialStore, otp_engine: OtpEngine) -> PasswordFlows:
    return PasswordFlows(store, otp_engine, min_password_length=8, otp_ttl_seconds=300, reset_ttl_seconds=600)


def make_manager(
    store: CredentialStore,
    username: str = "janedoe",
    email: str = "jane@example.com",
    password: str = "managerpass1",
    role: str = "manager",
    is_active: bool = True,
) -> ManagedPrincipal:
    user = ManagedPrincipal(
        first_name="Jane",
        last_name="Doe",
        username=username,
        email=email,
        role=role,
        password_hash=hash_password(password),
        is_active=is_active,
    )
    user.id = store.create_user(user)
    return user


def session_token(username: str, role: str, source: str, user_id: int | None = None, email: str | None = None) -> str:
    return create_access_token(
        Claims(username=username, role=role, source=source, user_id=user_id, email=email),
        ttl_seconds=3600,
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[CredentialStore, SubmissionStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    subs_url = f"sqlite:///file:test_subs_{db_suffix}?mode=memory&cache=shared&uri=true"
    return CredentialStore(db_url=auth_url), SubmissionStore(db_url=subs_url)


def _patch_lifespan(credentials: CredentialStore, submissions: SubmissionStore, mailer: FakeMailer):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown can cancel a real
    asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, credentials, submissions, mailer)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


class ApiEnv:
    """Handles the API tests need besides the client itself."""

    def __init__(self, client: TestClient, credentials: CredentialStore, submissions: SubmissionStore, mailer: FakeMailer):
        self.client = client
        self.credentials = credentials
        self.submissions = submissions
        self.mailer = mailer
        self.admin_id: int | None = None
        self.manager_id: int | None = None

    def login_as(self, token: str) -> None:
        self.client.cookies.clear()
        self.client.cookies.set(AUTH_COOKIE, token)

    def as_admin(self) -> None:
        self.login_as(session_token("testadmin", "admin", SOURCE_ADMINS, self.admin_id, "admin@example.com"))

    def as_manager(self) -> None:
        self.login_as(session_token("managerone", "manager", SOURCE_USERS, self.manager_id, "manager@example.com"))

    def anonymous(self) -> None:
        self.client.cookies.clear()


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv over the real FastAPI app with a patched lifespan.

    Seeded principals:
      admins: testadmin / testpass123 (admin@example.com)
              legacyadmin / legacypass1 (plaintext row, legacy@example.com)
      users:  managerone / managerpass1 (manager, manager@example.com)
              sleepy / sleepypass1 (manager, inactive)
              viewer / viewerpass1 (role "viewer", no dashboard access)
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    credentials, submissions = _make_test_stores(suffix)
    mailer = FakeMailer()

    admin_id = credentials.create_admin(
        AdminPrincipal(username="testadmin", password=hash_password("testpass123"), email="admin@example.com")
    )
    credentials.create_admin(AdminPrincipal(username="legacyadmin", password="legacypass1", email="legacy@example.com"))
    manager = make_manager(credentials, "managerone", "manager@example.com", "managerpass1")
    make_manager(credentials, "sleepy", "sleepy@example.com", "sleepypass1", is_active=False)
    make_manager(credentials, "viewer", "viewer@example.com", "viewerpass1", role="viewer")

    app.router.lifespan_context = _patch_lifespan(credentials, submissions, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        env = ApiEnv(client, credentials, submissions, mailer)
        env.admin_id = admin_id
        env.manager_id = manager.id
        yield env

    credentials.close()
    submissions.close()
