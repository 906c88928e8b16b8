"""
tests/conftest.py -- Shared test fixtures.

This module provides:
  - settings / clock / store / manager: unit-level fixtures with an
    in-memory database and a clock the test can move forward
  - api_client: TestClient over the real app with a patched lifespan
  - client: the same TestClient with an empty cookie jar per test
  - new_account: registers and signs in a fresh user through the API

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread.

Environment variables must be set before any api/ import: get_settings() is
cached on first use, and the limiter and middleware read it at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("TRUSTED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User, VerificationToken
from auth.sessions import SessionManager
from auth.store import AuthStore
from core.config import Settings, get_settings

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock for SessionManager; only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Outbox:
    """Verification notifier that records what would have been emailed."""

    def __init__(self) -> None:
        self.sent: list[tuple[User, VerificationToken]] = []

    def __call__(self, user: User, token: VerificationToken) -> None:
        self.sent.append((user, token))

    def latest(self, email: str, purpose: str) -> str:
        for user, token in reversed(self.sent):
            if user.email == email and token.purpose.value == purpose:
                return token.token
        raise AssertionError(f"no {purpose} token sent to {email}")


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Fast, deterministic settings: 1h sessions, no sliding expiration."""
    return Settings(
        debug=True,
        secret_key=TEST_SECRET,
        bcrypt_rounds=4,
        session_ttl_seconds=3600,
        session_update_age_seconds=0,
        verification_ttl_seconds=600,
        require_email_verification=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def manager(store: AuthStore, settings: Settings, clock: FakeClock, outbox: Outbox) -> SessionManager:
    return SessionManager(store, settings, clock=clock, notifier=outbox)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, manager: SessionManager):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and manager into app.state. The purge_task is a
    long-sleeping coroutine so shutdown cancels and awaits a real asyncio.Task
    the same way the app does.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.session_manager = manager
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.purge_task

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, SessionManager, Outbox], None, None]:
    """Yield (client, manager, outbox) for API integration tests.

    One database per test module; tests inside a module share it, so they
    create users with unique emails (see new_account).
    """
    db_name = request.module.__name__.replace(".", "_")
    store = AuthStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    outbox = Outbox()
    manager = SessionManager(store, get_settings(), notifier=outbox)

    app.router.lifespan_context = _patch_lifespan(store, manager)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, manager, outbox

    store.close()


@pytest.fixture
def client(api_client: tuple[TestClient, SessionManager, Outbox]) -> Generator[TestClient, None, None]:
    """The module's TestClient with an empty cookie jar.

    httpx keeps Set-Cookie values between requests; clearing the jar stops a
    sign-in in one test from authenticating requests in the next.
    """
    test_client = api_client[0]
    test_client.cookies.clear()
    yield test_client
    test_client.cookies.clear()


@pytest.fixture
def api_outbox(api_client: tuple[TestClient, SessionManager, Outbox]) -> Outbox:
    return api_client[2]


@pytest.fixture
def api_manager(api_client: tuple[TestClient, SessionManager, Outbox]) -> SessionManager:
    return api_client[1]


def unique_email() -> str:
    return f"user-{uuid.uuid4().hex[:12]}@example.com"


@pytest.fixture
def new_account(client: TestClient) -> Callable[..., tuple[str, str, int]]:
    """Return a factory: register + sign in a fresh user -> (email, token, user_id)."""

    def _create(password: str = "correcthorse", name: str = "Test User") -> tuple[str, str, int]:
        email = unique_email()
        resp = client.post("/api/v1/auth/sign-up", json={"email": email, "password": password, "name": name})
        assert resp.status_code == 201, resp.text
        user_id = resp.json()["user_id"]
        resp = client.post("/api/v1/auth/sign-in", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        client.cookies.clear()
        return email, resp.json()["token"], user_id

    return _create
