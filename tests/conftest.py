"""
tests/conftest.py -- Shared test fixtures for chatgate.

This module provides:
  - FakeClock / clock: a settable UTC clock for TTL tests
  - store / manager: a SessionStore on a per-test SQLite file and a
    SessionManager driven by the fake clock
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: (TestClient, SessionManager) for route and WebSocket tests

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

DEBUG must be set before any auth/core import so get_settings() can
auto-generate SECRET_KEY instead of raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any app import -- get_settings() is cached on first call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("REFRESH_RATE_LIMIT", "1000/minute")
os.environ.setdefault("SESSION_PURGE_INTERVAL_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Fingerprint
from auth.sessions import SessionManager
from auth.store import SessionStore
from auth.tokens import CredentialCodec
from core.config import get_settings
from presence.broadcaster import PresenceBroadcaster
from presence.registry import PresenceRegistry

TEST_SECRET = "test-secret-key-that-is-at-least-32-chars"

# What Starlette's TestClient reports as request.client.host and User-Agent.
TESTCLIENT_FINGERPRINT = Fingerprint(source_address="testclient", user_agent="testclient")


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> Generator[SessionStore, None, None]:
    s = SessionStore(f"sqlite:///{tmp_path / 'sessions.db'}")
    yield s
    s.close()


@pytest.fixture
def manager(store: SessionStore, clock: FakeClock) -> SessionManager:
    return SessionManager(store, CredentialCodec(TEST_SECRET, clock=clock))


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: SessionStore, manager: SessionManager):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and a fresh presence registry into app.state so
    TestClient routes see isolated state. No purge task is started.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.session_store = store
        app.state.sessions = manager
        app.state.presence = PresenceRegistry()
        app.state.broadcaster = PresenceBroadcaster(app.state.presence)
        app.state.purge_task = None
        yield
        app.state.broadcaster.close()
        app.state.presence.clear()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, SessionManager], None, None]:
    """Yield (client, manager) for route and WebSocket integration tests.

    The manager uses the application's real settings and codec, so tokens it
    issues are accepted by the routes exactly as in production.
    """
    store = SessionStore(f"sqlite:///file:test_sessions_{request.module.__name__}?mode=memory&cache=shared&uri=true")
    manager = SessionManager.from_settings(store, get_settings())

    app.router.lifespan_context = _patch_lifespan(store, manager)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, manager

    store.close()


@pytest.fixture
def client(api_client: tuple[TestClient, SessionManager]) -> tuple[TestClient, SessionManager]:
    """api_client with an empty cookie jar, so each test sends only the cookies it sets."""
    test_client, manager = api_client
    test_client.cookies.clear()
    return test_client, manager
