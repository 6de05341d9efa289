"""
tests/conftest.py -- Shared fixtures for the Minimarket auth tests.

This module provides:
  - FakeClock: a controllable clock injected into every auth service
  - RecordingNotifier: captures sent codes instead of emailing them
  - store / service: an isolated in-memory RecordStore + AuthService per test
  - make_user: creates a password user through the service
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. The
named URI format (file:name?mode=memory&cache=shared&uri=true) shares one
in-memory instance across all connections in the same process.

Environment must be set before any auth/core import:
  DEBUG        -- lets get_settings() run without a .env file
  SECRET_KEY   -- fixed, so refresh hashes are stable within the run
  BCRYPT_ROUNDS -- minimum cost; the default of 12 makes the suite crawl
  *_RATE_LIMIT -- high enough that one module's requests never trip slowapi
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: environment first, before get_settings() is first called.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("PASSCODE_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.service import AuthService, build_auth_service
from auth.store import RecordStore

DEFAULT_PASSWORD = "Secreto123"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when advance() is called.

    Starts at the real current time so access tokens it issues are accepted
    by python-jose, which checks exp against the real clock.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier:
    """Notifier that records every message. Set ok=False to simulate delivery failure."""

    def __init__(self) -> None:
        self.ok = True
        self.codes: list[tuple[str, str]] = []
        self.password_changed: list[str] = []

    def send_code(self, destination: str, code: str) -> bool:
        if self.ok:
            self.codes.append((destination, code))
        return self.ok

    def send_password_changed(self, destination: str) -> bool:
        if self.ok:
            self.password_changed.append(destination)
        return self.ok

    def last_code(self, destination: str) -> str:
        return [c for d, c in self.codes if d == destination][-1]


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store() -> Generator[RecordStore, None, None]:
    s = RecordStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(store: RecordStore, notifier: RecordingNotifier, clock: FakeClock) -> AuthService:
    return build_auth_service(store, notifier=notifier, clock=clock)


@pytest.fixture
def make_user(service: AuthService):
    """Factory: make_user("a@b.pe", password=..., role=...) -> User."""

    def _make(email: str = "cajero@tienda.pe", password: str | None = DEFAULT_PASSWORD, role: str = "vendedor") -> User:
        return service.create_user(email, password, role)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: RecordStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test store and service into app.state so routes see
    an isolated database, and mocks the OAuth registry to prevent network
    calls.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.auth = service
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_env(request) -> Generator[tuple[TestClient, AuthService, RecordingNotifier], None, None]:
    """Yield (client, service, notifier) backed by a per-module shared-memory DB."""
    name = request.module.__name__.rsplit(".", 1)[-1]
    store = RecordStore(f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")
    notifier = RecordingNotifier()
    service = build_auth_service(store, notifier=notifier)

    app.router.lifespan_context = _patch_lifespan(store, service)
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client, service, notifier

    store.close()


@pytest.fixture
def api_client(api_env) -> tuple[TestClient, AuthService, RecordingNotifier]:
    """Per-test view of api_env with an empty cookie jar."""
    client, service, notifier = api_env
    client.cookies.clear()
    notifier.ok = True
    return client, service, notifier
