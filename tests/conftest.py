"""
tests/conftest.py -- Shared test fixtures for the Portfolio auth test suite.

This module provides:
  - settings: a Settings object with a fixed SECRET_KEY and bcrypt_rounds=4
  - clock: a FakeClock the orchestrator and components read "now" from
  - store: parametrized over SqlAuthStore (in-memory SQLite) and MemoryAuthStore
  - mailer: a RecordingMailer that keeps every message for assertions
  - service: an AuthOrchestrator wired to the above
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the TestClient because route handlers run in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any api/ import: api.main reads
get_settings() at import time for the CORS origins.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.memory_store import MemoryAuthStore
from auth.service import AuthOrchestrator
from auth.store import SqlAuthStore
from core.config import Settings

TEST_SECRET_KEY = "test-secret-key-0123456789abcdef0123456789abcdef"
T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Mutable UTC clock. Call it for the current time; advance() moves it forward."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingMailer:
    """Mailer that keeps every message in memory."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    def send(self, template: str, recipient: str, **context: str) -> None:
        self.sent.append((template, recipient, context))

    def templates(self) -> list[str]:
        return [template for template, _, _ in self.sent]


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET_KEY,
        "bcrypt_rounds": 4,
        "database_url": "sqlite:///:memory:",
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """Build Settings with overrides on top of the test defaults."""
    return make_settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(params=["sql", "memory"])
def store(request):
    """Every store-facing test runs against both AuthStore implementations."""
    if request.param == "sql":
        s = SqlAuthStore("sqlite:///:memory:")
    else:
        s = MemoryAuthStore()
    yield s
    s.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def service(settings: Settings, store, mailer: RecordingMailer, clock: FakeClock) -> AuthOrchestrator:
    return AuthOrchestrator(settings, store, mailer=mailer, clock=clock)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, service: AuthOrchestrator):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-built orchestrator into app.state so TestClient routes see an
    isolated test DB rather than the configured database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.auth_store = service.store
        app.state.auth_service = service
        app.state.token_issuer = service.tokens
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthOrchestrator, RecordingMailer], None, None]:
    """Yield (client, service, mailer) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. The service
    runs on the real clock because access tokens are checked against it.
    Rate limiting is switched off; the rate-limit test switches it back on.
    """
    suffix = uuid.uuid4().hex[:8]
    settings = make_settings()
    store = SqlAuthStore(f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")
    mailer = RecordingMailer()
    service = AuthOrchestrator(settings, store, mailer=mailer)

    app.router.lifespan_context = _patch_lifespan(settings, service)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service, mailer

    limiter.enabled = True
    store.close()
