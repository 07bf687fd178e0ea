"""
tests/conftest.py -- Shared test fixtures for authkeep.

This module provides:
  - FakeClock: a controllable clock injected into every service
  - make_settings(): Settings with fast bcrypt and relaxed attempt budgets
  - memory_url() / file_url(): isolated SQLite databases per test
  - data / store / tokens / sessions: the service graph on a shared-memory DB
  - file_sessions: the same graph on a file DB, for real concurrency
  - make_sessions: factory for a graph with custom settings
  - _patch_lifespan(): wires a test SessionService into app.state
  - api_client: TestClient running the real app on an isolated DB

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Concurrency tests use a file database instead, so BEGIN IMMEDIATE takes a
real database lock that other connections wait on.

The DEBUG env var must be set before any authkeep import so get_settings()
auto-generates the signing secrets in dev mode rather than raising.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set these before any authkeep import so get_settings() can
# auto-generate secrets and TrustedHostMiddleware accepts the test host.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter as api_limiter
from api.main import app
from auth.models import ClientContext
from auth.session import SessionService, build_session_service
from core.config import Settings
from db.access import DataAccess

ACCESS_SECRET = "a" * 16 + "access-secret-for-tests-only"
REFRESH_SECRET = "r" * 16 + "refresh-secret-for-tests-only"

_db_counter = itertools.count()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when a test tells it to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Settings and databases
# ---------------------------------------------------------------------------


def memory_url(name: str) -> str:
    return f"sqlite:///file:authkeep_{name}_{next(_db_counter)}?mode=memory&cache=shared&uri=true"


def file_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'authkeep.db'}"


def make_settings(database_url: str, **overrides) -> Settings:
    """Settings for tests: bcrypt at minimum cost, attempt budgets out of the way.

    Rate limiting has dedicated tests that pass their own limits; everywhere
    else the login budget would trip before the lockout threshold.
    """
    values = dict(
        debug=True,
        database_url=database_url,
        access_token_secret=ACCESS_SECRET,
        refresh_token_secret=REFRESH_SECRET,
        bcrypt_rounds=4,
        register_rate_limit="1000 per minute",
        login_rate_limit="1000 per minute",
        db_query_backoff_base=0.0,
        db_tx_backoff_base=0.0,
    )
    values.update(overrides)
    return Settings(**values)


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client_ctx() -> ClientContext:
    return ClientContext(ip="203.0.113.7", user_agent="pytest")


@pytest.fixture
def settings() -> Settings:
    return make_settings(memory_url("unit"))


@pytest.fixture
def data(settings) -> Generator[DataAccess, None, None]:
    access = DataAccess(settings, sleep=no_sleep)
    yield access
    access.close()


@pytest.fixture
def sessions(settings, data, clock) -> SessionService:
    service = build_session_service(settings, data, clock=clock)
    service.store.create_schema()
    return service


@pytest.fixture
def store(sessions):
    return sessions.store


@pytest.fixture
def tokens(sessions):
    return sessions.tokens


@pytest.fixture
def file_sessions(tmp_path, clock) -> Generator[SessionService, None, None]:
    """SessionService on a file-backed SQLite database with a real QueuePool."""
    settings = make_settings(file_url(tmp_path), db_pool_min=2, db_pool_max=8)
    access = DataAccess(settings, sleep=no_sleep)
    service = build_session_service(settings, access, clock=clock)
    service.store.create_schema()
    yield service
    access.close()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(sessions: SessionService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service graph into app.state so TestClient
    routes see an isolated test DB rather than the configured database.

    The sweep_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = sessions.settings
        app.state.data = sessions.data
        app.state.sessions = sessions
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture
def api_sessions(clock) -> Generator[SessionService, None, None]:
    settings = make_settings(memory_url("api"))
    access = DataAccess(settings, sleep=no_sleep)
    service = build_session_service(settings, access, clock=clock)
    service.store.create_schema()
    yield service
    access.close()


@pytest.fixture
def api_client(api_sessions) -> Generator[TestClient, None, None]:
    """TestClient on the real app with a patched lifespan and a fresh database.

    The coarse slowapi counters are module-level, so they are reset per test.
    """
    app.router.lifespan_context = _patch_lifespan(api_sessions)
    api_limiter.reset()
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def make_sessions(clock):
    """Factory fixture: SessionService on a fresh shared-memory DB with setting overrides.

    Usage:
        def test_x(make_sessions):
            sessions = make_sessions(login_rate_limit="3 per 15 minutes")
            sessions = make_sessions(database_url=file_url(tmp_path))  # real file DB
    """
    built: list[DataAccess] = []

    def factory(sleep=no_sleep, database_url: str | None = None, **overrides) -> SessionService:
        settings = make_settings(database_url or memory_url("custom"), **overrides)
        access = DataAccess(settings, sleep=sleep)
        built.append(access)
        service = build_session_service(settings, access, clock=clock)
        service.store.create_schema()
        return service

    yield factory
    for access in built:
        access.close()
