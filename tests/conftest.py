"""
tests/conftest.py -- Shared test fixtures for Gatehouse.

This module provides:
  - FakeClock: a controllable clock injected into every auth service
  - store / provider / outbox: an isolated auth core per test
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: the in-memory store uses the plain "sqlite://" URL, which AuthStore
backs with one shared connection (StaticPool) behind a lock. TestClient runs sync
route handlers on a thread pool; a per-thread in-memory database would present a
blank schema to each worker.

The DEBUG env var must be set before any api/ or core/ import so
get_settings() auto-generates SECRET_KEY in dev mode rather than raising.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from auth.email import MemoryEmailSender
from auth.factory import build_auth_provider
from auth.hashing import PasswordHasher
from auth.provider import CredentialAuthProvider
from auth.store import AuthStore
from core.config import Settings
from tests.helpers import FakeClock, make_settings


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    """bcrypt at the minimum cost so the suite stays fast.

    Settings enforces the production floor; the hasher itself accepts any
    valid bcrypt cost.
    """
    return PasswordHasher(rounds=4)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite://")
    yield s
    s.close()


@pytest.fixture
def outbox() -> MemoryEmailSender:
    return MemoryEmailSender()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def provider(settings, store, outbox, clock, hasher) -> CredentialAuthProvider:
    return build_auth_provider(settings, store=store, email_sender=outbox, clock=clock, hasher=hasher)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(provider: CredentialAuthProvider):
    """Return an async context manager that replaces the real lifespan.

    Wires the test provider into app.state and mocks the OAuth registry to
    prevent real network calls. maintenance_task is a long-sleeping coroutine
    so shutdown's .cancel() has a real asyncio.Task to act on.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = provider
        app.state.oauth = MagicMock()
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.maintenance_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, CredentialAuthProvider, MemoryEmailSender], None, None]:
    """Yield (client, provider, outbox) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers against an isolated in-memory store. The slowapi
    counters are reset so earlier modules cannot exhaust the login limit.
    """
    from api.limiter import limiter
    from api.main import app

    store = AuthStore("sqlite://")
    outbox = MemoryEmailSender()
    provider = build_auth_provider(
        make_settings(session_bind_origin=True),
        store=store,
        email_sender=outbox,
        hasher=PasswordHasher(rounds=4),
    )
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(provider)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, provider, outbox

    store.close()
