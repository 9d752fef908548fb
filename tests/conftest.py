"""
tests/conftest.py -- Shared test fixtures for the identity core and API.

This module provides:
  - FakeClock / clock: a controllable UTC clock shared by store, lockout and
    token manager, so lock windows and token expiry can be crossed without
    sleeping
  - store / service: a fresh in-memory CredentialStore and IdentityService
    per test
  - super_admin: the seeded 000000 account
  - make_store_url(): named shared-memory SQLite URIs for the API client
  - _patch_lifespan() / api_client: TestClient wired to an isolated store,
    logged in as the seeded super-admin

Design: the API client uses named shared-memory SQLite URIs (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any api/core import.
os.environ.setdefault("DEBUG", "true")

import asyncio
from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_state
from core.config import get_settings
from identity.models import RESERVED_ACCOUNT, User
from identity.service import IdentityService, build_identity_service
from identity.store import CredentialStore
from identity.tokens import hash_password

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
SUPER_ADMIN_EMAIL = "root@classroom.test"
SUPER_ADMIN_PASSWORD = "rootpass123"


class FakeClock:
    """Callable clock returning a fixed UTC instant until advanced."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_store_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def service(store: CredentialStore, clock: FakeClock) -> IdentityService:
    return build_identity_service(store, TEST_SECRET, clock=clock)


@pytest.fixture
def super_admin(store: CredentialStore) -> User:
    store.ensure_super_admin(hash_password(SUPER_ADMIN_PASSWORD), email=SUPER_ADMIN_EMAIL)
    return store.get_by_account(RESERVED_ACCOUNT)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-created test store into app.state so TestClient routes see an
    isolated database rather than the configured one. The sweep_task is a
    long-sleeping coroutine (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_state(app, get_settings(), store)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, User], None, None]:
    """Yield (client, token, super_admin) for API integration tests.

    The super-admin row is seeded before the client starts, exactly as the
    real lifespan seeds it; the token comes from a real POST /auth/login with
    the seeded credentials.
    """
    store = CredentialStore(make_store_url("test_api"))
    store.ensure_super_admin(hash_password(SUPER_ADMIN_PASSWORD), email=SUPER_ADMIN_EMAIL)
    admin = store.get_by_account(RESERVED_ACCOUNT)

    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        resp = client.post("/api/v1/auth/login", json={"email": SUPER_ADMIN_EMAIL, "password": SUPER_ADMIN_PASSWORD})
        assert resp.status_code == 200, resp.text
        token = resp.json()["data"]["access_token"]
        yield client, token, admin

    store.close()
