"""
tests/conftest.py -- Shared test fixtures for authguard.

This module provides:
  - make_services(): builds an AuthServices container against a given DB URL
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - services: isolated file-backed services for unit and concurrency tests
  - api_client: TestClient over the real app plus its services and seeded users

Design: API tests use named shared-memory SQLite URIs (not plain :memory:)
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Thread-based race tests use a real file under tmp_path instead: shared-cache
memory databases report lock conflicts immediately rather than waiting.

The DEBUG and ALLOWED_HOSTS env vars must be set before any api/auth/core
import: get_settings() is cached on first use.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set env before any auth/core import so the cached Settings pick it up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.credentials import hash_password
from auth.models import User
from auth.permissions import Role
from auth.services import AuthServices, build_services
from core.config import Settings

# bcrypt is deliberately slow; hash the fixture password once per session.
PASSWORD = "correct horse battery"
_PASSWORD_HASH = hash_password(PASSWORD)


def make_services(db_url: str, **overrides) -> AuthServices:
    """Build a service container with Settings overridden by keyword."""
    settings = Settings(**overrides)
    return build_services(settings, db_url=db_url)


def add_user(services: AuthServices, username: str, role: Role = Role.USER, *, is_active: bool = True) -> int:
    return services.users.create_user(
        User(username=username, role=role, hashed_password=_PASSWORD_HASH, is_active=is_active)
    )


def _patch_lifespan(services: AuthServices):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def services(tmp_path) -> Generator[AuthServices, None, None]:
    """Isolated services on a fresh SQLite file."""
    svc = make_services(f"sqlite:///{tmp_path / 'auth.db'}")
    yield svc
    svc.close()


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    services: AuthServices
    user_ids: dict[str, int]

    def login(self, username: str, password: str = PASSWORD) -> dict:
        resp = self.client.post("/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.text
        return resp.json()

    def bearer(self, username: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.login(username)['access_token']}"}


@pytest.fixture
def api_client() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness over the real app with isolated in-memory stores.

    A fresh named in-memory database per test keeps session and rate-limit
    state from leaking between tests.

    Seeded users (all with password PASSWORD):
      root  -- superadmin
      admin -- admin
      alice -- user
      bob   -- user
    """
    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    # Generous login limits so ordinary tests can log in freely; rate-limit
    # tests swap in tight policies on services.rate_policies.
    services = make_services(db_url, login_ip_limit=500, login_account_limit=100)
    user_ids = {
        "root": add_user(services, "root", Role.SUPERADMIN),
        "admin": add_user(services, "admin", Role.ADMIN),
        "alice": add_user(services, "alice", Role.USER),
        "bob": add_user(services, "bob", Role.USER),
    }
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(services)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, services=services, user_ids=user_ids)

    services.close()
