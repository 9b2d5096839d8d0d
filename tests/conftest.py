"""
tests/conftest.py -- Shared test fixtures for StagePass tests.

This module provides:
  - settings / store / service: an isolated server-side auth stack per test
  - registered: one FAN identity ("ax") already registered in that stack
  - api_client: TestClient over the real FastAPI app with a patched lifespan
  - http_backend: HttpAuthBackend that sends its requests through api_client

Design: the per-test store is a SQLite file under tmp_path, not :memory:.
SessionManager runs backend calls on worker threads and TestClient runs route
handlers in a thread pool; a plain :memory: DB is per-connection and would
present a blank schema to each worker thread. The API fixture uses a named
shared-memory URI (file:name?mode=memory&cache=shared&uri=true), which shares
one in-memory instance across all connections in the same process.

Environment must be set before any auth/core import:
  DEBUG=true            -- get_settings() auto-generates token secrets
  BCRYPT_ROUNDS=4       -- keeps hashing fast; the cost factor is not under test
  LOGIN_RATE_LIMIT      -- high enough that the suite never trips it
  ALLOWED_HOSTS         -- TestClient sends Host: testserver
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set these before any auth/core import so get_settings() picks them up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import AuthResponse, Identity, Role
from auth.service import AuthService
from auth.store import IdentityStore
from client.backends import HttpAuthBackend
from core.config import Settings, get_settings

PASSWORD = "Str0ng!Pass"


# ---------------------------------------------------------------------------
# Server-side stack
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    """Settings with test-friendly defaults; secrets are auto-generated (DEBUG)."""
    values = {"debug": True, "bcrypt_rounds": 4}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """make_settings as a fixture, for tests that need non-default lifetimes or rotation."""
    return make_settings


@pytest.fixture
def store(tmp_path) -> Generator[IdentityStore, None, None]:
    s = IdentityStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


@pytest.fixture
def service(store: IdentityStore, settings: Settings) -> AuthService:
    return AuthService(store, settings)


@pytest.fixture
def registered(service: AuthService) -> Identity:
    """A FAN / FREE identity: a@x.com / ax / Str0ng!Pass."""
    result = service.register("a@x.com", "ax", PASSWORD)
    assert isinstance(result, AuthResponse), result
    return result.identity


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: IdentityStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store and service into app.state so TestClient
    routes see an isolated DB rather than the configured database_url.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.identity_store = store
        app.state.auth_service = service
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, AuthService, dict], None, None]:
    """Yield (client, service, admin) for API integration tests.

    admin is {"id", "access_token", "refresh_token"} for an ADMIN identity
    created before the client starts. Each test module gets its own DB.
    """
    db_name = f"test_auth_{request.module.__name__.rsplit('.', 1)[-1]}"
    store = IdentityStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    service = AuthService(store, get_settings())

    created = service.register("admin@x.com", "testadmin", PASSWORD)
    service.update_access(created.identity.id, role=Role.ADMIN)
    login = service.login("testadmin", PASSWORD)
    admin = {
        "id": login.identity.id,
        "access_token": login.tokens.access_token,
        "refresh_token": login.tokens.refresh_token,
    }

    app.router.lifespan_context = _patch_lifespan(store, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service, admin

    store.close()


class _TestClientBackend(HttpAuthBackend):
    """HttpAuthBackend whose requests session is the module's TestClient.

    TestClient accepts the same request(method, url, headers=, timeout=, json=)
    call as requests.Session. close() is a no-op: the client belongs to the
    api_client fixture and must stay open for the rest of the module.
    """

    def close(self) -> None:
        pass


@pytest.fixture
def http_backend(api_client) -> HttpAuthBackend:
    client, _, _ = api_client
    return _TestClientBackend("http://testserver/api/v1", timeout=10, session=client)
