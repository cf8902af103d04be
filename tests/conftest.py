"""
tests/conftest.py -- Shared test fixtures for AuthFlow.

This module provides:
  - db / store / service: function-scoped, private in-memory SQLite stack
  - _make_test_db(): named shared-memory DB for the API client
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - api_client: TestClient with a seeded user and a valid JWT

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API client because TestClient runs sync route handlers in a thread pool. The
named URI format (file:name?mode=memory&cache=shared&uri=true) shares one
in-memory instance across all connections in the same process.

Environment must be set before any auth/core import: get_settings() is cached
on first use, and a fixed SECRET_KEY keeps tokens valid even if a test clears
the settings cache.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: environment first, imports second.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789abcdef")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("DB_RETRY_BASE_DELAY", "0")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-google-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-google-client-secret")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import NewUser
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import create_access_token
from db.connection import ConnectionManager

SEED_EMAIL = "seed@test.com"
SEED_PASSWORD = "seedpass1"

# ---------------------------------------------------------------------------
# Unit-level fixtures -- fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def db() -> Generator[ConnectionManager, None, None]:
    """Private in-memory database behind a single-connection pool."""
    manager = ConnectionManager("sqlite://", retry_base_delay=0)
    yield manager
    manager.dispose()


@pytest.fixture
def store(db: ConnectionManager) -> UserStore:
    return UserStore(db)


@pytest.fixture
def service(store: UserStore) -> AuthService:
    return AuthService(store)


# ---------------------------------------------------------------------------
# API helpers
# ---------------------------------------------------------------------------


def _make_test_db(db_suffix: str) -> ConnectionManager:
    """Create an isolated named shared-memory SQLite database.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    return ConnectionManager(
        f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true",
        retry_base_delay=0,
    )


def _patch_lifespan(db: ConnectionManager, store: UserStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test objects into app.state so TestClient routes see
    the isolated test DB. The OAuth registry is a MagicMock so no test ever
    reaches a real provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.db = db
        app.state.user_store = store
        app.state.auth_service = service
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    A seed user (seed@test.com / seedpass1) exists before the client starts
    and the token is a valid JWT for that user.
    """
    db = _make_test_db(request.module.__name__.replace(".", "_"))
    store = UserStore(db)
    service = AuthService(store)

    seed = store.create_user(NewUser(name="Seed User", email=SEED_EMAIL, password=SEED_PASSWORD))
    token = create_access_token(seed.id, seed.email)

    app.router.lifespan_context = _patch_lifespan(db, store, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, seed.id

    db.dispose()
