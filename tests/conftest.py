"""
tests/conftest.py -- Shared test fixtures for the accounts service tests.

This module provides:
  - rsa_key / other_rsa_key: session-scoped RSA private keys for signing id_tokens
  - local_service: AccountService in AUTH_MODE=local on a fresh test DB
  - sso_harness: AccountService in AUTH_MODE=sso with a simulated provider
  - _patch_lifespan(): wires a test service into app.state, bypassing real startup
  - local_client / sso_client: TestClient per test against the real FastAPI app

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Every fixture gets a fresh database name so login-attempt counters never leak
between tests. Tests that spawn their own threads use a file DB in tmp_path.

DEBUG and HTTP_RATE_LIMIT_ENABLED must be set before any auth/core/api import:
get_settings() is read at import time by several modules.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core/api import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError, and so
# the per-IP slowapi throttle does not interfere with login-heavy tests.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("HTTP_RATE_LIMIT_ENABLED", "false")

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient

from api.main import app
from auth.service import AccountService
from tests.helpers import SsoHarness, make_service, make_sso_harness, memory_db_url

# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def local_service() -> Generator[AccountService, None, None]:
    service = make_service(memory_db_url("local"), auth_mode="local")
    yield service
    service.close()


@pytest.fixture
def sso_harness(rsa_key) -> Generator[SsoHarness, None, None]:
    harness = make_sso_harness(rsa_key, memory_db_url("sso"))
    yield harness
    harness.service.close()


# ---------------------------------------------------------------------------
# TestClient fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AccountService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so TestClient routes see
    an isolated test DB and mocked upstreams rather than real providers.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_service = service
        yield

    return test_lifespan


@pytest.fixture
def local_client(local_service) -> Generator[TestClient, None, None]:
    """TestClient against the real app, AUTH_MODE=local."""
    app.router.lifespan_context = _patch_lifespan(local_service)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def sso_client(sso_harness) -> Generator[tuple[TestClient, SsoHarness], None, None]:
    """Yield (client, harness) against the real app, AUTH_MODE=sso."""
    app.router.lifespan_context = _patch_lifespan(sso_harness.service)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, sso_harness
