"""
tests/conftest.py -- Shared test fixtures for DeskGate unit and integration tests.

This module provides:
  - FrozenClock: controllable clock for expiry boundary tests
  - seed_directory(): one tenant with alice (active), bob (inactive), carol,
    the "agent" and "support-agent" roles, and two registered clients
  - engine / identity: per-test file-backed SQLite engine with the schema
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: module-scoped TestClient over a named shared-memory database

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient because route handlers run in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

DEBUG and TOKEN_RATE_LIMIT must be set before any auth/core/api import so
get_settings() auto-generates SECRET_KEY and the token endpoint limit does not
trip during a test run.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("TOKEN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_app_state
from auth.models import ActiveFlag, ClaimKind, Client, GrantKind, Principal, Role, RoleClaim
from auth.store import IdentityStore, init_schema
from auth.tokens import hash_password, hash_secret
from core.database import create_db_engine

TENANT_ID = 1
OTHER_TENANT_ID = 2
ALICE_PASSWORD = "P@ss1"
BOB_PASSWORD = "P@ss1"
CAROL_PASSWORD = "C4rol!"

WEB_CLIENT_ID = "helpdesk-web"
WEB_CLIENT_SECRET = "web-client-secret"
WEB_REDIRECT = "https://app.example.com/callback"
SPA_CLIENT_ID = "helpdesk-spa"
SPA_REDIRECT = "https://spa.example.com/cb"

ALL_SCOPES = {"openid", "profile", "email", "roles", "offline_access", "api"}


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@dataclass
class Seed:
    alice_id: int
    bob_id: int
    carol_id: int
    agent_role_id: int
    support_role_id: int


def seed_directory(identity: IdentityStore) -> Seed:
    alice_id = identity.create_principal(
        Principal(
            tenant_id=TENANT_ID,
            login="alice@example.com",
            email="alice@example.com",
            password_hash=hash_password(ALICE_PASSWORD),
            first_name="Alice",
            last_name="Moreau",
            profile="agent",
        )
    )
    bob_id = identity.create_principal(
        Principal(
            tenant_id=TENANT_ID,
            login="bob@example.com",
            email="bob@example.com",
            password_hash=hash_password(BOB_PASSWORD),
            active=ActiveFlag.INACTIVE,
            first_name="Bob",
        )
    )
    carol_id = identity.create_principal(
        Principal(
            tenant_id=TENANT_ID,
            login="carol@example.com",
            email="carol@example.com",
            password_hash=hash_password(CAROL_PASSWORD),
        )
    )

    agent_role_id = identity.create_role(Role(tenant_id=TENANT_ID, name="agent"))
    identity.add_role_claim(agent_role_id, RoleClaim(ClaimKind.PERMISSION, "ticket:read"))
    identity.add_role_claim(agent_role_id, RoleClaim(ClaimKind.PERMISSION, "ticket:reply"))
    support_role_id = identity.create_role(Role(tenant_id=TENANT_ID, name="support-agent"))
    identity.add_role_claim(support_role_id, RoleClaim(ClaimKind.PERMISSION, "ticket:read"))
    identity.add_role_claim(support_role_id, RoleClaim(ClaimKind.PERMISSION, "ticket:write"))

    identity.assign_role(alice_id, agent_role_id)
    identity.assign_role(bob_id, agent_role_id)
    identity.assign_role(carol_id, support_role_id)

    identity.create_client(
        Client(
            client_id=WEB_CLIENT_ID,
            display_name="Helpdesk web",
            secret_hash=hash_secret(WEB_CLIENT_SECRET),
            redirect_uris=[WEB_REDIRECT],
            grant_types={GrantKind.AUTHORIZATION_CODE, GrantKind.PASSWORD, GrantKind.REFRESH_TOKEN},
            scopes=set(ALL_SCOPES),
        )
    )
    identity.create_client(
        Client(
            client_id=SPA_CLIENT_ID,
            display_name="Helpdesk SPA",
            redirect_uris=[SPA_REDIRECT],
            grant_types={GrantKind.AUTHORIZATION_CODE, GrantKind.REFRESH_TOKEN},
            scopes={"openid", "profile", "api"},
        )
    )
    return Seed(alice_id, bob_id, carol_id, agent_role_id, support_role_id)


# ---------------------------------------------------------------------------
# Unit-test fixtures -- one file database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(tmp_path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'auth.db'}")
    init_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def identity(engine) -> IdentityStore:
    return IdentityStore(engine)


@pytest.fixture
def seed(identity) -> Seed:
    return seed_directory(identity)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(engine):
    """Return an async context manager that replaces the real lifespan.

    Wires stores built on the test engine into app.state so TestClient routes
    see an isolated database rather than the configured one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_app_state(app, engine)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, Seed], None, None]:
    """Yield (client, seed) backed by a shared-memory database named after the test module."""
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    eng = create_db_engine(f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")
    init_schema(eng)
    seeded = seed_directory(IdentityStore(eng))

    app.router.lifespan_context = _patch_lifespan(eng)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, seeded

    eng.dispose()
