"""
tests/conftest.py -- Shared test fixtures for VAPT portal integration tests.

This module provides:
  - make_stores(): isolated named shared-memory DBs for auth + portal
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - seed_portal(): one approved organization plus one account per role
  - portal_env: module-scoped TestClient over a seeded portal, with Bearer
    headers for every seeded account

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any api/auth/core import:
  - DEBUG so get_settings() auto-generates SECRET_KEY instead of raising
  - the rate limits, so module-scoped clients are never throttled
  - ALLOWED_HOSTS, because TestClient sends Host: testserver
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("SIGNUP_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import ADMIN, APPROVED, CLIENT, SECURITY_TEAM, SUPER_ADMIN, User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from portal.models import APPROVED as ORG_APPROVED
from portal.models import Organization, SecurityTeamAssignment
from portal.store import PortalStore
from portal.workflow import Workflow

PASSWORD = "correct-horse-battery"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_stores(db_suffix: str) -> tuple[UserStore, PortalStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (usually the module name).
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    portal_url = f"sqlite:///file:test_portal_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=auth_url), PortalStore(db_url=portal_url)


def make_user(
    user_store: UserStore,
    email: str,
    role: str,
    status: str = APPROVED,
    organization_id: int | None = None,
    suspended: bool = False,
) -> User:
    """Create an account with the shared test PASSWORD and return it as stored."""
    uid = user_store.create_user(
        User(
            email=email,
            role=role,
            full_name=email.split("@")[0].title(),
            hashed_password=hash_password(PASSWORD),
            status=status,
            organization_id=organization_id,
            suspended=suspended,
        )
    )
    return user_store.get_by_id(uid)


def bearer(user: User) -> dict[str, str]:
    token = create_access_token(user_id=user.id, email=user.email, role=user.role, expire_seconds=3600)
    return {"Authorization": f"Bearer {token}"}


def _patch_lifespan(user_store: UserStore, portal_store: PortalStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the SQLite files next to the stores.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.portal_store = portal_store
        app.state.workflow = Workflow(portal_store, user_store)
        app.state.setup_required = False
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Seeded portal
# ---------------------------------------------------------------------------


@dataclass
class PortalEnv:
    """A running TestClient over a seeded portal.

    users holds one approved account per role, keyed "super_admin", "admin",
    "member" (Security-team, assigned to org_id) and "client" (member of
    org_id). headers[key] is a ready Bearer header for that account.
    """

    client: TestClient
    user_store: UserStore
    portal_store: PortalStore
    org_id: int
    password: str = PASSWORD
    users: dict[str, User] = field(default_factory=dict)
    headers: dict[str, dict[str, str]] = field(default_factory=dict)

    def add_user(self, key: str, email: str, role: str, **kwargs) -> User:
        user = make_user(self.user_store, email, role, **kwargs)
        self.users[key] = user
        self.headers[key] = bearer(user)
        return user


def seed_portal(user_store: UserStore, portal_store: PortalStore, prefix: str) -> tuple[int, dict[str, User]]:
    """Create an approved organization, one account per role, and the member's assignment."""
    org_id = portal_store.create_organization(
        Organization(
            name=f"{prefix.title()} Corp",
            contact_email=f"security@{prefix}.test",
            services={"web": {"tier": "Standard", "environment": "production", "details": None}},
            status=ORG_APPROVED,
        )
    )
    users = {
        "super_admin": make_user(user_store, f"root@{prefix}.test", SUPER_ADMIN),
        "admin": make_user(user_store, f"admin@{prefix}.test", ADMIN),
        "member": make_user(user_store, f"pentester@{prefix}.test", SECURITY_TEAM),
        "client": make_user(user_store, f"dev@{prefix}.test", CLIENT, organization_id=org_id),
    }
    portal_store.create_assignment(
        SecurityTeamAssignment(
            security_team_user_id=users["member"].id,
            organization_id=org_id,
            services=["web"],
            assigned_by=users["admin"].id,
        )
    )
    return org_id, users


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def portal_env(request) -> Generator[PortalEnv, None, None]:
    """Yield a PortalEnv whose databases are private to the requesting test module."""
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store, portal_store = make_stores(suffix)
    org_id, users = seed_portal(user_store, portal_store, suffix.replace("_", ""))

    app.router.lifespan_context = _patch_lifespan(user_store, portal_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield PortalEnv(
            client=client,
            user_store=user_store,
            portal_store=portal_store,
            org_id=org_id,
            users=users,
            headers={key: bearer(user) for key, user in users.items()},
        )

    portal_store.close()
    user_store.close()


@pytest.fixture
def fresh_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient over empty stores, as on a first run (setup_required=True)."""
    user_store, portal_store = make_stores("fresh_install")

    @asynccontextmanager
    async def first_run_lifespan(app):
        app.state.user_store = user_store
        app.state.portal_store = portal_store
        app.state.workflow = Workflow(portal_store, user_store)
        app.state.setup_required = not user_store.has_users()
        yield

    app.router.lifespan_context = first_run_lifespan
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    portal_store.close()
    user_store.close()


@pytest.fixture
def stores() -> Generator[tuple[UserStore, PortalStore], None, None]:
    """Plain in-memory stores for unit tests that never cross threads."""
    user_store = UserStore("sqlite:///:memory:")
    portal_store = PortalStore("sqlite:///:memory:")
    yield user_store, portal_store
    portal_store.close()
    user_store.close()
