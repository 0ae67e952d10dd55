"""
tests/conftest.py -- Shared test fixtures for TenantGate unit and integration tests.

This module provides:
  - FakeClock: a settable clock injected into every service through build_engine()
  - store / engine / clock: a fresh in-memory AuthStore per test for service tests
  - acme / globex: two seeded tenants; make_user(): users with memberships
  - _make_test_store(): named shared-memory store for API integration tests
  - _patch_lifespan(): wires the test store into app.state, bypassing real startup
  - api_client: TestClient plus the seeded tenants and users of one test module
  - login: helper that signs a TestClient in through POST /api/v1/auth/login

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API fixtures because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Service tests run on one thread and use :memory:.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
BCRYPT_ROUNDS is lowered so password hashing does not dominate test time.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

# CRITICAL: Set these before any auth/core import so get_settings() picks
# them up on first call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.engine import AuthEngine, build_engine
from auth.models import Company, User, UserType
from auth.permissions import seed_system_roles
from auth.store import AuthStore
from auth.tokens import hash_password
from core.timeutil import utc_now

PASSWORD = "CorrectHorse9"


class FakeClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def create_user(
    engine: AuthEngine,
    email: str,
    company_id: int,
    *,
    password: str = PASSWORD,
    user_type: UserType = UserType.COMPANY,
    member: bool = True,
    assign_defaults: bool = False,
    roles: tuple[str, ...] = (),
    email_verified: bool = True,
    **fields,
) -> User:
    """Insert a user, give company users a membership, and assign named roles.

    Company roles are assigned in company_id; PLATFORM roles globally.
    """
    user_id = engine.store.create_user(
        User(
            email=email,
            company_id=company_id,
            user_type=user_type,
            password_hash=hash_password(password),
            email_verified=email_verified,
            **fields,
        )
    )
    if member and user_type == UserType.COMPANY:
        engine.access.add_membership(user_id, company_id, assign_defaults=assign_defaults)
    for name in roles:
        role = engine.permissions.get_role_by_name(name, company_id)
        engine.permissions.assign_role(user_id, role.id, company_id)
    return engine.store.get_user(user_id)


# ---------------------------------------------------------------------------
# Service-level fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def password() -> str:
    return PASSWORD


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    """In-memory AuthStore with the built-in SYSTEM and PLATFORM roles seeded."""
    s = AuthStore("sqlite:///:memory:")
    seed_system_roles(s)
    yield s
    s.close()


@pytest.fixture
def engine(store: AuthStore, clock: FakeClock) -> AuthEngine:
    return build_engine(store, clock=clock)


@pytest.fixture
def acme(store: AuthStore) -> Company:
    return store.get_company(store.create_company(Company(name="Acme")))


@pytest.fixture
def globex(store: AuthStore) -> Company:
    return store.get_company(store.create_company(Company(name="Globex")))


@pytest.fixture
def make_user(engine: AuthEngine) -> Callable[..., User]:
    """Factory: make_user("a@acme.com", acme.id, roles=("admin",)) -> User."""

    def _make(email: str, company_id: int, **kwargs) -> User:
        return create_user(engine, email, company_id, **kwargs)

    return _make


@pytest.fixture
def file_engine(tmp_path, clock: FakeClock) -> Generator[AuthEngine, None, None]:
    """Engine over an on-disk database, for tests that race real threads.

    Each thread gets its own connection; BEGIN IMMEDIATE serialises writers.
    """
    s = AuthStore(f"sqlite:///{tmp_path / 'auth.db'}")
    seed_system_roles(s)
    yield build_engine(s, clock=clock)
    s.close()


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@dataclass
class Seed:
    """Tenants and users created before an API test module starts.

    acme/globex/initech/platform are company ids. alice is a member of Acme
    with an inactive Globex membership. admin administers Acme and Initech.
    bob has TOTP enrolled. ops and support are internal platform users.
    """

    engine: AuthEngine
    password: str
    acme: int
    globex: int
    initech: int
    platform: int
    admin: User
    alice: User
    bob: User
    bob_totp_secret: str
    ops: User
    support: User


def _make_test_store(db_suffix: str) -> AuthStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'auth', 'oauth').
    """
    store = AuthStore(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")
    seed_system_roles(store)
    return store


def _seed(engine: AuthEngine) -> Seed:
    store = engine.store
    acme = store.create_company(Company(name="Acme"))
    globex = store.create_company(Company(name="Globex"))
    initech = store.create_company(Company(name="Initech"))
    platform = store.create_company(Company(name="Platform Ops"))

    admin = create_user(engine, "admin@acme.com", acme, roles=("admin",))
    engine.access.add_membership(admin.id, initech, assign_defaults=False)
    engine.permissions.assign_role(admin.id, engine.permissions.get_role_by_name("admin").id, initech)

    alice = create_user(engine, "alice@acme.com", acme, assign_defaults=True)
    engine.access.add_membership(alice.id, globex)
    engine.access.deactivate_membership(alice.id, globex)

    bob = create_user(engine, "bob@acme.com", acme, assign_defaults=True)
    setup = engine.mfa.enable(bob.id)

    ops = create_user(engine, "ops@platform.com", platform, user_type=UserType.INTERNAL, roles=("platformAdmin",))
    support = create_user(
        engine, "support@platform.com", platform, user_type=UserType.INTERNAL, roles=("platformSupport",)
    )
    return Seed(
        engine=engine,
        password=PASSWORD,
        acme=acme,
        globex=globex,
        initech=initech,
        platform=platform,
        admin=store.get_user(admin.id),
        alice=store.get_user(alice.id),
        bob=store.get_user(bob.id),
        bob_totp_secret=setup.secret,
        ops=ops,
        support=support,
    )


def _patch_lifespan(store: AuthStore, engine: AuthEngine):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store and engine into app.state so TestClient
    routes see an isolated test DB rather than the production database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.engine = engine
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, Seed], None, None]:
    """Yield (client, seed) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    Each test module gets its own database, named after the module.
    """
    store = _make_test_store(request.module.__name__.rsplit(".", 1)[-1])
    engine = build_engine(store)
    seed = _seed(engine)

    app.router.lifespan_context = _patch_lifespan(store, engine)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, seed

    store.close()


@pytest.fixture
def login() -> Callable:
    """Sign a client in and return the login response.

    Cookies from any earlier login are dropped first so every call starts
    a fresh browser session.
    """

    def _login(client: TestClient, email: str, password: str = PASSWORD, **extra):
        client.cookies.clear()
        return client.post("/api/v1/auth/login", json={"email": email, "password": password, **extra})

    return _login
