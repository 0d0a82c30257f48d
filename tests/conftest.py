"""
tests/conftest.py -- Shared test fixtures for sanctum unit and integration tests.

This module provides:
  - FakeClock: injectable clock so expiry and lockout boundaries are exact
  - store / audit: every CredentialStore and AuditLog backend, parametrized
  - authority: Authority over the in-memory backends with a FakeClock
  - api: TestClient over a fresh app whose lifespan injects a seeded
    SQL-backed Authority (admin, pastor and a permission-less viewer)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
fixture instance gets a unique name so tests never see each other's rows.

Environment must be set before any sanctum import so get_settings()
auto-generates signing keys in dev mode instead of raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["LOGIN_RATE_LIMIT"] = "1000/minute"
os.environ["ALLOWED_HOSTS"] = '["testserver", "localhost"]'
os.environ["DATABASE_URL"] = "memory://"

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import create_app
from auth.audit import MemoryAuditLog, SQLAuditLog
from auth.authority import Authority
from auth.memory import MemoryCredentialStore
from auth.models import Role
from auth.store import SQLCredentialStore
from core.config import Settings, get_settings

PASSWORD = "Password123"

ADMIN_PERMISSIONS = frozenset({"manage_videos", "manage_users", "manage_settings", "view_analytics"})
PASTOR_PERMISSIONS = frozenset({"manage_videos", "manage_settings"})


def shared_memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Every CredentialStore backend; tests using it run once per backend."""
    if request.param == "memory":
        s = MemoryCredentialStore()
    else:
        s = SQLCredentialStore(shared_memory_url("test_store"))
    yield s
    s.close()


@pytest.fixture(params=["memory", "sql"])
def audit(request):
    """Every AuditLog backend."""
    if request.param == "memory":
        log = MemoryAuditLog()
    else:
        log = SQLAuditLog(shared_memory_url("test_audit"))
    yield log
    log.close()


@pytest.fixture
def authority(settings: Settings, clock: FakeClock) -> Generator[Authority, None, None]:
    a = Authority(settings, MemoryCredentialStore(), MemoryAuditLog(), clock=clock)
    yield a
    a.close()


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    authority: Authority


def _patch_lifespan(authority: Authority):
    """Return a lifespan that wires a pre-built authority into app.state.

    The maintenance task is a long-sleeping coroutine so shutdown exercises
    the same cancel path as production.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.authority = authority
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.maintenance_task.cancel()

    return test_lifespan


def seed_users(authority: Authority) -> None:
    authority.provision_user("admin", PASSWORD, Role.administrator.value, ADMIN_PERMISSIONS)
    authority.provision_user("pastor", PASSWORD, Role.pastor.value, PASTOR_PERMISSIONS)
    authority.provision_user("viewer", PASSWORD, Role.user.value, frozenset())


@pytest.fixture
def api(settings: Settings) -> Generator[ApiHarness, None, None]:
    """Function-scoped so the cookie jar and the stores never leak between tests."""
    url = shared_memory_url("test_api")
    authority = Authority(settings, SQLCredentialStore(url), SQLAuditLog(url))
    seed_users(authority)
    limiter.reset()
    app = create_app(_patch_lifespan(authority))
    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, authority=authority)
    authority.close()


def login(client: TestClient, username: str = "admin", password: str = PASSWORD, **extra):
    return client.post("/api/v1/auth/login", json={"username": username, "password": password, **extra})
