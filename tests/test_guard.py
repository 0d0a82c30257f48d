"""
tests/test_guard.py -- Session Guard (auth/dependencies.py) through a real app.

A small router is mounted next to the real auth routes so the guard's
composable checks can be exercised the way application endpoints use them:

  GET /api/v1/videos     -- require_permission("manage_videos")
  GET /api/v1/pastoral   -- require_role("pastor")
  GET /api/v1/whoami     -- get_optional_identity

Coverage:
  - permission check: granted, denied (403 naming the permission), audited
  - role check: exact role, administrator override, denial audited
  - optional mode: anonymous passes, a bad token still fails
  - expired and invalid tokens are indistinguishable to the client
  - the identity is attached to request.state
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi import APIRouter, Depends, Request
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import create_app
from auth.audit import SQLAuditLog
from auth.authority import Authority
from auth.dependencies import extract_token, get_optional_identity, require_permission, require_role
from auth.models import EventKind, Identity
from auth.store import SQLCredentialStore
from auth.tokens import TokenIssuer
from conftest import ApiHarness, _patch_lifespan, login, seed_users, shared_memory_url

guarded = APIRouter()


@guarded.get("/videos")
def list_videos(identity: Identity = Depends(require_permission("manage_videos"))) -> dict:
    return {"username": identity.username}


@guarded.get("/pastoral")
def pastoral(identity: Identity = Depends(require_role("pastor"))) -> dict:
    return {"username": identity.username}


@guarded.get("/whoami")
def whoami(request: Request, identity: Optional[Identity] = Depends(get_optional_identity)) -> dict:
    attached = getattr(request.state, "identity", None)
    return {
        "username": identity.username if identity else None,
        "attached": attached.username if attached else None,
    }


@pytest.fixture
def guard(settings):
    url = shared_memory_url("test_guard")
    authority = Authority(settings, SQLCredentialStore(url), SQLAuditLog(url))
    seed_users(authority)
    limiter.reset()
    app = create_app(_patch_lifespan(authority))
    app.include_router(guarded, prefix="/api/v1")
    with TestClient(app) as client:
        yield ApiHarness(client=client, authority=authority)
    authority.close()


def _token(guard: ApiHarness, username: str) -> str:
    token = login(guard.client, username=username).json()["access_token"]
    guard.client.cookies.clear()
    return token


def _get(guard: ApiHarness, path: str, token: Optional[str] = None):
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return guard.client.get(f"/api/v1{path}", headers=headers)


class TestRequirePermission:
    def test_granted(self, guard) -> None:
        resp = _get(guard, "/videos", _token(guard, "pastor"))
        assert resp.status_code == 200
        assert resp.json() == {"username": "pastor"}

    def test_user_without_permissions_gets_403_naming_it(self, guard) -> None:
        resp = _get(guard, "/videos", _token(guard, "viewer"))
        assert resp.status_code == 403
        error = resp.json()["error"]
        assert error["code"] == "insufficient_permission"
        assert error["required"] == "manage_videos"

    def test_denial_audited_with_actual_role_and_permissions(self, guard) -> None:
        _get(guard, "/videos", _token(guard, "viewer"))
        event = guard.authority.audit.recent(kind=EventKind.permission_denied.value)[0]
        assert event.username == "viewer"
        assert "required=permission:manage_videos" in event.details
        assert "role=user" in event.details

    def test_administrator_role_does_not_bypass_permissions(self, guard) -> None:
        guard.authority.provision_user("root", "Password123", "administrator", frozenset())
        resp = _get(guard, "/videos", _token(guard, "root"))
        assert resp.status_code == 403

    def test_missing_token_is_401_not_403(self, guard) -> None:
        resp = _get(guard, "/videos")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "no_token"


class TestRequireRole:
    def test_exact_role(self, guard) -> None:
        assert _get(guard, "/pastoral", _token(guard, "pastor")).status_code == 200

    def test_administrator_satisfies_any_role(self, guard) -> None:
        resp = _get(guard, "/pastoral", _token(guard, "admin"))
        assert resp.status_code == 200
        assert resp.json() == {"username": "admin"}

    def test_other_role_denied_and_audited(self, guard) -> None:
        resp = _get(guard, "/pastoral", _token(guard, "viewer"))
        assert resp.status_code == 403
        error = resp.json()["error"]
        assert error["code"] == "insufficient_role"
        assert error["required"] == "pastor"
        assert error["current"] == "user"
        event = guard.authority.audit.recent(kind=EventKind.permission_denied.value)[0]
        assert "required=role:pastor" in event.details


class TestOptionalIdentity:
    def test_anonymous_passes(self, guard) -> None:
        resp = _get(guard, "/whoami")
        assert resp.status_code == 200
        assert resp.json() == {"username": None, "attached": None}

    def test_identity_attached_to_request_state(self, guard) -> None:
        resp = _get(guard, "/whoami", _token(guard, "pastor"))
        assert resp.json() == {"username": "pastor", "attached": "pastor"}

    def test_bad_token_is_not_downgraded_to_anonymous(self, guard) -> None:
        assert _get(guard, "/whoami", "garbage").status_code == 401


class TestTokenFailures:
    def test_expired_and_invalid_render_identically(self, guard, settings) -> None:
        viewer = guard.authority.store.get_by_username("viewer")
        past = datetime.now(timezone.utc) - timedelta(seconds=settings.access_token_expire_seconds + 60)
        expired, _ = TokenIssuer(settings, guard.authority.store, clock=lambda: past).issue_access_token(viewer)

        expired_resp = _get(guard, "/whoami", expired)
        invalid_resp = _get(guard, "/whoami", "not.a.token")
        assert expired_resp.status_code == invalid_resp.status_code == 401
        assert expired_resp.json() == invalid_resp.json()
        assert expired_resp.json()["error"]["message"] == "Invalid or expired token."

    def test_lowercase_bearer_scheme_accepted(self, guard) -> None:
        token = _token(guard, "pastor")
        resp = guard.client.get("/api/v1/whoami", headers={"Authorization": f"bearer {token}"})
        assert resp.json()["username"] == "pastor"


class _FakeRequest:
    def __init__(self, cookies=None, headers=None) -> None:
        self.cookies = cookies or {}
        self.headers = headers or {}


@pytest.mark.parametrize(
    ("cookies", "headers", "expected"),
    [
        ({}, {}, None),
        ({"access_token": "c"}, {}, "c"),
        ({}, {"Authorization": "Bearer h"}, "h"),
        ({"access_token": "c"}, {"Authorization": "Bearer h"}, "c"),
        ({}, {"Authorization": "Basic abc"}, None),
        ({}, {"Authorization": "Bearer "}, None),
    ],
)
def test_extract_token(cookies, headers, expected) -> None:
    assert extract_token(_FakeRequest(cookies, headers)) == expected
