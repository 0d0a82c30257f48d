"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; sets both token cookies
  POST /api/v1/auth/refresh            -- rotate the refresh token (cookie or body)
  POST /api/v1/auth/logout             -- revoke refresh token, clear cookies (requires auth)
  GET  /api/v1/auth/verify             -- claims of the presented access token (requires auth)
  POST /api/v1/auth/change-password    -- replace own password (requires auth)
  GET  /api/v1/auth/users              -- list users (manage_users)
  GET  /api/v1/auth/security-events    -- recent audit events (manage_users)

Security:
  POST /login is rate-limited per client address (LOGIN_RATE_LIMIT).
  All credential checks go through the authority -- never inline a store
  lookup plus verify_password here, that re-introduces the timing leak.
  Cache-Control: no-store is added to every /auth response by api/main.py.
  The refresh token is never placed in a response body.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    SecurityEventRow,
    UserInfo,
    UserRow,
    VerifyResponse,
)
from auth.authority import Authority
from auth.dependencies import client_info, get_authority, get_identity, require_permission
from auth.models import EventKind, Identity, TokenPair, User
from auth.tokens import REFRESH_COOKIE, clear_token_cookies, set_token_cookies

# Auth policy:
# - POST /api/v1/auth/login:            public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:          public -- the refresh token is the credential
# - POST /api/v1/auth/logout:           requires auth (get_identity)
# - GET  /api/v1/auth/verify:           requires auth (get_identity)
# - POST /api/v1/auth/change-password:  requires auth (get_identity)
# - GET  /api/v1/auth/users:            requires manage_users
# - GET  /api/v1/auth/security-events:  requires manage_users
router = APIRouter()


def _session_response(authority: Authority, user: User, pair: TokenPair) -> JSONResponse:
    body = LoginResponse(
        access_token=pair.access_token,
        expires_at=pair.access_expires_at,
        user=UserInfo.from_user(user),
    )
    resp = JSONResponse(status_code=200, content=body.model_dump(mode="json"))
    set_token_cookies(resp, pair, secure=authority.settings.secure_cookies)
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(login_rate_limit)  # below @router so the registered endpoint is the limited wrapper
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the access and refresh cookies.

    Failures surface as AuthError subclasses (400 / 401 / 423) and are
    rendered by the handler in api/main.py.
    """
    authority = get_authority(request)
    user, pair = authority.login(body.username, body.password, body.remember_me, client_info(request))
    return _session_response(authority, user, pair)


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. The cookie wins over the body."""
    authority = get_authority(request)
    token = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    user, pair = authority.refresh(token, client_info(request))
    return _session_response(authority, user, pair)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, identity: Identity = Depends(get_identity)) -> JSONResponse:
    """Revoke the presented refresh token and clear both cookies."""
    authority = get_authority(request)
    authority.logout(identity, request.cookies.get(REFRESH_COOKIE), client_info(request))
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_token_cookies(resp, secure=authority.settings.secure_cookies)
    return resp


@router.get("/auth/verify", response_model=VerifyResponse)
async def verify(identity: Identity = Depends(get_identity)) -> VerifyResponse:
    """Return the identity carried by the access token. Never consults the store."""
    return VerifyResponse.from_identity(identity)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_identity),
) -> MessageResponse:
    """Change the caller's password and revoke all of their refresh tokens.

    The current access token stays valid until it expires.
    """
    get_authority(request).change_password(identity, body.current_password, body.new_password, client_info(request))
    return MessageResponse(message="Password changed.")


# ---------------------------------------------------------------------------
# Administration (manage_users)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserRow])
def list_users(
    request: Request,
    _identity: Identity = Depends(require_permission("manage_users")),
) -> list[UserRow]:
    """List every account, active or not, without password hashes."""
    return [UserRow.from_user(u) for u in get_authority(request).store.list_users()]


@router.get("/auth/security-events", response_model=list[SecurityEventRow])
def security_events(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    username: Optional[str] = Query(default=None, max_length=255),
    kind: Optional[EventKind] = None,
    _identity: Identity = Depends(require_permission("manage_users")),
) -> list[SecurityEventRow]:
    """Return the newest security events first, optionally filtered."""
    events = get_authority(request).audit.recent(
        limit=limit,
        username=username,
        kind=kind.value if kind else None,
    )
    return [SecurityEventRow.from_event(e) for e in events]
