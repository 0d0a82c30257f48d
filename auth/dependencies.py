"""
auth/dependencies.py -- Session Guard: FastAPI Depends() helpers.

Two token transports are checked in priority order:
  1. access_token cookie -- set by the login/refresh responses.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on an Identity decoded from the access token. The guard never
touches the credential store on the request path; the token is the whole
authorization state until it expires.

get_optional_identity() is the soft variant (None when no token is present).
get_identity() raises TokenMissing / TokenInvalid / TokenExpired (401).
require_permission(p) and require_role(r) build dependencies that raise
InsufficientPermission / InsufficientRole (403) and append a
permission_denied SecurityEvent.

Every guard attaches the resolved Identity to request.state.identity so
route handlers and middleware can read it without re-decoding.

Layer rule: may import from fastapi because it is part of the dependency
injection system; must not import from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Request

from auth.authority import Authority
from auth.errors import InsufficientPermission, InsufficientRole, TokenError, TokenMissing
from auth.models import ClientInfo, Identity, Role
from auth.tokens import ACCESS_COOKIE

logger = logging.getLogger("sanctum.auth.guard")


def get_authority(request: Request) -> Authority:
    return request.app.state.authority


def client_info(request: Request) -> ClientInfo:
    host = request.client.host if request.client else None
    return ClientInfo(ip_address=host, user_agent=request.headers.get("User-Agent"))


def extract_token(request: Request) -> str | None:
    """Return the raw access token from the cookie or the Bearer header, cookie first."""
    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        return auth_header[7:].strip() or None
    return None


def get_optional_identity(request: Request) -> Identity | None:
    """Resolve the caller's identity, or None if no token was presented.

    A token that is present but invalid or expired still raises: a stale
    cookie must not silently downgrade the caller to anonymous.
    """
    token = extract_token(request)
    if token is None:
        return None
    try:
        identity = get_authority(request).issuer.validate_access_token(token)
    except TokenError as exc:
        logger.info("Access token rejected (%s) from %s", exc.reason, client_info(request).ip_address)
        raise
    request.state.identity = identity
    return identity


def get_identity(request: Request) -> Identity:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(get_identity)): ...
    """
    identity = get_optional_identity(request)
    if identity is None:
        raise TokenMissing()
    return identity


def _deny(request: Request, identity: Identity, required: str) -> None:
    get_authority(request).record_denial(identity, required, client_info(request))


def require_permission(permission: str) -> Callable[[Request], Identity]:
    """Build a dependency that demands `permission` in the token's snapshot.

        @router.get("/videos", dependencies=[Depends(require_permission("manage_videos"))])
    """

    def dependency(request: Request) -> Identity:
        identity = get_identity(request)
        if permission not in identity.permissions:
            _deny(request, identity, f"permission:{permission}")
            raise InsufficientPermission(permission)
        return identity

    return dependency


def require_role(role: str) -> Callable[[Request], Identity]:
    """Build a dependency that demands `role`. Administrators pass every role check."""

    def dependency(request: Request) -> Identity:
        identity = get_identity(request)
        if identity.role != role and identity.role != Role.administrator.value:
            _deny(request, identity, f"role:{role}")
            raise InsufficientRole(role, identity.role)
        return identity

    return dependency
