"""
auth/tokens.py -- Token Issuer: JWT minting, validation and refresh rotation.

Security design decisions:
  Access tokens: python-jose HS256, signed with SECRET_KEY. They carry the
       user id (sub), username, role and a permission snapshot taken at
       issuance, plus iat/exp. Validation is purely computational -- no store
       lookup, no lock -- so the session guard can run it on every request.
       The price is that an access token cannot be revoked early; lifetimes
       are therefore short (minutes).

  Refresh tokens: signed with REFRESH_SECRET_KEY (a different key) and carry
       only sub, jti, iat and exp. They are single-use: every issued jti is
       written to the store's ledger, and an exchange atomically marks it used
       before anything new is minted. Presenting a used jti again raises
       TokenReused and revokes every outstanding refresh token of that user,
       so a thief holding a rotated-away token also loses the new one.

  A rotated refresh token keeps the absolute expiry of the one it replaces,
       so rotation alone can never extend a session past the lifetime chosen
       at login ("remember me" or not).

  Failures: malformed tokens, bad signatures, wrong token type and expiry all
       raise a TokenError subclass. They render identically to the client; the
       subclass (and its `reason`) is only used for logs and the audit trail.

  Expiry is checked here against an injectable clock rather than inside
       jose, so a token is valid exactly while now < exp.

Cookie helpers at the bottom write both tokens as httpOnly, SameSite=strict
cookies. The refresh cookie is scoped to the auth route prefix so it is only
ever sent to the endpoints that consume it.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid, TokenReused
from auth.models import Identity, RefreshRecord, RefreshStatus, TokenPair, User

if TYPE_CHECKING:
    from auth.store import CredentialStore
    from core.config import Settings

logger = logging.getLogger("sanctum.auth.tokens")

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/api/v1/auth"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TokenIssuer:
    """Mints, validates and rotates tokens.

    Usage:
        issuer = TokenIssuer(get_settings(), store)
        pair = issuer.issue_pair(user, remember_me=False)
        identity = issuer.validate_access_token(pair.access_token)
        user, new_pair = issuer.rotate(pair.refresh_token)
    """

    def __init__(self, settings: Settings, store: CredentialStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._settings = settings
        self._store = store
        self._clock = clock

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def issue_access_token(self, user: User, issued: int | None = None) -> tuple[str, datetime]:
        """Return (token, expires_at) with the user's current role and permissions baked in."""
        if issued is None:
            issued = int(self._clock().timestamp())
        expires = issued + self._settings.access_token_expire_seconds
        payload = {
            "sub": str(user.id),
            "username": user.username,
            "role": user.role,
            "permissions": sorted(user.permissions),
            "type": "access",
            "iat": issued,
            "exp": expires,
        }
        return jwt.encode(payload, self._settings.secret_key, algorithm=_ALGORITHM), _from_timestamp(expires)

    def issue_pair(self, user: User, remember_me: bool = False) -> TokenPair:
        """Mint an access token and a fresh, ledgered refresh token at login."""
        lifetime = (
            self._settings.remember_me_expire_seconds if remember_me else self._settings.refresh_token_expire_seconds
        )
        issued = int(self._clock().timestamp())
        return self._pair(user, _from_timestamp(issued + lifetime), issued)

    def _pair(self, user: User, refresh_expires: datetime, issued: int) -> TokenPair:
        # One whole-second issuance instant for both tokens and both cookies.
        access_token, access_expires = self.issue_access_token(user, issued)
        jti = secrets.token_urlsafe(24)
        payload = {
            "sub": str(user.id),
            "jti": jti,
            "type": "refresh",
            "iat": issued,
            "exp": int(refresh_expires.timestamp()),
        }
        refresh_token = jwt.encode(payload, self._settings.refresh_secret_key, algorithm=_ALGORITHM)
        self._store.add_refresh_token(RefreshRecord(jti=jti, user_id=user.id, expires_at=refresh_expires))
        return TokenPair(
            access_token=access_token,
            access_expires_at=access_expires,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_expires,
            issued_at=_from_timestamp(issued),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _decode(self, token: str, key: str, expected_type: str) -> dict:
        try:
            payload = jwt.decode(token, key, algorithms=[_ALGORITHM], options={"verify_exp": False})
        except JWTError as exc:
            raise TokenInvalid() from exc
        if payload.get("type") != expected_type:
            raise TokenInvalid()
        exp = payload.get("exp")
        if not isinstance(exp, int) or isinstance(exp, bool):
            raise TokenInvalid()
        if self._clock().timestamp() >= exp:
            raise TokenExpired()
        return payload

    def validate_access_token(self, token: str) -> Identity:
        """Verify signature, type and expiry and return the embedded identity.

        Raises TokenInvalid or TokenExpired. Never touches the store.
        """
        payload = self._decode(token, self._settings.secret_key, "access")
        try:
            permissions = payload.get("permissions", [])
            if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
                raise TokenInvalid()
            return Identity(
                user_id=int(payload["sub"]),
                username=str(payload["username"]),
                role=str(payload["role"]),
                permissions=frozenset(permissions),
                issued_at=_from_timestamp(int(payload["iat"])),
                expires_at=_from_timestamp(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid() from exc

    def decode_refresh_token(self, token: str) -> tuple[int, str, datetime]:
        """Return (user_id, jti, expires_at) of a validly signed, unexpired refresh token."""
        payload = self._decode(token, self._settings.refresh_secret_key, "refresh")
        try:
            return int(payload["sub"]), str(payload["jti"]), _from_timestamp(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid() from exc

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(self, refresh_token: str) -> tuple[User, TokenPair]:
        """Exchange a refresh token for a new pair, consuming the old one.

        Raises TokenInvalid / TokenExpired for bad tokens, TokenReused when the
        token was already exchanged. A user deactivated since login is refused
        here, which is where deactivation takes effect for live sessions.
        """
        user_id, jti, expires_at = self.decode_refresh_token(refresh_token)
        status, _record = self._store.consume_refresh_token(jti, self._clock())
        if status is RefreshStatus.reused:
            revoked = self._store.revoke_user_refresh_tokens(user_id)
            logger.warning("Refresh token reuse for user_id=%s; revoked %d outstanding token(s)", user_id, revoked)
            raise TokenReused(user_id=user_id)
        if status is not RefreshStatus.consumed:
            logger.info("Refresh token rejected for user_id=%s: %s", user_id, status.value)
            raise TokenInvalid(user_id=user_id)

        user = self._store.get_by_id(user_id)
        if user is None or not user.is_active:
            self._store.revoke_user_refresh_tokens(user_id)
            raise TokenInvalid(user_id=user_id)
        return user, self._pair(user, expires_at, int(self._clock().timestamp()))

    def revoke(self, refresh_token: str) -> bool:
        """Revoke a refresh token presented at logout. Invalid tokens are ignored."""
        try:
            _user_id, jti, _expires = self.decode_refresh_token(refresh_token)
        except (TokenInvalid, TokenExpired):
            return False
        return self._store.revoke_refresh_token(jti)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _max_age(expires_at: datetime, issued_at: datetime) -> int:
    return max(0, int((expires_at - issued_at).total_seconds()))


def set_token_cookies(response, pair: TokenPair, secure: bool) -> None:
    """Write both tokens as httpOnly cookies whose max_age matches the token lifetime.

    max_age is measured from the pair's issuance instant, the same whole
    second the exp claims are computed from.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation).
    secure: only sent over HTTPS outside debug mode.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=pair.access_token,
        httponly=True,
        samesite="strict",
        secure=secure,
        max_age=_max_age(pair.access_expires_at, pair.issued_at),
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=pair.refresh_token,
        httponly=True,
        samesite="strict",
        secure=secure,
        max_age=_max_age(pair.refresh_expires_at, pair.issued_at),
        path=REFRESH_COOKIE_PATH,
    )


def clear_token_cookies(response, secure: bool) -> None:
    response.delete_cookie(ACCESS_COOKIE, httponly=True, samesite="strict", secure=secure)
    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH, httponly=True, samesite="strict", secure=secure)
