"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores, the authenticator and routes do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of coarse identity classes.

    administrator is the top role: it satisfies every role check.
    """

    administrator = "administrator"
    pastor = "pastor"
    user = "user"


class EventKind(str, Enum):
    login_success = "login_success"
    login_failure = "login_failure"
    lockout = "lockout"
    logout = "logout"
    token_refresh = "token_refresh"
    permission_denied = "permission_denied"
    password_change = "password_change"


@dataclass
class User:
    """A provisioned identity.

    password_hash is the bcrypt output, never the plaintext. permissions is a
    set of capability strings and is independent of role. lock_until being set
    and in the future means the account is locked; is_active=False means the
    account is soft-deleted and must fail authentication like an unknown user.
    """

    username: str
    password_hash: str
    role: str = Role.user.value
    permissions: frozenset[str] = frozenset()
    id: int | None = None
    failed_login_attempts: int = 0
    lock_until: datetime | None = None
    last_login: datetime | None = None
    is_active: bool = True
    created_at: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now


@dataclass(frozen=True)
class Identity:
    """Decoded access-token claims attached to a request by the session guard.

    permissions is the snapshot taken at issuance, not re-read from the store.
    """

    user_id: int
    username: str
    role: str
    permissions: frozenset[str]
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    issued_at: datetime


@dataclass(frozen=True)
class ClientInfo:
    """Network origin of a request, recorded on every security event."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class SecurityEvent:
    """Append-only audit record. username is None when it was never submitted."""

    kind: str
    username: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    details: str | None = None
    id: int | None = None
    timestamp: datetime | None = None


@dataclass
class RefreshRecord:
    """Ledger row for one issued refresh token, keyed by its jti claim."""

    jti: str
    user_id: int
    expires_at: datetime
    used_at: datetime | None = None
    revoked: bool = False


class RefreshStatus(str, Enum):
    """Outcome of atomically consuming a refresh-token ledger entry."""

    consumed = "consumed"  # first presentation; now marked used
    reused = "reused"  # already exchanged once
    revoked = "revoked"  # logged out or revoked with its family
    unknown = "unknown"  # never issued here, or already purged
