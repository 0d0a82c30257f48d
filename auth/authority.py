"""
auth/authority.py -- The Credential & Session Authority.

Authority is the single owner of the process-wide mutable state (credential
store and audit log) and of the components built on top of it (login
authenticator, token issuer). The API stores one instance on app.state; the
CLI builds its own. Nothing else holds a store or an audit log.

Backends are chosen from DATABASE_URL:
  memory://        -> MemoryCredentialStore + MemoryAuditLog
  any SQLAlchemy URL -> SQLCredentialStore + SQLAuditLog on that database

Flows implemented here (each appends its SecurityEvent):
  login            -> authenticator, then token issuer on success
  refresh          -> token issuer rotation (single-use refresh tokens)
  logout           -> revokes the presented refresh token
  change_password  -> policy check, current-password check, rehash, and
                      revocation of every outstanding refresh token
  record_denial    -> called by the session guard on 403

Layer rule: no imports from api/ or fastapi.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from auth.audit import AuditLog, MemoryAuditLog, SQLAuditLog
from auth.authenticator import LoginAuthenticator
from auth.errors import InvalidCredential, InvalidInput, TokenError, TokenMissing
from auth.memory import MemoryCredentialStore
from auth.models import ClientInfo, EventKind, Identity, Role, SecurityEvent, TokenPair, User
from auth.passwords import hash_password, password_policy_violations
from auth.store import CredentialStore, SQLCredentialStore
from auth.tokens import TokenIssuer, utcnow
from core.config import Settings

logger = logging.getLogger("sanctum.auth")

MEMORY_URL = "memory://"

# (username, role, permissions) provisioned by `main.py seed` into an empty store.
DEFAULT_USERS: tuple[tuple[str, str, frozenset[str]], ...] = (
    (
        "admin",
        Role.administrator.value,
        frozenset({"manage_videos", "manage_users", "manage_settings", "view_analytics"}),
    ),
    ("pastor", Role.pastor.value, frozenset({"manage_videos", "manage_settings"})),
)


def open_backends(db_url: str) -> tuple[CredentialStore, AuditLog]:
    if db_url == MEMORY_URL:
        return MemoryCredentialStore(), MemoryAuditLog()
    return SQLCredentialStore(db_url), SQLAuditLog(db_url)


class Authority:
    """Usage:
    authority = Authority.from_settings(get_settings())
    user, pair = authority.login("admin", "secret", remember_me=False, client=ClientInfo("10.0.0.1"))
    identity = authority.issuer.validate_access_token(pair.access_token)
    authority.close()
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        audit: AuditLog,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.audit = audit
        self.clock = clock
        self.issuer = TokenIssuer(settings, store, clock=clock)
        self.authenticator = LoginAuthenticator(settings, store, audit, clock=clock)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Authority":
        store, audit = open_backends(settings.database_url)
        return cls(settings, store, audit)

    def _record(self, kind: EventKind, username: str | None, client: ClientInfo, details: str | None = None) -> None:
        self.audit.record(
            SecurityEvent(
                kind=kind.value,
                username=username,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                details=details,
            )
        )

    # ------------------------------------------------------------------
    # Provisioning (CLI only -- there is no self-registration)
    # ------------------------------------------------------------------

    def provision_user(
        self,
        username: str,
        password: str,
        role: str,
        permissions: set[str] | frozenset[str] = frozenset(),
    ) -> User:
        """Create a user. Raises DuplicateUsername if the name is taken."""
        user = User(
            username=username,
            password_hash=hash_password(password, rounds=self.settings.bcrypt_rounds),
            role=role,
            permissions=frozenset(permissions),
        )
        created = self.store.create_user(user)
        logger.info("Provisioned user %r (role=%s)", username, role)
        return created

    def seed_defaults(self, passwords: dict[str, str]) -> list[User]:
        """Provision DEFAULT_USERS, but only into an empty store.

        passwords maps each default username to its initial password.
        Returns the created users ([] when the store already had accounts).
        """
        if self.store.has_users():
            logger.info("Credential store already populated; skipping default users")
            return []
        return [
            self.provision_user(username, passwords[username], role, permissions)
            for username, role, permissions in DEFAULT_USERS
        ]

    def deactivate_user(self, user_id: int) -> bool:
        """Soft-delete a user. Live access tokens expire naturally; refresh is refused immediately."""
        if not self.store.set_active(user_id, False):
            return False
        self.store.revoke_user_refresh_tokens(user_id)
        return True

    # ------------------------------------------------------------------
    # Session flows
    # ------------------------------------------------------------------

    def login(self, username: str, password: str, remember_me: bool, client: ClientInfo) -> tuple[User, TokenPair]:
        user = self.authenticator.authenticate(username, password, client)
        return user, self.issuer.issue_pair(user, remember_me=remember_me)

    def refresh(self, refresh_token: str | None, client: ClientInfo) -> tuple[User, TokenPair]:
        """Rotate a refresh token. Every outcome is audited with its internal reason."""
        try:
            if not refresh_token:
                raise TokenMissing("Refresh token required.")
            user, pair = self.issuer.rotate(refresh_token)
        except TokenError as exc:
            username = None
            if exc.user_id is not None:
                known = self.store.get_by_id(exc.user_id)
                username = known.username if known else None
            self._record(EventKind.token_refresh, username, client, f"rejected: {exc.reason}")
            raise
        self._record(EventKind.token_refresh, user.username, client, "rotated")
        logger.info("Token refreshed for %r", user.username)
        return user, pair

    def logout(self, identity: Identity, refresh_token: str | None, client: ClientInfo) -> None:
        revoked = self.issuer.revoke(refresh_token) if refresh_token else False
        self._record(EventKind.logout, identity.username, client, "refresh token revoked" if revoked else None)
        logger.info("User logged out: %r", identity.username)

    def change_password(self, identity: Identity, current_password: str, new_password: str, client: ClientInfo) -> None:
        """Replace the caller's password hash.

        Raises InvalidInput for a weak or unchanged password and
        InvalidCredential (401) when current_password is wrong.
        """
        problems = password_policy_violations(new_password, self.settings.new_password_min_length)
        if problems:
            raise InvalidInput("New password " + "; ".join(problems) + ".")
        if new_password == current_password:
            raise InvalidInput("New password must differ from the current password.")

        user = self.store.get_by_id(identity.user_id)
        if user is None or not user.is_active:
            raise InvalidCredential()
        if not self.authenticator.verify_current_password(user, current_password):
            self._record(EventKind.password_change, user.username, client, "rejected: current password incorrect")
            raise InvalidCredential("Current password is incorrect.")

        self.store.update_password_hash(user.id, hash_password(new_password, rounds=self.settings.bcrypt_rounds))
        revoked = self.store.revoke_user_refresh_tokens(user.id)
        self._record(EventKind.password_change, user.username, client, f"changed; revoked {revoked} refresh token(s)")
        logger.info("Password changed for %r", user.username)

    def record_denial(self, identity: Identity, required: str, client: ClientInfo) -> None:
        self._record(
            EventKind.permission_denied,
            identity.username,
            client,
            f"required={required} role={identity.role} permissions={','.join(sorted(identity.permissions))}",
        )
        logger.warning("Access denied for %r: required %s (role=%s)", identity.username, required, identity.role)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def run_maintenance(self) -> dict[str, int]:
        """Prune the audit log and purge expired refresh-token ledger rows.

        Safe to run concurrently with traffic: both deletes only touch rows
        older than what they read.
        """
        pruned = self.audit.prune(self.settings.audit_retention)
        purged = self.store.purge_expired_refresh_tokens(self.clock())
        return {"events_pruned": pruned, "refresh_tokens_purged": purged}

    def healthy(self) -> bool:
        return self.store.ping()

    def close(self) -> None:
        self.store.close()
        self.audit.close()
