"""
auth/authenticator.py -- Login Authenticator.

One call to authenticate() walks a single login attempt through:

    RECEIVED -> LOOKED_UP -> REJECTED_UNKNOWN | REJECTED_INACTIVE
                           | REJECTED_LOCKED
                           | VERIFYING -> REJECTED_BAD_CREDENTIAL | AUTHENTICATED

Rules enforced here:
  - Shape checks (minimum lengths) run before any store access.
  - Unknown and inactive accounts produce the same InvalidCredential as a
    wrong password. bcrypt still runs against a dummy hash so response time
    does not reveal whether the username exists, and a shadow counter per
    submitted name counts down and locks exactly like a real account.
  - A locked account is rejected before password verification; the lock
    expiry is returned to the caller.
  - A wrong password increments the failure counter atomically in the store.
    The attempt that reaches MAX_LOGIN_ATTEMPTS also writes the lock.
  - Success clears the counter and the lock and stamps last_login.

Every terminal state appends one SecurityEvent; the internal outcome goes into
the event details, never into the client-facing error.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, NoReturn

from auth.errors import AccountLocked, InvalidCredential, InvalidInput
from auth.models import ClientInfo, EventKind, SecurityEvent, User
from auth.passwords import hash_password, verify_password
from auth.tokens import utcnow

if TYPE_CHECKING:
    from auth.audit import AuditLog
    from auth.store import CredentialStore
    from core.config import Settings

logger = logging.getLogger("sanctum.auth")


class LoginOutcome(str, Enum):
    rejected_invalid_input = "rejected_invalid_input"
    rejected_unknown = "rejected_unknown"
    rejected_inactive = "rejected_inactive"
    rejected_locked = "rejected_locked"
    rejected_bad_credential = "rejected_bad_credential"
    authenticated = "authenticated"


class ShadowLockout:
    """Failure counters for submitted usernames that have no active account.

    Follows the same rules as CredentialStore.record_failed_attempt, so the
    remaining-attempt countdown and the lockout of a name that does not exist
    look the same as those of a real one. Holds at most `capacity` names and
    evicts the least recently failed first. State is per process.
    """

    def __init__(self, capacity: int = 10_000) -> None:
        self._capacity = capacity
        self._entries: OrderedDict[str, tuple[int, datetime | None]] = OrderedDict()
        self._lock = threading.Lock()

    def lock_until(self, username: str, now: datetime) -> datetime | None:
        with self._lock:
            _count, lock_until = self._entries.get(username, (0, None))
        if lock_until is not None and lock_until > now:
            return lock_until
        return None

    def record_failure(self, username: str, max_attempts: int, lock_until: datetime, now: datetime) -> int:
        with self._lock:
            count, current = self._entries.pop(username, (0, None))
            if current is not None and current <= now:
                count, current = 0, None
            count += 1
            if count >= max_attempts and current is None:
                current = lock_until
            self._entries[username] = (count, current)
            while len(self._entries) > self._capacity:
                self._entries.popitem(last=False)
            return count


class LoginAuthenticator:
    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        audit: AuditLog,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._store = store
        self._audit = audit
        self._clock = clock
        self._shadow = ShadowLockout()
        # Same cost factor as real hashes so the dummy check takes as long.
        self._dummy_hash = hash_password("sanctum-timing-equalizer", rounds=settings.bcrypt_rounds)

    def _record(self, kind: EventKind, username: str | None, client: ClientInfo, details: str) -> None:
        self._audit.record(
            SecurityEvent(
                kind=kind.value,
                username=username,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                details=details,
            )
        )

    def authenticate(self, username: str, password: str, client: ClientInfo) -> User:
        """Verify a username/password pair and return the authenticated user.

        Raises InvalidInput, InvalidCredential or AccountLocked.
        """
        if len(username) < self._settings.username_min_length or len(password) < self._settings.password_min_length:
            logger.info("Login rejected (%s) from %s", LoginOutcome.rejected_invalid_input.value, client.ip_address)
            raise InvalidInput()

        user = self._store.get_by_username(username)
        now = self._clock()

        if user is None or not user.is_active:
            outcome = LoginOutcome.rejected_unknown if user is None else LoginOutcome.rejected_inactive
            self._reject_without_account(username, password, client, now, outcome)

        if user.is_locked(now):
            logger.warning("Login attempt on locked account %r from %s", username, client.ip_address)
            self._record(
                EventKind.login_failure,
                username,
                client,
                f"outcome={LoginOutcome.rejected_locked.value} lock_until={user.lock_until.isoformat()}",
            )
            raise AccountLocked(user.lock_until, now)

        if not verify_password(password, user.password_hash):
            self._reject_bad_credential(user, client, now)

        self._store.clear_failed_attempts(user.id)
        self._store.update_last_login(user.id, now)
        logger.info("Successful login for %r from %s", username, client.ip_address)
        self._record(EventKind.login_success, username, client, f"outcome={LoginOutcome.authenticated.value}")
        return replace(user, failed_login_attempts=0, lock_until=None, last_login=now)

    def _reject_without_account(
        self, username: str, password: str, client: ClientInfo, now: datetime, outcome: LoginOutcome
    ) -> NoReturn:
        # Mirrors the locked and wrong-password paths of a real account.
        shadow_lock = self._shadow.lock_until(username, now)
        if shadow_lock is not None:
            logger.warning("Login rejected (%s, shadow-locked) for %r from %s", outcome.value, username, client.ip_address)
            self._record(
                EventKind.login_failure,
                username,
                client,
                f"outcome={outcome.value} lock_until={shadow_lock.isoformat()}",
            )
            raise AccountLocked(shadow_lock, now)

        verify_password(password, self._dummy_hash)
        logger.warning("Login rejected (%s) for %r from %s", outcome.value, username, client.ip_address)
        lock_until = now + timedelta(seconds=self._settings.lockout_seconds)
        count = self._shadow.record_failure(username, self._settings.max_login_attempts, lock_until, now)
        self._fail(username, count, lock_until, client, outcome)

    def _reject_bad_credential(self, user: User, client: ClientInfo, now: datetime) -> NoReturn:
        max_attempts = self._settings.max_login_attempts
        lock_until = now + timedelta(seconds=self._settings.lockout_seconds)
        count = self._store.record_failed_attempt(user.id, max_attempts, lock_until, now)
        logger.warning("Failed login for %r from %s (attempt %d/%d)", user.username, client.ip_address, count, max_attempts)
        self._fail(user.username, count, lock_until, client, LoginOutcome.rejected_bad_credential)

    def _fail(
        self, username: str, count: int, lock_until: datetime, client: ClientInfo, outcome: LoginOutcome
    ) -> NoReturn:
        max_attempts = self._settings.max_login_attempts
        remaining = max(0, max_attempts - count)
        self._record(EventKind.login_failure, username, client, f"outcome={outcome.value} attempts={count}")
        if count == max_attempts:
            self._record(EventKind.lockout, username, client, f"lock_until={lock_until.isoformat()}")
        if remaining == 0:
            minutes = max(1, self._settings.lockout_seconds // 60)
            raise InvalidCredential(
                f"Invalid credentials. Account locked for {minutes} minutes.",
                attempts_remaining=0,
            )
        raise InvalidCredential(attempts_remaining=remaining)

    def verify_current_password(self, user: User, password: str) -> bool:
        """Check a password for an already-authenticated user (change-password flow)."""
        return verify_password(password, user.password_hash)
