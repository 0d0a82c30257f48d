"""
auth/memory.py -- In-memory CredentialStore backend.

Selected with DATABASE_URL=memory://. Useful for development and tests; all
state is lost on restart.

Thread safety: one RLock guards every read and write. Each public method
takes the lock once, so an increment-and-fetch or a check-and-mark is a single
critical section. Records are copied on the way in and out so callers can
never mutate stored state without going through the lock. Password hashing
happens in the authenticator, never while this lock is held.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime, timezone

from auth.errors import DuplicateUsername
from auth.models import RefreshRecord, RefreshStatus, User
from auth.store import CredentialStore


class MemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._users: dict[int, User] = {}
        self._by_username: dict[str, int] = {}
        self._refresh: dict[str, RefreshRecord] = {}

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self._lock:
            return bool(self._users)

    def create_user(self, user: User) -> User:
        with self._lock:
            if user.username in self._by_username:
                raise DuplicateUsername(user.username)
            stored = replace(
                user,
                id=next(self._ids),
                permissions=frozenset(user.permissions),
                failed_login_attempts=0,
                lock_until=None,
                last_login=None,
                created_at=datetime.now(timezone.utc),
            )
            self._users[stored.id] = stored
            self._by_username[stored.username] = stored.id
            return replace(stored)

    def get_by_username(self, username: str) -> User | None:
        with self._lock:
            user_id = self._by_username.get(username)
            return replace(self._users[user_id]) if user_id is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self._lock:
            user = self._users.get(user_id)
            return replace(user) if user is not None else None

    def list_users(self) -> list[User]:
        with self._lock:
            return [replace(u) for u in sorted(self._users.values(), key=lambda u: u.username)]

    def record_failed_attempt(self, user_id: int, max_attempts: int, lock_until: datetime, now: datetime) -> int:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return 0
            if user.lock_until is not None and user.lock_until <= now:
                user.failed_login_attempts = 1
                user.lock_until = None
            else:
                user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts and user.lock_until is None:
                user.lock_until = lock_until
            return user.failed_login_attempts

    def clear_failed_attempts(self, user_id: int) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is not None:
                user.failed_login_attempts = 0
                user.lock_until = None

    def update_last_login(self, user_id: int, when: datetime) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is not None:
                user.last_login = when

    def update_password_hash(self, user_id: int, password_hash: str) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return False
            user.password_hash = password_hash
            return True

    def set_active(self, user_id: int, is_active: bool) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return False
            user.is_active = is_active
            return True

    # ------------------------------------------------------------------
    # Refresh-token ledger
    # ------------------------------------------------------------------

    def add_refresh_token(self, record: RefreshRecord) -> None:
        with self._lock:
            self._refresh[record.jti] = replace(record, used_at=None, revoked=False)

    def consume_refresh_token(self, jti: str, now: datetime) -> tuple[RefreshStatus, RefreshRecord | None]:
        with self._lock:
            record = self._refresh.get(jti)
            if record is None:
                return RefreshStatus.unknown, None
            if record.revoked:
                return RefreshStatus.revoked, replace(record)
            if record.used_at is not None:
                return RefreshStatus.reused, replace(record)
            record.used_at = now
            return RefreshStatus.consumed, replace(record)

    def revoke_refresh_token(self, jti: str) -> bool:
        with self._lock:
            record = self._refresh.get(jti)
            if record is None or record.revoked:
                return False
            record.revoked = True
            return True

    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        with self._lock:
            revoked = 0
            for record in self._refresh.values():
                if record.user_id == user_id and record.used_at is None and not record.revoked:
                    record.revoked = True
                    revoked += 1
            return revoked

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        with self._lock:
            expired = [jti for jti, r in self._refresh.items() if r.expires_at <= now]
            for jti in expired:
                del self._refresh[jti]
            return len(expired)

    def ping(self) -> bool:
        return True
