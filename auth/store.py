"""
auth/store.py -- Credential Store interface and its SQLAlchemy Core backend.

Pattern: Repository + Data Mapper. CredentialStore is the repository
contract; SQLCredentialStore implements it over any SQLAlchemy URL and
_row_to_user / _row_to_refresh are the mappers. The in-memory backend lives
in auth/memory.py. Route, guard and authenticator code never touches SQL.

The store owns two kinds of process-wide mutable state:
  users           -- identity records, password hashes, lockout counters.
  refresh_tokens  -- the refresh-token ledger. Access tokens are stateless;
                     refresh tokens are single-use, so each issued jti gets a
                     row that is consumed exactly once.

Atomicity:
  record_failed_attempt() is one UPDATE whose SET clause computes the new
  counter (and the lock) from the row's current values, followed by a read of
  the result inside the same transaction. The database's row write lock makes
  the increment-and-fetch atomic; N concurrent failures always add N.

  consume_refresh_token() is a conditional UPDATE (... WHERE used_at IS NULL).
  Exactly one caller sees rowcount == 1; every other concurrent caller sees 0.

Timestamps are stored as ISO 8601 UTC text with fixed microsecond precision
so that string comparison in SQL matches chronological order.

Security:
  All queries use bound parameters. No f-strings in SQL.

Connectivity loss (sqlalchemy OperationalError) is re-raised as
StoreUnavailable with the original exception chained.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    func,
    null,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.errors import DuplicateUsername, StoreUnavailable
from auth.models import RefreshRecord, RefreshStatus, User

logger = logging.getLogger("sanctum.auth.store")

# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class CredentialStore(ABC):
    """Durable record of users, lockout counters and the refresh-token ledger.

    Every counter mutation must be atomic relative to concurrent calls for the
    same user id. Implementations must be safe to share across threads.
    """

    # -- users ---------------------------------------------------------

    @abstractmethod
    def has_users(self) -> bool: ...

    @abstractmethod
    def create_user(self, user: User) -> User:
        """Insert a user and return it with id and created_at filled in.

        Raises DuplicateUsername if the username is taken.
        """

    @abstractmethod
    def get_by_username(self, username: str) -> User | None: ...

    @abstractmethod
    def get_by_id(self, user_id: int) -> User | None: ...

    @abstractmethod
    def list_users(self) -> list[User]: ...

    @abstractmethod
    def record_failed_attempt(self, user_id: int, max_attempts: int, lock_until: datetime, now: datetime) -> int:
        """Atomically increment the failure counter and return the new value.

        If the account's previous lock has already expired the counter restarts
        at 1. When the new value reaches max_attempts, lock_until is written in
        the same atomic step; a lock that is still in force is never moved.
        Returns 0 if the user does not exist.
        """

    @abstractmethod
    def clear_failed_attempts(self, user_id: int) -> None: ...

    @abstractmethod
    def update_last_login(self, user_id: int, when: datetime) -> None: ...

    @abstractmethod
    def update_password_hash(self, user_id: int, password_hash: str) -> bool: ...

    @abstractmethod
    def set_active(self, user_id: int, is_active: bool) -> bool: ...

    # -- refresh-token ledger -------------------------------------------

    @abstractmethod
    def add_refresh_token(self, record: RefreshRecord) -> None: ...

    @abstractmethod
    def consume_refresh_token(self, jti: str, now: datetime) -> tuple[RefreshStatus, RefreshRecord | None]:
        """Mark an outstanding refresh token used. Check and mark are one atomic step."""

    @abstractmethod
    def revoke_refresh_token(self, jti: str) -> bool: ...

    @abstractmethod
    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        """Revoke every unused refresh token of a user. Returns the number revoked."""

    @abstractmethod
    def purge_expired_refresh_tokens(self, now: datetime) -> int: ...

    # -- lifecycle --------------------------------------------------------

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the backing storage answers a trivial query."""

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("permissions", Text, nullable=False, server_default="[]"),  # JSON array, sorted
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32)),
    Column("last_login", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("used_at", String(32)),
    Column("revoked", Integer, nullable=False, server_default="0"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block behind the counter writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _dump_permissions(permissions) -> str:
    return json.dumps(sorted(set(permissions)))


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite tweaks every sanctum store needs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # Route handlers run in FastAPI's thread pool, so a pooled connection
        # may be used from a thread other than the one that created it.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
        event.listen(engine, "connect", _set_wal_mode)
    return engine


@contextmanager
def translate_errors(what: str) -> Iterator[None]:
    """Re-raise connectivity failures as StoreUnavailable."""
    try:
        yield
    except OperationalError as exc:
        logger.error("%s unavailable: %s", what, exc)
        raise StoreUnavailable(f"{what} unavailable") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SQLCredentialStore(CredentialStore):
    """CredentialStore over SQLAlchemy Core.

    Usage:
        store = SQLCredentialStore("sqlite:///sanctum_auth.db")
        store.create_user(User(username="admin", password_hash=hash_password("secret")))
        user = store.get_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        with translate_errors("credential store"):
            _metadata.create_all(self.engine)

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        with translate_errors("credential store"), self.engine.connect() as conn:
            yield conn

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        with translate_errors("credential store"), self.engine.begin() as conn:
            yield conn

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self._connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> User:
        created_at = datetime.now(timezone.utc)
        try:
            with self._begin() as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=user.username,
                        password_hash=user.password_hash,
                        role=user.role,
                        permissions=_dump_permissions(user.permissions),
                        failed_login_attempts=0,
                        is_active=1 if user.is_active else 0,
                        created_at=to_iso(created_at),
                    )
                )
                user_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise DuplicateUsername(user.username) from exc
        return self.get_by_id(user_id)

    def get_by_username(self, username: str) -> User | None:
        """Exact, case-sensitive match. Inactive users are returned; the caller decides."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def record_failed_attempt(self, user_id: int, max_attempts: int, lock_until: datetime, now: datetime) -> int:
        # Every expression in the SET clause reads the pre-update row, so
        # new_count and the lock decision see the same counter value. A live
        # lock is never moved; attempts that raced past the lock check only count.
        lock_expired = and_(_users.c.lock_until.is_not(None), _users.c.lock_until <= to_iso(now))
        no_live_lock = or_(_users.c.lock_until.is_(None), lock_expired)
        new_count = case((lock_expired, 1), else_=_users.c.failed_login_attempts + 1)
        stmt = (
            _users.update()
            .where(_users.c.id == user_id)
            .values(
                failed_login_attempts=new_count,
                lock_until=case(
                    (and_(new_count >= max_attempts, no_live_lock), to_iso(lock_until)),
                    (lock_expired, null()),
                    else_=_users.c.lock_until,
                ),
            )
        )
        with self._begin() as conn:
            result = conn.execute(stmt)
            if result.rowcount == 0:
                return 0
            count = conn.execute(
                select(_users.c.failed_login_attempts).where(_users.c.id == user_id)
            ).scalar_one()
        return count

    def clear_failed_attempts(self, user_id: int) -> None:
        with self._begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(failed_login_attempts=0, lock_until=None))

    def update_last_login(self, user_id: int, when: datetime) -> None:
        with self._begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=to_iso(when)))

    def update_password_hash(self, user_id: int, password_hash: str) -> bool:
        with self._begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(password_hash=password_hash))
        return result.rowcount > 0

    def set_active(self, user_id: int, is_active: bool) -> bool:
        with self._begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh-token ledger
    # ------------------------------------------------------------------

    def add_refresh_token(self, record: RefreshRecord) -> None:
        with self._begin() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    jti=record.jti,
                    user_id=record.user_id,
                    expires_at=to_iso(record.expires_at),
                    used_at=None,
                    revoked=0,
                )
            )

    def consume_refresh_token(self, jti: str, now: datetime) -> tuple[RefreshStatus, RefreshRecord | None]:
        with self._begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.jti == jti)
                    & (_refresh_tokens.c.used_at.is_(None))
                    & (_refresh_tokens.c.revoked == 0)
                )
                .values(used_at=to_iso(now))
            )
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.jti == jti)).fetchone()
        if row is None:
            return RefreshStatus.unknown, None
        record = _row_to_refresh(row)
        if result.rowcount == 1:
            return RefreshStatus.consumed, record
        if record.revoked:
            return RefreshStatus.revoked, record
        return RefreshStatus.reused, record

    def revoke_refresh_token(self, jti: str) -> bool:
        with self._begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.jti == jti) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        with self._begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.used_at.is_(None))
                    & (_refresh_tokens.c.revoked == 0)
                )
                .values(revoked=1)
            )
        return result.rowcount

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        with self._begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= to_iso(now)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute(text("SELECT 1"))
        except StoreUnavailable:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        role=row.role,
        permissions=frozenset(json.loads(row.permissions or "[]")),
        failed_login_attempts=row.failed_login_attempts,
        lock_until=from_iso(row.lock_until),
        last_login=from_iso(row.last_login),
        is_active=bool(row.is_active),
        created_at=from_iso(row.created_at),
    )


def _row_to_refresh(row) -> RefreshRecord:
    return RefreshRecord(
        jti=row.jti,
        user_id=row.user_id,
        expires_at=from_iso(row.expires_at),
        used_at=from_iso(row.used_at),
        revoked=bool(row.revoked),
    )
