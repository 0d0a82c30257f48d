"""
auth/audit.py -- Security Audit Log.

Append-only record of authentication-relevant decisions: logins (success,
failure, lockout), logouts, refresh exchanges and permission denials. The
authenticator and the session guard each append exactly one SecurityEvent at
every decision point; forensics read them back through recent().

Retention is bounded: prune(keep) deletes everything older than the newest
`keep` rows. Pruning is a maintenance operation (api/main.py runs it on a
timer, main.py exposes it on the CLI), never part of the request path. It
first reads the id of the newest row to delete and then deletes rows with
ids at or below it, so rows appended while it runs are never touched.

Two backends, same contract:
  SQLAuditLog     -- SQLAlchemy Core table `security_events`.
  MemoryAuditLog  -- list guarded by a lock, for DATABASE_URL=memory://.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Connection, Engine

from auth.models import SecurityEvent
from auth.store import from_iso, make_engine, to_iso, translate_errors

logger = logging.getLogger("sanctum.audit")

_MAX_DETAILS = 1000


class AuditLog(ABC):
    @abstractmethod
    def record(self, event: SecurityEvent) -> SecurityEvent:
        """Append one event and return it with id and timestamp filled in."""

    @abstractmethod
    def recent(self, limit: int = 100, username: str | None = None, kind: str | None = None) -> list[SecurityEvent]:
        """Return the newest events first, optionally filtered."""

    @abstractmethod
    def count(self) -> int: ...

    @abstractmethod
    def prune(self, keep: int) -> int:
        """Delete all but the newest `keep` events. Returns the number deleted."""

    def close(self) -> None:
        pass


def _stamp(event: SecurityEvent) -> SecurityEvent:
    details = event.details[:_MAX_DETAILS] if event.details else event.details
    return replace(event, details=details, timestamp=event.timestamp or datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------

_metadata = MetaData()

_events = Table(
    "security_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(40), nullable=False, index=True),
    Column("username", String(255), index=True),  # NULL when none was submitted
    Column("ip_address", String(64)),
    Column("user_agent", String(512)),
    Column("details", Text),
    Column("timestamp", String(32), nullable=False),
)


class SQLAuditLog(AuditLog):
    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        with translate_errors("audit log"):
            _metadata.create_all(self.engine)

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        with translate_errors("audit log"), self.engine.begin() as conn:
            yield conn

    def record(self, event: SecurityEvent) -> SecurityEvent:
        event = _stamp(event)
        with self._begin() as conn:
            result = conn.execute(
                _events.insert().values(
                    kind=event.kind,
                    username=event.username,
                    ip_address=event.ip_address,
                    user_agent=(event.user_agent or "")[:512] or None,
                    details=event.details,
                    timestamp=to_iso(event.timestamp),
                )
            )
        return replace(event, id=result.inserted_primary_key[0])

    def recent(self, limit: int = 100, username: str | None = None, kind: str | None = None) -> list[SecurityEvent]:
        query = _events.select()
        if username is not None:
            query = query.where(_events.c.username == username)
        if kind is not None:
            query = query.where(_events.c.kind == kind)
        with self._begin() as conn:
            rows = conn.execute(query.order_by(_events.c.id.desc()).limit(limit)).fetchall()
        return [_row_to_event(r) for r in rows]

    def count(self) -> int:
        with self._begin() as conn:
            return conn.execute(select(func.count()).select_from(_events)).scalar() or 0

    def prune(self, keep: int) -> int:
        with self._begin() as conn:
            cutoff = conn.execute(
                select(_events.c.id).order_by(_events.c.id.desc()).offset(keep).limit(1)
            ).scalar()
            if cutoff is None:
                return 0
            result = conn.execute(_events.delete().where(_events.c.id <= cutoff))
        logger.info("Pruned %d security events (kept newest %d)", result.rowcount, keep)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_event(row) -> SecurityEvent:
    return SecurityEvent(
        id=row.id,
        kind=row.kind,
        username=row.username,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        details=row.details,
        timestamp=from_iso(row.timestamp),
    )


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryAuditLog(AuditLog):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[SecurityEvent] = []
        self._next_id = 1

    def record(self, event: SecurityEvent) -> SecurityEvent:
        event = _stamp(event)
        with self._lock:
            event = replace(event, id=self._next_id)
            self._next_id += 1
            self._events.append(event)
        return event

    def recent(self, limit: int = 100, username: str | None = None, kind: str | None = None) -> list[SecurityEvent]:
        with self._lock:
            snapshot = list(self._events)
        matches = [
            e
            for e in reversed(snapshot)
            if (username is None or e.username == username) and (kind is None or e.kind == kind)
        ]
        return matches[:limit]

    def count(self) -> int:
        with self._lock:
            return len(self._events)

    def prune(self, keep: int) -> int:
        with self._lock:
            removed = max(0, len(self._events) - keep)
            if removed:
                del self._events[:removed]
        if removed:
            logger.info("Pruned %d security events (kept newest %d)", removed, keep)
        return removed
