from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Protocol

import psycopg

logger = logging.getLogger(__name__)


class RevocationStore(Protocol):
    """
    Durable record of session ids that must be rejected even if their cookie still unseals.
    """

    def revoke(self, session_id: str, revoked_at: float) -> None:
        """Record `session_id` as revoked at `revoked_at` (epoch seconds)."""

    def is_revoked(self, session_id: str) -> bool:
        """Return True if `session_id` has been revoked."""

    def cleanup(self, max_age: int) -> int:
        """Drop entries older than `max_age` seconds. Returns the number removed."""


class MemoryRevocationStore:
    """Process-local revocation list (single instance deployments and tests)."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def revoke(self, session_id: str, revoked_at: float) -> None:
        with self._lock:
            self._entries[session_id] = revoked_at

    def is_revoked(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._entries

    def cleanup(self, max_age: int) -> int:
        cutoff = self._clock() - max_age
        with self._lock:
            stale = [sid for sid, at in self._entries.items() if at < cutoff]
            for sid in stale:
                del self._entries[sid]
        if stale:
            logger.info("Cleaned up %d revoked sessions", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PostgresRevocationStore:
    """
    Revocation list in PostgreSQL.

    Expects a table:

        CREATE TABLE revoked_sessions (
            session_id TEXT PRIMARY KEY,
            revoked_at TIMESTAMPTZ NOT NULL
        );
    """

    def __init__(self, dsn: Optional[str] = None, *, connect: Optional[Callable[[], psycopg.Connection]] = None) -> None:
        if not dsn and connect is None:
            raise ValueError("PostgresRevocationStore needs a DSN or a connection factory")
        self._dsn = dsn
        self._connect = connect

    def _connection(self) -> psycopg.Connection:
        if self._connect is not None:
            return self._connect()
        return psycopg.connect(self._dsn, connect_timeout=5)

    def revoke(self, session_id: str, revoked_at: float) -> None:
        conn = self._connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO revoked_sessions (session_id, revoked_at)
                    VALUES (%s, to_timestamp(%s))
                    ON CONFLICT (session_id) DO UPDATE SET revoked_at = EXCLUDED.revoked_at
                    """,
                    (session_id, revoked_at),
                )
            conn.commit()
        finally:
            conn.close()

    def is_revoked(self, session_id: str) -> bool:
        conn = self._connection()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM revoked_sessions WHERE session_id = %s", (session_id,))
                return cur.fetchone() is not None
        finally:
            conn.close()

    def cleanup(self, max_age: int) -> int:
        conn = self._connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM revoked_sessions WHERE revoked_at < NOW() - make_interval(secs => %s)",
                    (max_age,),
                )
                removed = cur.rowcount or 0
            conn.commit()
        finally:
            conn.close()
        if removed:
            logger.info("Cleaned up %d revoked sessions", removed)
        return removed
