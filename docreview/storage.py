"""
Session Persistence

Storage contract for review sessions with optimistic concurrency, plus an
in-memory store and a SQLite store.

A session's `version` is the version it was loaded at (0 if never saved).
`save` succeeds only if the stored version still matches, and returns the
session with its new version.
"""

import sqlite3
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from .errors import ConflictError, RetryableError
from .schema import ReviewSession, SessionStatus, as_utc

logger = logging.getLogger(__name__)


@dataclass
class SessionQuery:
    """Filters for SessionStore.query. Unset filters match everything."""
    statuses: Optional[list[SessionStatus]] = None
    document_type: Optional[str] = None
    workflow_id: Optional[str] = None
    reviewer_id: Optional[str] = None
    due_before: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0

    def matches(self, session: ReviewSession) -> bool:
        if self.statuses is not None and session.status not in self.statuses:
            return False
        if self.document_type and session.document_type != self.document_type:
            return False
        if self.workflow_id and session.workflow_id != self.workflow_id:
            return False
        if self.reviewer_id and not any(
            a.reviewer_id == self.reviewer_id for a in session.assignments
        ):
            return False
        if self.due_before is not None:
            if session.due_date is None or as_utc(session.due_date) >= as_utc(self.due_before):
                return False
        return True

    def page(self, sessions: list[ReviewSession]) -> list[ReviewSession]:
        end = self.offset + self.limit if self.limit is not None else None
        return sessions[self.offset:end]


class SessionStore(ABC):
    """Abstract interface for session persistence."""

    @abstractmethod
    def load(self, session_id: str) -> Optional[ReviewSession]:
        """
        Load a session.

        Args:
            session_id: Session identifier

        Returns:
            A private copy of the stored session, or None if unknown
        """
        pass

    @abstractmethod
    def save(self, session: ReviewSession) -> ReviewSession:
        """
        Save a session if nobody else saved it since it was loaded.

        Args:
            session: Session carrying the version it was loaded at

        Returns:
            The stored session with its version bumped

        Raises:
            ConflictError: If the stored version differs
        """
        pass

    @abstractmethod
    def query(self, filters: Optional[SessionQuery] = None) -> list[ReviewSession]:
        """
        Find sessions matching filters, in insertion order.

        Args:
            filters: Query filters (None for all sessions)
        """
        pass

    def close(self) -> None:
        """Release any resources held by the store."""
        pass


class InMemorySessionStore(SessionStore):
    """Thread-safe store holding deep copies of sessions."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, ReviewSession] = {}

    def load(self, session_id: str) -> Optional[ReviewSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def save(self, session: ReviewSession) -> ReviewSession:
        with self._lock:
            current = self._sessions.get(session.id)
            actual = current.version if current else 0
            if actual != session.version:
                raise ConflictError(session.id, session.version, actual if current else None)

            stored = session.model_copy(deep=True)
            stored.version = session.version + 1
            self._sessions[session.id] = stored
            return stored.model_copy(deep=True)

    def query(self, filters: Optional[SessionQuery] = None) -> list[ReviewSession]:
        filters = filters or SessionQuery()
        with self._lock:
            matched = [s.model_copy(deep=True) for s in self._sessions.values() if filters.matches(s)]
        return filters.page(matched)


class SQLiteSessionStore(SessionStore):
    """
    SQLite-backed session store.

    Sessions are stored as JSON documents with the filterable fields
    denormalised into columns. WAL mode allows concurrent readers while a
    session is being written.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Union[str, Path] = Path(".docreview/sessions.db")):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    document_type TEXT NOT NULL,
                    workflow_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sessions_status
                ON sessions(status)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """)
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,)
            )
            conn.commit()

    @contextmanager
    def _connection(self):
        """Get a database connection with row factory."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0)
        except sqlite3.OperationalError as e:
            raise RetryableError(f"Cannot open session database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as e:
            # Lock contention and similar transient failures
            raise RetryableError(f"Session database error: {e}") from e
        finally:
            conn.close()

    def load(self, session_id: str) -> Optional[ReviewSession]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT data, version FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        if row is None:
            return None
        session = ReviewSession.model_validate_json(row["data"])
        session.version = row["version"]
        return session

    def save(self, session: ReviewSession) -> ReviewSession:
        stored = session.model_copy(deep=True)
        stored.version = session.version + 1
        params = (
            stored.status.value,
            stored.document_type,
            stored.workflow_id,
            stored.version,
            stored.model_dump_json(),
            stored.updated_at.isoformat(),
        )

        with self._connection() as conn:
            if session.version == 0:
                try:
                    conn.execute("""
                        INSERT INTO sessions
                        (status, document_type, workflow_id, version, data, updated_at, id)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                    """, params + (stored.id,))
                except sqlite3.IntegrityError:
                    actual = self._current_version(conn, session.id)
                    raise ConflictError(session.id, session.version, actual)
            else:
                cursor = conn.execute("""
                    UPDATE sessions
                    SET status = ?, document_type = ?, workflow_id = ?, version = ?,
                        data = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                """, params + (stored.id, session.version))
                if cursor.rowcount == 0:
                    actual = self._current_version(conn, session.id)
                    raise ConflictError(session.id, session.version, actual)
            conn.commit()

        logger.debug(f"Saved session {stored.id} at version {stored.version}")
        return stored

    def _current_version(self, conn: sqlite3.Connection, session_id: str) -> Optional[int]:
        row = conn.execute(
            "SELECT version FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return row["version"] if row else None

    def query(self, filters: Optional[SessionQuery] = None) -> list[ReviewSession]:
        filters = filters or SessionQuery()
        clauses = []
        params: list = []
        if filters.statuses is not None:
            if not filters.statuses:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in filters.statuses)})")
            params.extend(SessionStatus(s).value for s in filters.statuses)
        if filters.document_type:
            clauses.append("document_type = ?")
            params.append(filters.document_type)
        if filters.workflow_id:
            clauses.append("workflow_id = ?")
            params.append(filters.workflow_id)

        sql = "SELECT data, version FROM sessions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY rowid"

        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()

        matched = []
        for row in rows:
            session = ReviewSession.model_validate_json(row["data"])
            session.version = row["version"]
            if filters.matches(session):
                matched.append(session)
        return filters.page(matched)
