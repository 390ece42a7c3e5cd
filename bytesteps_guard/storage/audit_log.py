"""
Audit log stores.

Append-only event logs with a retention cap: once more than
max_records events are held, the oldest are evicted first.
"""

import json
import threading
from collections import deque
from datetime import datetime
from typing import Deque, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import AuditEvent

DEFAULT_MAX_RECORDS = 1000


def _check_max_records(max_records: int) -> None:
    if max_records <= 0:
        raise ValueError("max_records must be > 0")


class InMemoryAuditStore:
    """Bounded in-process audit log."""

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS):
        _check_max_records(max_records)
        self.max_records = max_records
        self._events: Deque[AuditEvent] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    def recent(self, limit: int = 100, user_id: Optional[str] = None) -> List[AuditEvent]:
        """Return up to limit events, newest first."""
        with self._lock:
            events = [e for e in reversed(self._events) if user_id is None or e.user_id == user_id]
        return events[:limit]

    def delete_user(self, user_id: str) -> int:
        with self._lock:
            kept = [e for e in self._events if e.user_id != user_id]
            removed = len(self._events) - len(kept)
            self._events = deque(kept, maxlen=self.max_records)
        return removed

    def count(self) -> int:
        with self._lock:
            return len(self._events)


class SqliteAuditStore:
    """Audit log persisted in the audit_logs table.

    Retention is enforced on every insert by deleting every row outside
    the newest max_records rows, ordered by insertion sequence. Gaps left
    by user deletions never cause early eviction.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, max_records: int = DEFAULT_MAX_RECORDS):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file (schema must exist)
            max_records: Maximum number of events retained
        """
        _check_max_records(max_records)
        self.db_path = db_path
        self.max_records = max_records

    def append(self, event: AuditEvent) -> None:
        """Insert one event and evict anything beyond the retention cap.

        Raises:
            sqlite3.Error: If the write fails
            TypeError: If details are not JSON serializable
        """
        details = json.dumps(event.details, default=str)
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO audit_logs (event_id, timestamp, user_id, action, details)
                VALUES (?, ?, ?, ?, ?)
            """, (
                event.id,
                event.timestamp.isoformat(),
                event.user_id,
                event.action,
                details
            ))
            conn.execute("""
                DELETE FROM audit_logs
                WHERE seq NOT IN (
                    SELECT seq FROM audit_logs ORDER BY seq DESC LIMIT ?
                )
            """, (self.max_records,))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def recent(self, limit: int = 100, user_id: Optional[str] = None) -> List[AuditEvent]:
        """Fetch events newest first, optionally for a single user.

        Args:
            limit: Maximum number of events to return
            user_id: Optional filter for a specific user

        Returns:
            List of audit events ordered by insertion (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = "SELECT event_id, timestamp, user_id, action, details FROM audit_logs"
            params = []
            if user_id is not None:
                query += " WHERE user_id = ?"
                params.append(user_id)
            query += " ORDER BY seq DESC LIMIT ?"
            params.append(limit)

            cursor = conn.execute(query, params)
            return [
                AuditEvent(
                    id=row[0],
                    timestamp=datetime.fromisoformat(row[1]),
                    user_id=row[2],
                    action=row[3],
                    details=json.loads(row[4])
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def delete_user(self, user_id: str) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM audit_logs WHERE user_id = ?", (user_id,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def count(self) -> int:
        conn = get_connection(self.db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM audit_logs").fetchone()[0]
        finally:
            conn.close()
