"""
Rate-limit record stores.

Two backings for the sliding-window limiter: an in-process map for
single-instance use and a SQLite table for deployments that share a
database. Both count and record in one atomic step so concurrent
requests cannot both squeeze past the limit.
"""

import threading
from collections import defaultdict, deque
from typing import Deque, Dict, List, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import RateLimitRecord


class InMemoryRateLimitStore:
    """Process-local rate-limit log keyed by (identity, endpoint)."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _expire(self, key: Tuple[str, str], window_start: float) -> Deque[float]:
        timestamps = self._records[key]
        while timestamps and timestamps[0] < window_start:
            timestamps.popleft()
        return timestamps

    def check_and_record(
        self,
        identity: str,
        endpoint: str,
        max_requests: int,
        window_start: float,
        now: float
    ) -> bool:
        """Record an attempt unless the window already holds max_requests.

        Returns:
            True if the attempt was recorded, False if the limit is reached
        """
        key = (identity, endpoint)
        with self._lock:
            timestamps = self._expire(key, window_start)
            if len(timestamps) >= max_requests:
                return False
            timestamps.append(now)
            return True

    def count(self, identity: str, endpoint: str, window_start: float) -> int:
        with self._lock:
            return sum(1 for ts in self._records.get((identity, endpoint), ()) if ts >= window_start)

    def records(self, identity: str, endpoint: str) -> List[RateLimitRecord]:
        with self._lock:
            return [
                RateLimitRecord(identity=identity, endpoint=endpoint, timestamp=ts)
                for ts in self._records.get((identity, endpoint), ())
            ]

    def prune(self, older_than: float) -> int:
        """Drop every record with a timestamp before older_than."""
        removed = 0
        with self._lock:
            for key in list(self._records):
                timestamps = self._records[key]
                before = len(timestamps)
                self._expire(key, older_than)
                removed += before - len(timestamps)
                if not timestamps:
                    del self._records[key]
        return removed


class SqliteRateLimitStore:
    """Rate-limit log persisted in the rate_limits table.

    Each check runs inside a BEGIN IMMEDIATE transaction, which takes the
    database write lock before counting, so the count and the insert are
    atomic across connections and processes.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file (schema must exist)
        """
        self.db_path = db_path

    def check_and_record(
        self,
        identity: str,
        endpoint: str,
        max_requests: int,
        window_start: float,
        now: float
    ) -> bool:
        """Record an attempt unless the window already holds max_requests.

        Args:
            identity: Client IP address or user id
            endpoint: Logical operation name
            max_requests: Maximum attempts allowed in the window
            window_start: Epoch seconds; records at or after it count
            now: Epoch seconds of this attempt

        Returns:
            True if the attempt was recorded, False if the limit is reached

        Raises:
            sqlite3.Error: If the database is unreachable or the schema is missing
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("""
                SELECT COUNT(*) FROM rate_limits
                WHERE identity = ? AND endpoint = ? AND created_at >= ?
            """, (identity, endpoint, window_start)).fetchone()
            if row[0] >= max_requests:
                conn.rollback()
                return False
            conn.execute("""
                INSERT INTO rate_limits (identity, endpoint, created_at)
                VALUES (?, ?, ?)
            """, (identity, endpoint, now))
            conn.commit()
            return True
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def count(self, identity: str, endpoint: str, window_start: float) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT COUNT(*) FROM rate_limits
                WHERE identity = ? AND endpoint = ? AND created_at >= ?
            """, (identity, endpoint, window_start)).fetchone()
            return row[0]
        finally:
            conn.close()

    def records(self, identity: str, endpoint: str) -> List[RateLimitRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT identity, endpoint, created_at FROM rate_limits
                WHERE identity = ? AND endpoint = ?
                ORDER BY created_at
            """, (identity, endpoint))
            return [
                RateLimitRecord(identity=row[0], endpoint=row[1], timestamp=row[2])
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def prune(self, older_than: float) -> int:
        """Delete every record created before older_than.

        Returns:
            Number of rows removed
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM rate_limits WHERE created_at < ?", (older_than,)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()
