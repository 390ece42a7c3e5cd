"""
Database connection management.

Provides the SQLite connection and schema used by the persisted
rate-limit log and audit log.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "bytesteps.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with a busy timeout so concurrent writers wait
        for each other instead of failing immediately
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=5.0)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the rate_limits and audit_logs tables if they don't exist.

    Both tables are append-only logs. Rows are only ever removed by
    expiry (rate_limits), retention (audit_logs) or a user's data
    deletion request.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS rate_limits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                identity TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                created_at REAL NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_rate_limits_lookup
            ON rate_limits (identity, endpoint, created_at)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_logs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                timestamp TEXT NOT NULL,
                user_id TEXT,
                action TEXT NOT NULL,
                details TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()
