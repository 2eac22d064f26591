"""
Database module for pcc-flap-guard

Handles SQLite persistence for:
- Route event audit log (flaps, escalations, rewards, rule toggles)
- Runtime configuration overrides

Flap state itself is NOT stored here: the durable fields ride in the route
comment and everything else is process-local by design.
"""

import sqlite3
import os
import time
from typing import Dict, List, Optional, Any


class Database:
    """
    SQLite database manager for the flap guard daemon.

    Provides persistence for:
    - Route event history
    - Config overrides (with a monotonically increasing version)
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database connection.

        Args:
            db_path: Path to SQLite database file
            plugin: Host object providing log(message, level)
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # Route events audit log
        conn.execute("""
            CREATE TABLE IF NOT EXISTS route_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                routing_table TEXT NOT NULL,
                event TEXT NOT NULL,
                detail TEXT,
                disable_until INTEGER,
                timestamp INTEGER NOT NULL
            )
        """)

        # Runtime config overrides
        conn.execute("""
            CREATE TABLE IF NOT EXISTS config_overrides (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_route_events_table ON route_events(routing_table, timestamp)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_route_events_time ON route_events(timestamp)")

        self.plugin.log("Database initialized successfully")

    # =========================================================================
    # Route Event Methods
    # =========================================================================

    def record_route_event(self, routing_table: str, event: str, detail: str = "",
                           disable_until: Optional[int] = None,
                           timestamp: Optional[int] = None) -> int:
        """Record a route event for audit purposes and return its ID."""
        conn = self._get_connection()
        now = timestamp if timestamp is not None else int(time.time())

        cursor = conn.execute("""
            INSERT INTO route_events
            (routing_table, event, detail, disable_until, timestamp)
            VALUES (?, ?, ?, ?, ?)
        """, (routing_table, event, detail, disable_until, now))
        return cursor.lastrowid

    def get_recent_route_events(self, limit: int = 50,
                                routing_table: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get recent route events, optionally filtered by routing table."""
        conn = self._get_connection()

        if routing_table:
            rows = conn.execute("""
                SELECT * FROM route_events
                WHERE routing_table = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (routing_table, limit)).fetchall()
        else:
            rows = conn.execute("""
                SELECT * FROM route_events
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (limit,)).fetchall()

        return [dict(row) for row in rows]

    def count_route_events(self, event: str, since_timestamp: int = 0) -> int:
        """Count events of one kind since a timestamp."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT COUNT(*) as cnt FROM route_events
            WHERE event = ? AND timestamp >= ?
        """, (event, since_timestamp)).fetchone()
        return row["cnt"] if row else 0

    # =========================================================================
    # Config Override Methods
    # =========================================================================

    def get_config_version(self) -> int:
        """Highest version written so far (0 when no overrides exist)."""
        conn = self._get_connection()
        row = conn.execute("SELECT MAX(version) as v FROM config_overrides").fetchone()
        return (row["v"] or 0) if row else 0

    def set_config_override(self, key: str, value: str) -> int:
        """Persist an override and return the new config version."""
        conn = self._get_connection()
        version = self.get_config_version() + 1
        conn.execute("""
            INSERT OR REPLACE INTO config_overrides (key, value, version, updated_at)
            VALUES (?, ?, ?, ?)
        """, (key, value, version, int(time.time())))
        return version

    def get_config_override(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        row = conn.execute("SELECT value FROM config_overrides WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def get_all_config_overrides(self) -> Dict[str, str]:
        conn = self._get_connection()
        rows = conn.execute("SELECT key, value FROM config_overrides ORDER BY key").fetchall()
        return {row["key"]: row["value"] for row in rows}

    # =========================================================================
    # Cleanup Methods
    # =========================================================================

    def cleanup_old_data(self, days_to_keep: int = 30):
        """
        Remove old route events to prevent database bloat.

        Args:
            days_to_keep: Number of days of history to retain
        """
        conn = self._get_connection()
        cutoff = int(time.time()) - (days_to_keep * 86400)

        count = conn.execute(
            "SELECT COUNT(*) as cnt FROM route_events WHERE timestamp < ?", (cutoff,)
        ).fetchone()["cnt"]

        conn.execute("DELETE FROM route_events WHERE timestamp < ?", (cutoff,))

        if count > 0:
            self.plugin.log(f"Cleaned up {count} route events older than {days_to_keep} days")

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
