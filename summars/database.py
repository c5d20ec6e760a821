"""
Database module for cl-summars

Handles SQLite persistence for the per-peer availability averages, so the
uptime column survives plugin restarts.
"""

import os
import sqlite3
import time
from typing import Any, Dict, Iterable, List, Optional


class Database:
    """
    SQLite database manager for the summars plugin.

    Provides persistence for:
    - Peer availability (sample count, last connectivity, moving average)
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database connection.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin for logging
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

        conn.execute("""
            CREATE TABLE IF NOT EXISTS peer_availability (
                peer_id TEXT PRIMARY KEY,
                sample_count INTEGER NOT NULL,
                connected INTEGER NOT NULL,
                avail REAL NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        if self.plugin:
            self.plugin.log(f"Database initialized at {self.db_path}")

    def load_availability(self) -> Dict[str, Dict[str, Any]]:
        """Get the stored availability of every peer, keyed by peer id."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT peer_id, sample_count, connected, avail, updated_at FROM peer_availability"
        ).fetchall()
        return {
            row["peer_id"]: {
                "count": row["sample_count"],
                "connected": bool(row["connected"]),
                "avail": row["avail"],
                "updated_at": row["updated_at"],
            }
            for row in rows
        }

    def save_availability(self, peers: Iterable, timestamp: Optional[int] = None):
        """
        Upsert availability rows in one transaction.

        Args:
            peers: PeerAvailability records
            timestamp: Sample time, defaults to now
        """
        conn = self._get_connection()
        now = int(timestamp if timestamp is not None else time.time())
        rows: List[tuple] = [
            (p.peer_id, p.count, int(p.connected), p.avail, now) for p in peers
        ]
        if not rows:
            return
        conn.execute("BEGIN")
        try:
            conn.executemany("""
                INSERT OR REPLACE INTO peer_availability
                (peer_id, sample_count, connected, avail, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, rows)
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise

    def delete_availability(self, peer_ids: Iterable[str]):
        """Drop peers that no longer have an active channel."""
        conn = self._get_connection()
        conn.executemany(
            "DELETE FROM peer_availability WHERE peer_id = ?",
            [(peer_id,) for peer_id in peer_ids]
        )

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
