"""SQLite-backed durable state for Browse Digest.

Every piece of state that must survive a restart lives here as a JSON blob
under a string key: the event log and its metadata, per-day extracted page
content, the tracker snapshot, the last-digest marker, scheduler alarms and
delivery statistics. In-memory structures elsewhere are caches of these
blobs.

Database Schema:
    state table:
        - key: Blob name (primary key)
        - value: JSON-encoded value
        - updated_at: Unix timestamp of the last write

Example:
    >>> storage = StateStorage(tmp_path / "state.db")
    >>> storage.set("last_digest_date", "2026-02-12")
    >>> storage.get("last_digest_date")
    '2026-02-12'
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import QuotaExceededError, StorageError

logger = logging.getLogger(__name__)


class StateStorage:
    """Key/value store of JSON blobs in a single SQLite file.

    Connections are opened per operation, so one instance may be shared by
    the signal path and worker threads.

    Attributes:
        db_path (str): Absolute path to the SQLite database file
        quota_bytes (int): Maximum encoded size of a single value (0 = unlimited)
    """

    def __init__(self, db_path=None, quota_bytes: int = 0):
        """Initialize StateStorage and ensure the schema exists.

        Args:
            db_path: Path to SQLite database file. If None, uses
                ~/browsedigest-data/state.db
            quota_bytes: Reject writes of values larger than this many bytes

        Raises:
            StorageError: If the data directory or database cannot be created
        """
        if db_path is None:
            db_path = Path.home() / "browsedigest-data" / "state.db"
        db_path = Path(db_path).expanduser()
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create data directory {db_path.parent}: {e}") from e

        self.db_path = str(db_path)
        self.quota_bytes = quota_bytes
        self.init_db()

    @contextmanager
    def get_connection(self):
        """Context manager for SQLite database connections.

        Yields:
            sqlite3.Connection: Database connection with Row factory enabled

        Raises:
            QuotaExceededError: If the database or disk is full
            StorageError: For any other database failure
        """
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()
        except sqlite3.Error as e:
            if 'full' in str(e).lower():
                raise QuotaExceededError(f"Storage full for {self.db_path}: {e}") from e
            raise StorageError(f"Database access error for {self.db_path}: {e}") from e

    def init_db(self):
        """Create the state table if it doesn't exist."""
        with self.get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.commit()

    def _encode(self, key: str, value: Any) -> str:
        encoded = json.dumps(value, separators=(',', ':'))
        if self.quota_bytes and len(encoded.encode('utf-8')) > self.quota_bytes:
            raise QuotaExceededError(
                f"Value for {key!r} is {len(encoded)} bytes, quota is {self.quota_bytes}"
            )
        return encoded

    def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value for a key, or default if missing/corrupt."""
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM state WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row['value'])
        except ValueError:
            logger.warning(f"Corrupt value stored under {key!r}, ignoring")
            return default

    def get_many(self, keys: List[str]) -> Dict[str, Any]:
        """Return a dict of the keys that exist."""
        result = {}
        for key in keys:
            value = self.get(key, _MISSING)
            if value is not _MISSING:
                result[key] = value
        return result

    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value under key."""
        self.set_many({key: value})

    def set_many(self, values: Dict[str, Any]) -> None:
        """Store several values in a single transaction.

        Raises:
            QuotaExceededError: If any value exceeds the quota; nothing is written.
            StorageError: If the write fails.
        """
        now = time.time()
        rows = [(key, self._encode(key, value), now) for key, value in values.items()]
        with self.get_connection() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO state (key, value, updated_at) VALUES (?, ?, ?)",
                rows,
            )
            conn.commit()

    def delete(self, *keys: str) -> None:
        """Remove keys (missing keys are ignored)."""
        if not keys:
            return
        with self.get_connection() as conn:
            conn.executemany("DELETE FROM state WHERE key = ?", [(k,) for k in keys])
            conn.commit()

    def keys(self, prefix: str = '') -> List[str]:
        """List stored keys starting with prefix, sorted."""
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT key FROM state WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [row['key'] for row in rows]

    def size_bytes(self, key: Optional[str] = None) -> int:
        """Return the stored size of one value, or of all values."""
        with self.get_connection() as conn:
            if key is None:
                row = conn.execute("SELECT COALESCE(SUM(LENGTH(value)), 0) AS n FROM state").fetchone()
            else:
                row = conn.execute(
                    "SELECT COALESCE(LENGTH(value), 0) AS n FROM state WHERE key = ?", (key,)
                ).fetchone()
        return int(row['n']) if row else 0


_MISSING = object()
