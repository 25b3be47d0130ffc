"""
Local audit queue for cache decisions.

Appended by the decision path, drained from the head by the flush path.
Entries are only removed after the registry has accepted them, which gives
at-least-once delivery.
"""

import threading
from dataclasses import dataclass
from typing import List

from .db import get_db, transaction
from .config import ensure_db_directory
from .schema import AccessLogEntry


@dataclass
class LocalAuditEntry:
    account: str
    asset_key: str
    timestamp: int
    granted: bool
    reason: str  # owner|authorized|not_authorized|expired|stale_cache|registry_error

    def to_access_log_entry(self) -> AccessLogEntry:
        """The upstream record drops the local reason."""
        return AccessLogEntry(
            account=self.account,
            asset_key=self.asset_key,
            timestamp=self.timestamp,
            granted=self.granted
        )


class AuditQueue:
    """In-memory, lock-protected FIFO."""

    def __init__(self):
        self._entries: List[LocalAuditEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: LocalAuditEntry):
        with self._lock:
            self._entries.append(entry)

    def peek(self, limit: int = None) -> List[LocalAuditEntry]:
        """Oldest entries first, without removing them."""
        with self._lock:
            if limit is None:
                return list(self._entries)
            return self._entries[:limit]

    def ack(self, count: int):
        """Drop the oldest `count` entries after they were delivered."""
        with self._lock:
            del self._entries[:count]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PersistentAuditQueue(AuditQueue):
    """SQLite spool, so buffered decisions survive a restart of the cache process."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        ensure_db_directory(path)
        with get_db(self.path) as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS audit_spool (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account TEXT NOT NULL,
                    asset_key TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    granted BOOLEAN NOT NULL,
                    reason TEXT NOT NULL
                )
            ''')

    def append(self, entry: LocalAuditEntry):
        with self._lock, get_db(self.path) as conn:
            with transaction(conn) as cursor:
                cursor.execute(
                    "INSERT INTO audit_spool (account, asset_key, timestamp, granted, reason) VALUES (?, ?, ?, ?, ?)",
                    (entry.account, entry.asset_key, entry.timestamp, entry.granted, entry.reason)
                )

    def peek(self, limit: int = None) -> List[LocalAuditEntry]:
        query = "SELECT account, asset_key, timestamp, granted, reason FROM audit_spool ORDER BY id ASC"
        params = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)

        with self._lock, get_db(self.path) as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [
                LocalAuditEntry(account=a, asset_key=k, timestamp=ts, granted=bool(g), reason=r)
                for a, k, ts, g, r in cursor.fetchall()
            ]

    def ack(self, count: int):
        with self._lock, get_db(self.path) as conn:
            with transaction(conn) as cursor:
                cursor.execute(
                    "DELETE FROM audit_spool WHERE id IN (SELECT id FROM audit_spool ORDER BY id ASC LIMIT ?)",
                    (count,)
                )

    def __len__(self) -> int:
        with self._lock, get_db(self.path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM audit_spool")
            return cursor.fetchone()[0]
