"""
Append-only log stream for the authorization registry.

Each record is chained to its predecessor with SHA-256, so any edit or
deletion of a stored record breaks verification from that point on.
Records are published to in-process subscribers only after the
transaction that produced them has committed.
"""

import hashlib
import json
import sqlite3
import threading
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .db import get_db
from .schema import LogEvent, LogRecord
from ..util.logging import logger

GENESIS_HASH = "0" * 64


def compute_record_hash(prev_hash: str, tx_id: str, event: str, asset_key: str,
                        account: str, data: Dict, ts: int) -> str:
    """Hash one record together with the hash of the record before it."""
    serialized = json.dumps(
        {
            "tx_id": tx_id,
            "event": event,
            "asset_key": asset_key,
            "account": account,
            "data": data,
            "ts": ts,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    hash_obj = hashlib.sha256()
    hash_obj.update(f"{prev_hash}:{serialized}".encode("utf-8"))
    return hash_obj.hexdigest()


def new_tx_id() -> str:
    return uuid.uuid4().hex


def _row_to_record(row) -> LogRecord:
    seq, tx_id, event, asset_key, account, data, ts, prev_hash, record_hash = row
    return LogRecord(
        seq=seq,
        tx_id=tx_id,
        event=LogEvent(event),
        asset_key=asset_key or "",
        account=account or "",
        ts=ts,
        data=json.loads(data) if data else {},
        prev_hash=prev_hash,
        record_hash=record_hash,
    )


class LogStream:
    """Hash-chained log table plus an in-process subscription registry."""

    _COLUMNS = "seq, tx_id, event, asset_key, account, data, ts, prev_hash, record_hash"

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._subscribers: Dict[str, Tuple[Callable, Optional[str], Optional[frozenset]]] = {}
        self._subscribers_lock = threading.Lock()

    def append(self, cursor: sqlite3.Cursor, tx_id: str, event: LogEvent, asset_key: str,
               account: str, ts: int, data: Dict = None) -> LogRecord:
        """Append a record inside the caller's open transaction."""
        data = data or {}
        cursor.execute("SELECT record_hash FROM ledger_log ORDER BY seq DESC LIMIT 1")
        row = cursor.fetchone()
        prev_hash = row[0] if row else GENESIS_HASH

        record_hash = compute_record_hash(prev_hash, tx_id, event.value, asset_key, account, data, ts)
        cursor.execute(
            "INSERT INTO ledger_log (tx_id, event, asset_key, account, data, ts, prev_hash, record_hash) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (tx_id, event.value, asset_key, account, json.dumps(data, sort_keys=True), ts, prev_hash, record_hash)
        )
        return LogRecord(
            seq=cursor.lastrowid,
            tx_id=tx_id,
            event=event,
            asset_key=asset_key,
            account=account,
            ts=ts,
            data=data,
            prev_hash=prev_hash,
            record_hash=record_hash,
        )

    def read(self, after_seq: int = 0, asset_key: str = None,
             events: Iterable[LogEvent] = None, limit: int = 500) -> List[LogRecord]:
        """Return records with seq > after_seq, oldest first."""
        query = f"SELECT {self._COLUMNS} FROM ledger_log WHERE seq > ?"
        params = [after_seq]

        if asset_key is not None:
            query += " AND asset_key = ?"
            params.append(asset_key)

        if events:
            event_values = [LogEvent(e).value for e in events]
            query += f" AND event IN ({', '.join('?' for _ in event_values)})"
            params.extend(event_values)

        query += " ORDER BY seq ASC LIMIT ?"
        params.append(limit)

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [_row_to_record(row) for row in cursor.fetchall()]

    def head_seq(self) -> int:
        """Sequence number of the newest record (0 when empty)."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT MAX(seq) FROM ledger_log")
            row = cursor.fetchone()
            return row[0] or 0

    def verify(self) -> Tuple[bool, Optional[int]]:
        """
        Recompute the whole chain.

        Returns:
            (True, None) when intact, otherwise (False, seq of the first bad record)
        """
        expected_prev = GENESIS_HASH
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT {self._COLUMNS} FROM ledger_log ORDER BY seq ASC")
            for row in cursor:
                record = _row_to_record(row)
                if record.prev_hash != expected_prev:
                    return False, record.seq
                recomputed = compute_record_hash(
                    record.prev_hash, record.tx_id, record.event.value,
                    record.asset_key, record.account, record.data, record.ts
                )
                if recomputed != record.record_hash:
                    return False, record.seq
                expected_prev = record.record_hash
        return True, None

    def subscribe(self, callback: Callable[[LogRecord], None], asset_key: str = None,
                  events: Iterable[LogEvent] = None) -> str:
        """Register a callback for committed records; returns a token for unsubscribe."""
        if not callable(callback):
            raise ValueError(f"Subscriber must be callable: {callback}")

        token = uuid.uuid4().hex
        event_filter = frozenset(LogEvent(e) for e in events) if events else None
        with self._subscribers_lock:
            self._subscribers[token] = (callback, asset_key, event_filter)
        return token

    def unsubscribe(self, token: str):
        with self._subscribers_lock:
            self._subscribers.pop(token, None)

    def publish(self, records: List[LogRecord]):
        """Deliver committed records to matching subscribers, in order."""
        with self._subscribers_lock:
            subscribers = list(self._subscribers.items())

        for record in records:
            for token, (callback, asset_key, event_filter) in subscribers:
                if asset_key is not None and record.asset_key != asset_key:
                    continue
                if event_filter is not None and record.event not in event_filter:
                    continue
                try:
                    callback(record)
                except Exception as e:
                    # One broken subscriber must not affect the others
                    logger.warning(f"Log subscriber {token[:8]} failed on seq {record.seq}: {e}")
