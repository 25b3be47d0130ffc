"""
Authorization registry - the authoritative record of who may act on an asset.

Every mutation is one serialized SQLite transaction: it either applies in
full, together with the log records it produces, or has no effect at all.
Log records are published to subscribers only after commit.

Authorization membership is kept in two co-located tables, a dense
enumerable list (asset_key, position) -> account and its reverse index
(asset_key, account) -> position. Removal is swap-with-last, pop, patch
index, so it is O(1) and the list stays gapless.
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterable, List, Optional, Sequence, Union, Dict, Any

from .config import BATCH_LOG_CAP, DB_PATH
from .db import get_db, init_db, transaction
from .errors import (
    AlreadyExists,
    AssetNotFound,
    BatchError,
    NotOwner,
    NotOwnerOrAdmin,
    RegistryError,
    TemporalPolicyError,
    ValidationFailed,
)
from .ledger import LogStream, new_tx_id
from .schema import (
    TEMPORARY_ROLE,
    AccessLogEntry,
    AssetRecord,
    AuthorizationEntry,
    LogEvent,
    LogRecord,
    is_null_account,
    normalize_account,
)
from ..util.logging import logger


class _Transaction:
    """One open registry transaction: cursor, caller, frozen clock and emitted records."""

    def __init__(self, cursor: sqlite3.Cursor, log: LogStream, caller: str, now: int):
        self.cursor = cursor
        self.log = log
        self.caller = caller
        self.now = now
        self.tx_id = new_tx_id()
        self.records: List[LogRecord] = []

    def emit(self, event: LogEvent, asset_key: str, account: str, data: Dict[str, Any] = None) -> LogRecord:
        record = self.log.append(self.cursor, self.tx_id, event, asset_key, account, self.now, data)
        self.records.append(record)
        return record


class AuthorizationRegistry:
    """Owns asset records, authorization entries and the log stream."""

    def __init__(self, db_path: str = None, clock: Callable[[], float] = time.time):
        self.db_path = db_path or DB_PATH
        self._clock = clock
        self._write_lock = threading.Lock()
        # Reentrant so a subscriber may itself mutate the registry
        self._publish_lock = threading.RLock()
        init_db(self.db_path)
        self.log = LogStream(self.db_path)

    def now(self) -> int:
        """Current registry time in whole seconds."""
        return int(self._clock())

    @contextmanager
    def _mutation(self, operation: str, asset_key: str, caller: str):
        """
        Serialize a write, commit it atomically, then publish its records.

        The publish turn is taken before the write lock is released, so
        subscribers see records in commit order even when a callback is slow.
        """
        self._write_lock.acquire()
        try:
            with get_db(self.db_path) as conn:
                with transaction(conn) as cursor:
                    tx = _Transaction(cursor, self.log, caller, self.now())
                    yield tx
            self._publish_lock.acquire()
        except RegistryError as e:
            logger.log_registry_mutation(operation, asset_key, caller, "rejected", {
                "error": type(e).__name__,
                "message": str(e)
            })
            raise
        except sqlite3.Error as e:
            logger.error(f"Database error during {operation} on '{asset_key}': {e}")
            raise
        finally:
            self._write_lock.release()

        try:
            logger.log_registry_mutation(operation, asset_key, caller, "success", {"records": len(tx.records)})
            self.log.publish(tx.records)
        finally:
            self._publish_lock.release()

    # ------------------------------------------------------------------
    # Storage helpers (all run on an open cursor)
    # ------------------------------------------------------------------

    @staticmethod
    def _load_asset(cursor, asset_key: str) -> Optional[AssetRecord]:
        cursor.execute(
            "SELECT owner, description, initialized FROM assets WHERE asset_key = ?",
            (asset_key,)
        )
        row = cursor.fetchone()
        if not row:
            return None

        owner, description, initialized = row
        cursor.execute("SELECT COUNT(*) FROM authorization_list WHERE asset_key = ?", (asset_key,))
        count = cursor.fetchone()[0]
        return AssetRecord(
            key=asset_key,
            owner=owner,
            description=description,
            initialized=bool(initialized),
            authorization_count=count
        )

    @staticmethod
    def _load_entry(cursor, asset_key: str, account: str) -> AuthorizationEntry:
        cursor.execute(
            "SELECT role, active, expires_at FROM authorizations WHERE asset_key = ? AND account = ?",
            (asset_key, account)
        )
        row = cursor.fetchone()
        if not row:
            return AuthorizationEntry(asset_key=asset_key, account=account)

        role, active, expires_at = row
        return AuthorizationEntry(
            asset_key=asset_key,
            account=account,
            role=role,
            active=bool(active),
            expires_at=expires_at
        )

    def _has_access(self, cursor, asset_key: str, account: str, now: int) -> bool:
        """
        The single access predicate, shared by write permission and read access:
        owner, or an active entry that has not expired.
        """
        if is_null_account(account):
            return False

        asset = self._load_asset(cursor, asset_key)
        if asset is None:
            return False

        if account == asset.owner:
            return True

        return self._load_entry(cursor, asset_key, account).is_current(now)

    def _require_grant(self, tx: _Transaction, asset_key: str, message: str):
        if not self._has_access(tx.cursor, asset_key, tx.caller, tx.now):
            raise NotOwnerOrAdmin(message)

    @staticmethod
    def _require_key(asset_key: str):
        if not asset_key or not asset_key.strip():
            raise ValidationFailed("Asset key cannot be empty")

    @staticmethod
    def _expiry_for(role: str, duration: int, now: int) -> int:
        """Validate the role/duration pairing and return expires_at."""
        if duration is None:
            duration = 0
        if duration < 0:
            raise TemporalPolicyError("Duration cannot be negative")

        if role == TEMPORARY_ROLE:
            if duration == 0:
                raise TemporalPolicyError("Temporary roles must have expiration duration")
            return now + duration

        if duration != 0:
            raise TemporalPolicyError("Only temporary roles can have an expiration duration")
        return 0

    def _add_one(self, tx: _Transaction, asset_key: str, account: str, role: str, duration: int):
        account = normalize_account(account)
        if is_null_account(account):
            raise ValidationFailed("Invalid account address")
        if not role or not role.strip():
            raise ValidationFailed("Role cannot be empty")

        expires_at = self._expiry_for(role, duration, tx.now)
        cursor = tx.cursor

        cursor.execute(
            "SELECT position FROM authorization_index WHERE asset_key = ? AND account = ?",
            (asset_key, account)
        )
        if cursor.fetchone() is None:
            cursor.execute("SELECT COUNT(*) FROM authorization_list WHERE asset_key = ?", (asset_key,))
            position = cursor.fetchone()[0]
            cursor.execute(
                "INSERT INTO authorization_list (asset_key, position, account) VALUES (?, ?, ?)",
                (asset_key, position, account)
            )
            cursor.execute(
                "INSERT INTO authorization_index (asset_key, account, position) VALUES (?, ?, ?)",
                (asset_key, account, position)
            )

        # Re-grant always overwrites role and expiry
        cursor.execute(
            "INSERT INTO authorizations (asset_key, account, role, active, expires_at) VALUES (?, ?, ?, TRUE, ?) "
            "ON CONFLICT(asset_key, account) DO UPDATE SET role = excluded.role, active = TRUE, expires_at = excluded.expires_at",
            (asset_key, account, role, expires_at)
        )

        tx.emit(LogEvent.AUTHORIZATION_ADDED, asset_key, account, {
            "role": role,
            "expires_at": expires_at,
            "granted_by": tx.caller
        })

    def _remove_one(self, tx: _Transaction, asset_key: str, account: str):
        account = normalize_account(account)
        if is_null_account(account):
            raise ValidationFailed("Invalid account address")

        cursor = tx.cursor
        cursor.execute(
            "SELECT position FROM authorization_index WHERE asset_key = ? AND account = ?",
            (asset_key, account)
        )
        row = cursor.fetchone()

        if row is not None:
            position = row[0]
            cursor.execute("SELECT COUNT(*) FROM authorization_list WHERE asset_key = ?", (asset_key,))
            last_position = cursor.fetchone()[0] - 1
            cursor.execute(
                "SELECT account FROM authorization_list WHERE asset_key = ? AND position = ?",
                (asset_key, last_position)
            )
            last_account = cursor.fetchone()[0]

            # When account is itself last these two writes are self-assignments
            cursor.execute(
                "UPDATE authorization_list SET account = ? WHERE asset_key = ? AND position = ?",
                (last_account, asset_key, position)
            )
            cursor.execute(
                "UPDATE authorization_index SET position = ? WHERE asset_key = ? AND account = ?",
                (position, asset_key, last_account)
            )
            cursor.execute(
                "DELETE FROM authorization_list WHERE asset_key = ? AND position = ?",
                (asset_key, last_position)
            )
            cursor.execute(
                "DELETE FROM authorization_index WHERE asset_key = ? AND account = ?",
                (asset_key, account)
            )

        cursor.execute(
            "UPDATE authorizations SET role = '', active = FALSE, expires_at = 0 WHERE asset_key = ? AND account = ?",
            (asset_key, account)
        )

        tx.emit(LogEvent.AUTHORIZATION_REMOVED, asset_key, account, {"removed_by": tx.caller})

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_asset(self, asset_key: str, description: str, caller: str):
        """Create an asset owned by the caller. Fails with AlreadyExists on a used key."""
        caller = normalize_account(caller)
        with self._mutation("create_asset", asset_key, caller) as tx:
            self._require_key(asset_key)
            if not description or not description.strip():
                raise ValidationFailed("Description cannot be empty")
            if is_null_account(caller):
                raise ValidationFailed("Invalid caller address")

            if self._load_asset(tx.cursor, asset_key) is not None:
                raise AlreadyExists(f"Asset already exists: {asset_key}")

            tx.cursor.execute("SELECT COUNT(*) FROM assets")
            position = tx.cursor.fetchone()[0]
            tx.cursor.execute(
                "INSERT INTO assets (asset_key, owner, description, initialized, position) VALUES (?, ?, ?, TRUE, ?)",
                (asset_key, caller, description, position)
            )
            tx.emit(LogEvent.ASSET_CREATED, asset_key, caller, {"description": description})

    def add_authorization(self, asset_key: str, account: str, role: str, caller: str, duration: int = 0):
        """Grant (or re-grant) a role; caller must be the owner or hold a current grant."""
        caller = normalize_account(caller)
        with self._mutation("add_authorization", asset_key, caller) as tx:
            self._require_key(asset_key)
            self._require_grant(tx, asset_key, "Only the owner or admins can add authorizations.")
            self._add_one(tx, asset_key, account, role, duration)

    def remove_authorization(self, asset_key: str, account: str, caller: str):
        """Revoke a grant; removing an absent account leaves the list untouched."""
        caller = normalize_account(caller)
        with self._mutation("remove_authorization", asset_key, caller) as tx:
            self._require_key(asset_key)
            self._require_grant(tx, asset_key, "Only the owner or admins can remove authorizations.")
            self._remove_one(tx, asset_key, account)

    def add_authorization_batch(self, asset_key: str, accounts: Sequence[str], roles: Sequence[str], caller: str):
        """Grant several roles under one permission check and one transaction."""
        self._add_batch("add_authorization_batch", asset_key, accounts, roles, None, caller)

    def add_authorization_batch_with_duration(self, asset_key: str, accounts: Sequence[str],
                                              roles: Sequence[str], durations: Sequence[int], caller: str):
        """Like add_authorization_batch, with a per-account duration (0 for non-temporary roles)."""
        self._add_batch("add_authorization_batch_with_duration", asset_key, accounts, roles, durations, caller)

    def _add_batch(self, operation: str, asset_key: str, accounts, roles, durations, caller: str):
        caller = normalize_account(caller)
        accounts = list(accounts or [])
        roles = list(roles or [])
        durations = None if durations is None else list(durations)

        with self._mutation(operation, asset_key, caller) as tx:
            self._require_key(asset_key)
            if not accounts and not roles and not durations:
                raise BatchError("Empty arrays provided")
            if len(accounts) != len(roles) or (durations is not None and len(durations) != len(accounts)):
                raise BatchError("Array length mismatch")

            self._require_grant(tx, asset_key, "Only the owner or admins can add authorizations.")

            for i, (account, role) in enumerate(zip(accounts, roles)):
                duration = durations[i] if durations is not None else 0
                self._add_one(tx, asset_key, account, role, duration)

    def remove_authorization_batch(self, asset_key: str, accounts: Sequence[str], caller: str):
        """Revoke several grants under one permission check and one transaction."""
        caller = normalize_account(caller)
        accounts = list(accounts or [])

        with self._mutation("remove_authorization_batch", asset_key, caller) as tx:
            self._require_key(asset_key)
            if not accounts:
                raise BatchError("Empty array provided")

            self._require_grant(tx, asset_key, "Only the owner or admins can remove authorizations.")

            for account in accounts:
                self._remove_one(tx, asset_key, account)

    def transfer_ownership(self, asset_key: str, new_owner: str, caller: str):
        """Hand the asset to new_owner. Only the current owner may do this; grants are untouched."""
        caller = normalize_account(caller)
        new_owner = normalize_account(new_owner)

        with self._mutation("transfer_ownership", asset_key, caller) as tx:
            self._require_key(asset_key)
            if is_null_account(new_owner):
                raise ValidationFailed("Invalid new owner address")

            asset = self._load_asset(tx.cursor, asset_key)
            if asset is None:
                raise AssetNotFound("Asset does not exist")
            if caller != asset.owner:
                raise NotOwner("Only the owner can transfer ownership")

            tx.cursor.execute("UPDATE assets SET owner = ? WHERE asset_key = ?", (new_owner, asset_key))
            tx.emit(LogEvent.OWNERSHIP_TRANSFERRED, asset_key, new_owner, {
                "previous_owner": asset.owner,
                "new_owner": new_owner
            })

    def get_access(self, asset_key: str, caller: str) -> bool:
        """Access check for the caller that also leaves an access-attempt record."""
        caller = normalize_account(caller)
        with self._mutation("get_access", asset_key, caller) as tx:
            self._require_key(asset_key)
            granted = self._has_access(tx.cursor, asset_key, caller, tx.now)
            tx.emit(LogEvent.ACCESS_ATTEMPT, asset_key, caller, {
                "granted": granted,
                "timestamp": tx.now
            })
        return granted

    def batch_log_access(self, entries: Iterable[Union[AccessLogEntry, Dict[str, Any]]], caller: str) -> int:
        """
        Record externally made access decisions, one log record per entry, in input order.

        Not permission-gated: these are advisory audit records.

        Returns:
            Number of records written
        """
        caller = normalize_account(caller)
        entries = list(entries or [])

        with self._mutation("batch_log_access", "", caller) as tx:
            try:
                entries = [e if isinstance(e, AccessLogEntry) else AccessLogEntry(**e) for e in entries]
            except TypeError as e:
                raise ValidationFailed(f"Malformed access log entry: {e}")

            if not entries:
                raise BatchError("No entries provided")
            if len(entries) > BATCH_LOG_CAP:
                raise BatchError(f"Batch size exceeds maximum of {BATCH_LOG_CAP}")

            for entry in entries:
                tx.emit(LogEvent.ACCESS_ATTEMPT, entry.asset_key, normalize_account(entry.account), {
                    "granted": bool(entry.granted),
                    "timestamp": int(entry.timestamp),
                    "reported_by": caller,
                    "batched": True
                })
        return len(entries)

    # ------------------------------------------------------------------
    # Reads (never block on writers, never mutate)
    # ------------------------------------------------------------------

    def get_asset(self, asset_key: str) -> AssetRecord:
        """Asset record, or the default (uninitialized) record when the key is unknown."""
        with get_db(self.db_path) as conn:
            asset = self._load_asset(conn.cursor(), asset_key)
        return asset or AssetRecord(key=asset_key)

    def get_asset_count(self) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM assets")
            return cursor.fetchone()[0]

    def get_asset_at_index(self, index: int) -> str:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT asset_key FROM assets WHERE position = ?", (index,))
            row = cursor.fetchone()
        if row is None:
            raise ValidationFailed("Index out of range")
        return row[0]

    def get_asset_authorization(self, asset_key: str, account: str) -> str:
        """Role of account on asset_key, or "" when there is no active entry."""
        entry = self.get_authorization_entry(asset_key, account)
        return entry.role if entry.active else ""

    def get_authorization_entry(self, asset_key: str, account: str) -> AuthorizationEntry:
        with get_db(self.db_path) as conn:
            return self._load_entry(conn.cursor(), asset_key, normalize_account(account))

    def get_asset_authorization_count(self, asset_key: str) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM authorization_list WHERE asset_key = ?", (asset_key,))
            return cursor.fetchone()[0]

    def get_asset_authorization_at_index(self, asset_key: str, index: int) -> str:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT account FROM authorization_list WHERE asset_key = ? AND position = ?",
                (asset_key, index)
            )
            row = cursor.fetchone()
        if row is None:
            raise ValidationFailed("Index out of range")
        return row[0]

    def can_access(self, asset_key: str, account: str) -> bool:
        """Same predicate as get_access, with no log record."""
        with get_db(self.db_path) as conn:
            return self._has_access(conn.cursor(), asset_key, normalize_account(account), self.now())

    # ------------------------------------------------------------------
    # Log stream
    # ------------------------------------------------------------------

    def get_log_records(self, after_seq: int = 0, asset_key: str = None,
                        events: Iterable[LogEvent] = None, limit: int = 500) -> List[LogRecord]:
        return self.log.read(after_seq, asset_key, events, limit)

    def head_seq(self) -> int:
        return self.log.head_seq()

    def verify_log_chain(self):
        """(True, None) when the log is intact, else (False, first bad seq)."""
        return self.log.verify()

    def subscribe(self, callback: Callable[[LogRecord], None], asset_key: str = None,
                  events: Iterable[LogEvent] = None) -> str:
        return self.log.subscribe(callback, asset_key, events)

    def unsubscribe(self, token: str):
        self.log.unsubscribe(token)
