"""
Reconciling access cache - answers access checks for one asset from memory.

The registry stays authoritative. The cache keeps an advisory snapshot of
the asset's owner and authorized accounts, rebuilt by a full sync on a
timer and patched in between from the registry's log stream. Decisions
never wait on the registry: they read whatever snapshot exists, and fail
closed once that snapshot is older than max_cache_age. Every decision is
queued locally and flushed to the registry's batch audit operation.
"""

import copy
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .audit_queue import AuditQueue, LocalAuditEntry, PersistentAuditQueue
from .client import IRegistryClient
from .config import (
    CACHE_DELTA_POLL_SEC,
    CACHE_SHUTDOWN_TIMEOUT_SEC,
    CACHE_SPOOL_PATH,
    CACHE_SYNC_TIMEOUT_SEC,
    REGISTRY_CALL_TIMEOUT_SEC,
    get_batch_size,
    get_flush_interval,
    get_max_cache_age,
    get_sync_interval,
    validate_cache_config,
)
from .errors import AssetNotFound, ValidationFailed
from .heartbeat import Heartbeat
from .schema import LogEvent, LogRecord, normalize_account
from ..util.logging import logger

MEMBERSHIP_EVENTS = (LogEvent.AUTHORIZATION_ADDED, LogEvent.AUTHORIZATION_REMOVED)
DELTA_EVENTS = MEMBERSHIP_EVENTS + (LogEvent.OWNERSHIP_TRANSFERRED,)
SYNC_ATTEMPTS = 3


@dataclass
class CacheSnapshot:
    owner: str = ""
    authorized: Dict[str, int] = field(default_factory=dict)  # account -> expires_at (0 = never)
    last_sync: Optional[float] = None  # None until the first successful sync


class SyncConflict(Exception):
    """The authorization list changed while it was being enumerated."""


def chunked(items: List, size: int) -> List[List]:
    """Split a list into consecutive chunks of at most `size` items."""
    return [items[i:i + size] for i in range(0, len(items), size)]


class ReconcilingAccessCache:
    """Local, fail-closed mirror of one asset's authorization set."""

    def __init__(
        self,
        client: IRegistryClient,
        asset_key: str,
        sync_interval: float = None,
        flush_interval: float = None,
        max_cache_age: float = None,
        batch_size: int = None,
        call_timeout: float = REGISTRY_CALL_TIMEOUT_SEC,
        sync_timeout: float = CACHE_SYNC_TIMEOUT_SEC,
        delta_poll_interval: float = CACHE_DELTA_POLL_SEC,
        shutdown_timeout: float = CACHE_SHUTDOWN_TIMEOUT_SEC,
        audit_queue: AuditQueue = None,
        clock: Callable[[], float] = time.time,
        on_granted: Callable[[str], None] = None,
        on_denied: Callable[[str, str], None] = None,
    ):
        self.client = client
        self.asset_key = asset_key
        self.sync_interval = get_sync_interval() if sync_interval is None else sync_interval
        self.flush_interval = get_flush_interval() if flush_interval is None else flush_interval
        self.max_cache_age = get_max_cache_age() if max_cache_age is None else max_cache_age
        self.batch_size = get_batch_size() if batch_size is None else batch_size

        issues = validate_cache_config(self.sync_interval, self.flush_interval, self.max_cache_age, self.batch_size)
        if issues:
            raise ValueError(f"Cache configuration invalid: {issues}")
        if self.max_cache_age < self.sync_interval:
            logger.warning(
                f"max_cache_age ({self.max_cache_age}s) is shorter than sync_interval ({self.sync_interval}s); "
                "the cache will fail closed between syncs"
            )

        self.call_timeout = call_timeout
        self.sync_timeout = sync_timeout
        self.delta_poll_interval = delta_poll_interval
        self.shutdown_timeout = shutdown_timeout
        self.audit_queue = audit_queue if audit_queue is not None else _default_audit_queue()
        self._clock = clock
        self.on_granted = on_granted
        self.on_denied = on_denied

        # Sync and delta-apply write the snapshot; decisions only read it
        self._snapshot = CacheSnapshot()
        self._snapshot_lock = threading.Lock()
        self._delta_cursor = 0
        self._generation = 0

        self._sync_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix=f"cache-{asset_key}")
        # Full syncs get their own worker so a hung fetch cannot starve flush and delta calls
        self._sync_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"sync-{asset_key}")
        self._sync_future = None
        self._stop_event = threading.Event()
        self._listener: Optional[threading.Thread] = None
        self.heartbeat = Heartbeat(name=f"cache:{asset_key}")

        self.last_sync_error: Optional[str] = None
        self.last_flush_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Initial sync, then the delta listener and the sync/flush timers."""
        logger.info(f"Starting access cache for asset '{self.asset_key}'")

        if not self.sync():
            logger.warning(f"Initial sync for '{self.asset_key}' failed; denying until a sync succeeds")

        self._stop_event.clear()
        self._listener = threading.Thread(target=self._listen, name=f"delta-{self.asset_key}", daemon=True)
        self._listener.start()

        self.heartbeat.register_task("sync", self.sync_interval, self.sync, run_immediately=False)
        self.heartbeat.register_task("flush", self.flush_interval, self.flush, run_immediately=False)
        self.heartbeat.start()

    def stop(self):
        """Stop timers and listener, then flush what is buffered within shutdown_timeout."""
        logger.info(f"Stopping access cache for asset '{self.asset_key}'")

        self._stop_event.set()
        self.heartbeat.stop()
        if self._listener is not None:
            self._listener.join(self.delta_poll_interval + self.call_timeout)
            self._listener = None

        deadline = time.monotonic() + self.shutdown_timeout
        self.flush(deadline=deadline)

        pending = len(self.audit_queue)
        if pending:
            logger.warning(f"Shutdown left {pending} audit entries unflushed for '{self.asset_key}'")

        self._executor.shutdown(wait=False)
        self._sync_executor.shutdown(wait=False)

    def _bounded(self, func: Callable, *args, timeout: float = None):
        """Run a registry call on the worker pool and give up after timeout."""
        future = self._executor.submit(func, *args)
        return future.result(timeout=self.call_timeout if timeout is None else timeout)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def _fetch_snapshot(self) -> Tuple[CacheSnapshot, int]:
        """
        Enumerate owner and authorized accounts.

        Removal on the registry side moves the last account into the freed
        slot, so a change during enumeration can hide an account. The read
        is accepted only if no membership change was logged while it ran.
        """
        for attempt in range(SYNC_ATTEMPTS):
            started = self._clock()
            head = self.client.head_seq()

            asset = self.client.get_asset(self.asset_key)
            if not asset.initialized:
                raise AssetNotFound(f"Asset {self.asset_key} does not exist")

            authorized = {}
            try:
                for index in range(asset.authorization_count):
                    account = self.client.get_asset_authorization_at_index(self.asset_key, index)
                    entry = self.client.get_authorization_entry(self.asset_key, account)
                    if entry.active:
                        authorized[normalize_account(account)] = entry.expires_at
            except ValidationFailed as e:
                # The list shrank under the enumeration
                logger.debug(f"Enumeration of '{self.asset_key}' cut short: {e} (attempt {attempt + 1})")
                continue

            changes = self.client.get_log_records(
                after_seq=head, asset_key=self.asset_key, events=DELTA_EVENTS, limit=1
            )
            if not changes:
                return CacheSnapshot(owner=normalize_account(asset.owner), authorized=authorized, last_sync=started), head

            logger.debug(f"Authorization list for '{self.asset_key}' changed during sync (attempt {attempt + 1})")

        raise SyncConflict(f"Authorization list for {self.asset_key} kept changing during sync")

    def sync(self) -> bool:
        """
        Rebuild the snapshot from the registry.

        The old snapshot is kept unless the full enumeration succeeds.
        Returns False when a sync is already running or the read failed.
        """
        if not self._sync_lock.acquire(blocking=False):
            return False

        try:
            if self._sync_future is not None and not self._sync_future.done():
                logger.warning(f"Previous sync fetch for '{self.asset_key}' still running, skipping")
                return False

            try:
                self._sync_future = self._sync_executor.submit(self._fetch_snapshot)
                snapshot, head = self._sync_future.result(timeout=self.sync_timeout)
            except Exception as e:
                self.last_sync_error = f"{type(e).__name__}: {e}"
                logger.log_sync(self.asset_key, "failed", {"error": self.last_sync_error[:200]})
                return False

            with self._snapshot_lock:
                self._snapshot = snapshot
                # Replay everything after the read point on top of the new snapshot
                self._delta_cursor = head
                self._generation += 1

            self.last_sync_error = None
            logger.log_sync(self.asset_key, "success", {
                "owner": snapshot.owner,
                "authorized": len(snapshot.authorized),
                "head_seq": head
            })
            return True
        finally:
            self._sync_lock.release()

    def trigger_sync(self) -> bool:
        """Start an out-of-band sync in the background unless one is running."""
        if self._sync_lock.locked() or self._stop_event.is_set():
            return False

        threading.Thread(target=self.sync, name=f"oob-sync-{self.asset_key}", daemon=True).start()
        return True

    # ------------------------------------------------------------------
    # Live deltas
    # ------------------------------------------------------------------

    def _listen(self):
        while not self._stop_event.is_set():
            self.poll_deltas()
            self._stop_event.wait(self.delta_poll_interval)

    def poll_deltas(self) -> int:
        """Fetch and apply membership changes logged since the cursor. Returns records applied."""
        with self._snapshot_lock:
            if self._snapshot.last_sync is None:
                return 0  # no baseline yet
            cursor = self._delta_cursor
            generation = self._generation

        try:
            records = self._bounded(
                self.client.get_log_records, cursor, self.asset_key, DELTA_EVENTS
            )
        except Exception as e:
            # Best effort; the next full sync heals anything missed here
            logger.warning(f"Delta poll for '{self.asset_key}' failed: {e}")
            return 0

        applied: List[LogRecord] = []
        with self._snapshot_lock:
            if generation != self._generation:
                return 0  # a sync replaced the snapshot meanwhile
            for record in records:
                if record.seq <= self._delta_cursor:
                    continue
                self._apply_delta(record)
                self._delta_cursor = record.seq
                applied.append(record)

        for record in applied:
            logger.log_delta(self.asset_key, record.event.value, record.account, record.seq)
        return len(applied)

    def apply_delta(self, record: LogRecord) -> bool:
        """Apply one pushed log record (e.g. from an in-process subscription)."""
        if record.asset_key != self.asset_key or record.event not in DELTA_EVENTS:
            return False

        with self._snapshot_lock:
            if record.seq <= self._delta_cursor:
                return False
            self._apply_delta(record)
            self._delta_cursor = record.seq

        logger.log_delta(self.asset_key, record.event.value, record.account, record.seq)
        return True

    def _apply_delta(self, record: LogRecord):
        # Caller holds _snapshot_lock
        account = normalize_account(record.account)
        if record.event == LogEvent.AUTHORIZATION_ADDED:
            self._snapshot.authorized[account] = int(record.data.get("expires_at", 0))
        elif record.event == LogEvent.AUTHORIZATION_REMOVED:
            self._snapshot.authorized.pop(account, None)
        elif record.event == LogEvent.OWNERSHIP_TRANSFERRED:
            self._snapshot.owner = account

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _is_stale(self, now: float) -> bool:
        last_sync = self._snapshot.last_sync
        return last_sync is None or now - last_sync > self.max_cache_age

    def validate_access(self, account: str) -> bool:
        """
        Decide from the local snapshot. Never raises and never waits on the registry.

        A snapshot older than max_cache_age denies everyone and starts a
        background sync.
        """
        account = normalize_account(account)
        now = self._clock()

        with self._snapshot_lock:
            stale = self._is_stale(now)
            if not stale:
                is_owner = account != "" and account == self._snapshot.owner
                expires_at = self._snapshot.authorized.get(account)

        if stale:
            logger.warning(f"Cache for '{self.asset_key}' is stale, denying access until sync")
            self._record(account, False, "stale_cache", now)
            self.trigger_sync()
            return False

        if is_owner:
            granted, reason = True, "owner"
        elif expires_at is None:
            granted, reason = False, "not_authorized"
        elif expires_at == 0 or expires_at > now:
            granted, reason = True, "authorized"
        else:
            granted, reason = False, "expired"

        self._record(account, granted, reason, now)
        return granted

    def validate_access_authoritative(self, account: str) -> bool:
        """Ask the registry directly (slower, exact). Any failure denies."""
        account = normalize_account(account)
        now = self._clock()
        try:
            granted = bool(self._bounded(self.client.can_access, self.asset_key, account))
            reason = "authorized" if granted else "not_authorized"
        except Exception as e:
            logger.warning(f"Authoritative check for '{self.asset_key}' failed: {e}")
            granted, reason = False, "registry_error"

        self._record(account, granted, reason, now, source="registry")
        return granted

    def _record(self, account: str, granted: bool, reason: str, now: float, source: str = "cache"):
        self.audit_queue.append(LocalAuditEntry(
            account=account,
            asset_key=self.asset_key,
            timestamp=int(now),
            granted=granted,
            reason=reason
        ))
        logger.log_access_decision(self.asset_key, account, granted, reason, source)

        hook = self.on_granted if granted else self.on_denied
        if hook is None:
            return
        try:
            if granted:
                hook(account)
            else:
                hook(account, reason)
        except Exception as e:
            logger.error(f"Access hook failed for '{self.asset_key}': {e}")

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    def flush(self, deadline: float = None) -> int:
        """
        Push buffered decisions to the registry in chunks of batch_size, oldest first.

        A chunk is dropped locally only after the registry accepted it; the
        first failure stops the flush and keeps the rest for the next attempt.

        Args:
            deadline: time.monotonic() value after which no further chunk is sent

        Returns:
            Number of entries delivered
        """
        with self._flush_lock:
            pending = self.audit_queue.peek()
            if not pending:
                return 0

            batches = chunked(pending, self.batch_size)
            delivered = 0
            for index, batch in enumerate(batches):
                timeout = self.call_timeout
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        self.last_flush_error = "shutdown deadline reached"
                        break
                    timeout = min(timeout, remaining)

                try:
                    self._bounded(
                        self.client.batch_log_access,
                        [entry.to_access_log_entry() for entry in batch],
                        timeout=timeout
                    )
                except Exception as e:
                    self.last_flush_error = f"{type(e).__name__}: {e}"
                    logger.log_flush(self.asset_key, "failed", {
                        "batch": f"{index + 1}/{len(batches)}",
                        "error": self.last_flush_error[:200]
                    })
                    break

                self.audit_queue.ack(len(batch))
                delivered += len(batch)
            else:
                self.last_flush_error = None

            logger.log_flush(self.asset_key, "success" if delivered == len(pending) else "partial", {
                "delivered": delivered,
                "batches": len(batches),
                "remaining": len(pending) - delivered
            })
            return delivered

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> CacheSnapshot:
        """Copy of the current snapshot."""
        with self._snapshot_lock:
            return copy.deepcopy(self._snapshot)

    def get_status(self):
        """Return current cache status for monitoring."""
        now = self._clock()
        with self._snapshot_lock:
            owner = self._snapshot.owner
            authorized_count = len(self._snapshot.authorized)
            last_sync = self._snapshot.last_sync
            stale = self._is_stale(now)
            delta_cursor = self._delta_cursor

        return {
            "asset_key": self.asset_key,
            "owner": owner,
            "authorized_count": authorized_count,
            "last_sync": last_sync,
            "cache_age_sec": now - last_sync if last_sync is not None else None,
            "stale": stale,
            "pending_logs": len(self.audit_queue),
            "delta_cursor": delta_cursor,
            "last_sync_error": self.last_sync_error,
            "last_flush_error": self.last_flush_error,
            "heartbeat": self.heartbeat.get_status()
        }


def _default_audit_queue() -> AuditQueue:
    if CACHE_SPOOL_PATH:
        return PersistentAuditQueue(CACHE_SPOOL_PATH)
    return AuditQueue()
