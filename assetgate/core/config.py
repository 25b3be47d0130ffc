"""
Registry and cache configuration.
All settings come from environment variables (optionally loaded from a .env file).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Registry database path
DB_PATH = os.getenv("DB_PATH", "./data/registry.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# batch_log_access accepts at most this many entries per call
BATCH_LOG_CAP = 100
MAX_BATCH_LOG_SIZE = int(os.getenv("MAX_BATCH_LOG_SIZE", str(BATCH_LOG_CAP)))

# Reconciling access cache timers (seconds)
CACHE_SYNC_INTERVAL_SEC = int(os.getenv("CACHE_SYNC_INTERVAL_SEC", "300"))  # 5 minutes
CACHE_FLUSH_INTERVAL_SEC = int(os.getenv("CACHE_FLUSH_INTERVAL_SEC", "3600"))  # 1 hour
CACHE_MAX_AGE_SEC = int(os.getenv("CACHE_MAX_AGE_SEC", "3600"))  # 1 hour
CACHE_DELTA_POLL_SEC = float(os.getenv("CACHE_DELTA_POLL_SEC", "2"))
REGISTRY_CALL_TIMEOUT_SEC = float(os.getenv("REGISTRY_CALL_TIMEOUT_SEC", "10"))
CACHE_SHUTDOWN_TIMEOUT_SEC = float(os.getenv("CACHE_SHUTDOWN_TIMEOUT_SEC", "15"))
CACHE_SYNC_TIMEOUT_SEC = float(os.getenv("CACHE_SYNC_TIMEOUT_SEC", "30"))
CACHE_SPOOL_PATH = os.getenv("CACHE_SPOOL_PATH")  # unset = in-memory audit queue

REGISTRY_URL = os.getenv("REGISTRY_URL", "http://localhost:8000")

VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(path: str = None):
    """Ensure the database directory exists."""
    Path(path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_sync_interval():
    """Get full-sync interval in seconds."""
    return CACHE_SYNC_INTERVAL_SEC


def get_flush_interval():
    """Get audit flush interval in seconds."""
    return CACHE_FLUSH_INTERVAL_SEC


def get_max_cache_age():
    """Get the staleness bound after which the cache fails closed."""
    return CACHE_MAX_AGE_SEC


def get_batch_size():
    """Get the flush chunk size, never above the registry cap."""
    return min(MAX_BATCH_LOG_SIZE, BATCH_LOG_CAP)


def validate_cache_config(sync_interval=None, flush_interval=None, max_age=None, batch_size=None):
    """Validate cache configuration and return any issues."""
    sync_interval = CACHE_SYNC_INTERVAL_SEC if sync_interval is None else sync_interval
    flush_interval = CACHE_FLUSH_INTERVAL_SEC if flush_interval is None else flush_interval
    max_age = CACHE_MAX_AGE_SEC if max_age is None else max_age
    batch_size = MAX_BATCH_LOG_SIZE if batch_size is None else batch_size

    issues = []

    if sync_interval < 1:
        issues.append("CACHE_SYNC_INTERVAL_SEC must be >= 1")

    if flush_interval < 1:
        issues.append("CACHE_FLUSH_INTERVAL_SEC must be >= 1")

    if max_age < 1:
        issues.append("CACHE_MAX_AGE_SEC must be >= 1")

    if not 1 <= batch_size <= BATCH_LOG_CAP:
        issues.append(f"MAX_BATCH_LOG_SIZE must be between 1 and {BATCH_LOG_CAP}")

    if REGISTRY_CALL_TIMEOUT_SEC <= 0:
        issues.append("REGISTRY_CALL_TIMEOUT_SEC must be > 0")

    return issues
