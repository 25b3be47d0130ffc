"""
SQLite storage for the authorization registry.
Every registry mutation runs inside one IMMEDIATE transaction.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from .config import DB_PATH, ensure_db_directory


@contextmanager
def get_db(path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection in autocommit mode."""
    conn = sqlite3.connect(path or DB_PATH, isolation_level=None, timeout=30)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Cursor, None, None]:
    """Run a block as one all-or-nothing write transaction."""
    cursor = conn.cursor()
    cursor.execute("BEGIN IMMEDIATE")
    try:
        yield cursor
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


def init_db(path: str = None):
    """Initialize the database with required tables."""
    ensure_db_directory(path)
    with get_db(path) as conn:
        with transaction(conn) as cursor:
            # position is the asset's slot in the global asset-key sequence
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS assets (
                    asset_key TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    description TEXT NOT NULL,
                    initialized BOOLEAN NOT NULL DEFAULT TRUE,
                    position INTEGER NOT NULL UNIQUE
                )
            ''')

            # Entry slots are never deleted, only deactivated
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS authorizations (
                    asset_key TEXT NOT NULL,
                    account TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT '',
                    active BOOLEAN NOT NULL DEFAULT FALSE,
                    expires_at INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (asset_key, account)
                )
            ''')

            # Dense enumerable list + reverse index, always written together
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS authorization_list (
                    asset_key TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    account TEXT NOT NULL,
                    PRIMARY KEY (asset_key, position)
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS authorization_index (
                    asset_key TEXT NOT NULL,
                    account TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    PRIMARY KEY (asset_key, account)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS ledger_log (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    tx_id TEXT NOT NULL,
                    event TEXT NOT NULL,
                    asset_key TEXT,
                    account TEXT,
                    data TEXT NOT NULL,
                    ts INTEGER NOT NULL,
                    prev_hash TEXT NOT NULL,
                    record_hash TEXT NOT NULL
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_ledger_log_asset_seq ON ledger_log(asset_key, seq)')


def health_check(path: str = None):
    """Check database health."""
    try:
        with get_db(path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [table[0] for table in cursor.fetchall()]
            required_tables = ['assets', 'authorizations', 'authorization_list', 'authorization_index', 'ledger_log']
            return all(table in table_names for table in required_tables)
    except sqlite3.Error:
        return False
