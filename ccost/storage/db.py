"""
Database connection management.

Provides the SQLite connection backing the usage cache.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

# Seconds a writer waits on another process's lock before giving up
BUSY_TIMEOUT_SECONDS = 5.0


class CacheStoreError(RuntimeError):
    """The cache database cannot be created or opened."""


class CacheWriteError(RuntimeError):
    """A cache transaction failed and was rolled back."""


def get_connection(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Create and return a SQLite connection to the usage cache.

    The database is put in WAL journal mode so readers in other processes
    keep a consistent snapshot while a write is in flight. Transactions are
    managed explicitly by the caller.

    Args:
        db_path: Path to SQLite database file; parent directories are created

    Returns:
        SQLite connection in autocommit mode

    Raises:
        CacheStoreError: If the directory or database cannot be created/opened
    """
    path = Path(db_path).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise CacheStoreError(f"Cannot create cache directory {path.parent}: {e}") from e

    try:
        conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
    except sqlite3.Error as e:
        raise CacheStoreError(f"Cannot open cache database {path}: {e}") from e

    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.Error as e:
        conn.close()
        raise CacheStoreError(f"Cannot open cache database {path}: {e}") from e

    logger.debug("Opened cache database %s", path)
    return conn
