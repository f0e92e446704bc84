"""
Database manager for DrunkChat.

Handles SQLite database initialization, schema management, and query execution.
"""

import sqlite3
import logging
import os
import fcntl
from pathlib import Path
from typing import Optional, Any, List
from contextlib import contextmanager

from ..utils.paths import get_paths


logger = logging.getLogger('drunk_chat.database')


class Database:
    """
    Database manager for DrunkChat.
    Handles schema initialization and query execution.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize database manager.

        Args:
            db_path: Path to database file (default: uses paths.database_path).
                     ':memory:' opens a private in-memory database.
        """
        if db_path is None:
            paths = get_paths()
            db_path = paths.database_path

        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None
        self._lock_file = None
        self._lock_fd = None
        self._transaction_depth = 0

        if str(self.db_path) != ':memory:':
            self.db_path = Path(self.db_path)
            # Ensure parent directory exists with secure permissions
            self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        logger.info(f"Database manager initialized (path: {self.db_path})")

    def acquire_lock(self):
        """
        Acquire exclusive lock on database file.

        Raises:
            RuntimeError: If another instance is already running
        """
        lock_path = str(self.db_path) + '.lock'

        try:
            self._lock_fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o600)

            # Try to acquire exclusive lock (non-blocking)
            fcntl.flock(self._lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)

            # Write PID to lock file
            os.ftruncate(self._lock_fd, 0)
            os.write(self._lock_fd, str(os.getpid()).encode())

            self._lock_file = lock_path
            logger.info(f"Database lock acquired: {lock_path}")

        except BlockingIOError:
            # Lock is held by another process
            if self._lock_fd is not None:
                os.close(self._lock_fd)
                self._lock_fd = None

            try:
                with open(lock_path, 'r') as f:
                    pid = f.read().strip()
                error_msg = f"Another instance is already running (PID: {pid})"
            except OSError:
                error_msg = "Another instance is already running"

            logger.error(error_msg)
            raise RuntimeError(error_msg)

        except Exception as e:
            if self._lock_fd is not None:
                os.close(self._lock_fd)
                self._lock_fd = None
            logger.error(f"Failed to acquire database lock: {e}")
            raise

    def release_lock(self):
        """Release database lock."""
        if self._lock_fd is not None:
            try:
                fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
                os.close(self._lock_fd)
                self._lock_fd = None

                if self._lock_file and os.path.exists(self._lock_file):
                    os.remove(self._lock_file)

                logger.info("Database lock released")
            except OSError as e:
                logger.error(f"Error releasing lock: {e}")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False  # Allow multi-threaded access
            )
            # Enable foreign keys
            self._connection.execute("PRAGMA foreign_keys = ON")
            # Use Row factory for dict-like access
            self._connection.row_factory = sqlite3.Row

        return self._connection

    def close(self):
        """Close database connection and release lock."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            logger.debug("Database connection closed")

        self.release_lock()

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions.

        Nested blocks join the outermost transaction: only the outermost block
        commits, and an exception anywhere rolls back the whole unit.

        Usage:
            with db.transaction():
                db.execute("INSERT INTO ...")
                db.execute("UPDATE ...")
        """
        conn = self.connection
        self._transaction_depth += 1
        outermost = self._transaction_depth == 1
        try:
            yield conn
            if outermost:
                conn.commit()
        except Exception as e:
            if outermost:
                conn.rollback()
                logger.error(f"Transaction rolled back: {e}")
            raise
        finally:
            self._transaction_depth -= 1

    @property
    def in_transaction(self) -> bool:
        return self._transaction_depth > 0

    def execute(self, query: str, params: tuple = ()) -> sqlite3.Cursor:
        return self.connection.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        return self.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[sqlite3.Row]:
        return self.execute(query, params).fetchall()

    def commit(self):
        """Commit pending writes unless a transaction block owns them."""
        if not self.in_transaction:
            self.connection.commit()

    # =========================================================================
    # Schema
    # =========================================================================

    def initialize(self):
        """
        Create the tables on an empty database and bring older ones to SCHEMA_VERSION.

        schema.sql only uses CREATE ... IF NOT EXISTS, so applying it again is harmless.
        """
        version = self.schema_version()
        if version >= self.SCHEMA_VERSION:
            logger.info(f"Message database schema up to date (v{version})")
            return

        schema_file = Path(__file__).parent / 'schema.sql'
        logger.info(f"Applying {schema_file.name}: v{version} -> v{self.SCHEMA_VERSION}")
        schema_sql = schema_file.read_text(encoding='utf-8')
        with self.transaction() as conn:
            conn.executescript(schema_sql)

        if self.schema_version() != self.SCHEMA_VERSION:
            logger.warning(f"{schema_file.name} did not record schema version {self.SCHEMA_VERSION}")

    def schema_version(self) -> int:
        """Version stored in the _meta table (0 for an empty database)."""
        has_meta = self.fetchone("SELECT name FROM sqlite_master WHERE type='table' AND name='_meta'")
        if has_meta is None:
            return 0
        row = self.fetchone("SELECT int_val FROM _meta WHERE name = 'schema_version'")
        return row['int_val'] if row else 0

    # =========================================================================
    # Settings table
    # =========================================================================

    def get_setting(self, key: str, default: Any = None) -> Any:
        row = self.fetchone("SELECT value FROM settings WHERE key = ?", (key,))
        return row['value'] if row else default

    def set_setting(self, key: str, value: Any):
        """Store a global setting as a string."""
        self.execute("INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, str(value)))
        self.commit()
