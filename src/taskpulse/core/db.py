# src/taskpulse/core/db.py

"""
Shared SQLite plumbing for the stores.

Every store method opens its own short-lived connection (thread-safe: the
server calls stores from worker threads via asyncio.to_thread). Connections
run in autocommit mode; multi-statement writes go through `_transaction()`,
which takes the write lock up front with BEGIN IMMEDIATE.

Any sqlite3.Error is re-raised as PersistenceError.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Iterator
from pathlib import Path

from .errors import PersistenceError

logger = logging.getLogger(__name__)

USERS_DDL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL,
    points INTEGER NOT NULL DEFAULT 0,
    streak INTEGER NOT NULL DEFAULT 0,
    last_completion_at REAL
)
"""


class SQLiteStore:
    def __init__(self, db_path: str | Path, *, timeout: float = 5.0) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = float(timeout)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    def _get_conn(self) -> sqlite3.Connection:
        # timeout bounds how long a call waits on a locked database.
        conn = sqlite3.connect(str(self._db_path), timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open database {self._db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing block: commits on normal exit, rolls back on any exception."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @staticmethod
    def _add_missing_columns(
        cur: sqlite3.Cursor, table: str, columns: list[tuple[str, str]]
    ) -> None:
        """Safe migrations: add columns an older database does not have yet."""
        cur.execute(f"PRAGMA table_info({table})")
        existing = {row["name"] for row in cur.fetchall()}
        for name, decl in columns:
            if name in existing:
                continue
            cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
            logger.info("DB migration: added column %s.%s", table, name)
