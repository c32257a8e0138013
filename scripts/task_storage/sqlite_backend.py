"""SQLite database storage backend for task lists.

This module provides a storage backend that keeps each principal's encoded
task list in one row of a SQLite table. Every put is a single upsert inside
an IMMEDIATE transaction, and WAL mode is used for reliability.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from task_storage.codec import decode_task_list, encode_task_list
from task_storage.protocol import Principal, TaskList

logger = logging.getLogger(__name__)

# SQL schema for the SQLite database
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS task_lists (
    principal BLOB PRIMARY KEY,
    data BLOB NOT NULL
);
"""


class SQLiteStorageBackend:
    """SQLite database storage backend for task lists.

    Values are stored with the same binary encoding the stable backend uses,
    keyed by the principal's raw bytes.

    Attributes:
        db_path: The Path to the SQLite database file.

    Example:
        backend = SQLiteStorageBackend(Path("/srv/tasks/tasks.db"))
        backend.put(principal, task_list)
        task_list = backend.get(principal)
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the SQLite storage backend.

        Creates the database file and schema if they don't exist.

        Args:
            db_path: The path to the SQLite database file.

        Raises:
            sqlite3.Error: If there's an error initializing the database.
        """
        self.db_path = db_path
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        """Create and configure a database connection.

        Enables WAL mode and sets IMMEDIATE isolation level for transaction
        control.

        Returns:
            A configured sqlite3.Connection object.

        Raises:
            sqlite3.Error: If there's an error connecting to the database.
        """
        # Ensure parent directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            isolation_level="IMMEDIATE",
            check_same_thread=False,  # Safe: each operation uses fresh connection
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def get(self, principal: Principal) -> TaskList | None:
        """Load the task list for a principal.

        Returns:
            The decoded TaskList, or None if no row exists.

        Raises:
            CodecError: If the stored blob cannot be decoded.
            sqlite3.Error: If there's an error querying the database.
        """
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT data FROM task_lists WHERE principal = ?",
                (principal.raw,),
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return decode_task_list(row[0])

    def put(self, principal: Principal, task_list: TaskList) -> None:
        """Insert or replace the task list for a principal in one transaction.

        Raises:
            sqlite3.Error: If there's an error during the transaction.
        """
        data = encode_task_list(task_list)
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO task_lists (principal, data) VALUES (?, ?)
                ON CONFLICT(principal) DO UPDATE SET data = excluded.data
                """,
                (principal.raw, data),
            )
            conn.commit()
        except sqlite3.Error:
            try:
                conn.rollback()
            except sqlite3.Error:
                pass  # Connection may be in bad state after commit failure
            raise
        finally:
            conn.close()
        logger.debug("Stored %d tasks for %s (%d bytes)", len(task_list), principal, len(data))

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    def principals(self) -> list[Principal]:
        """Return every stored principal, ordered by raw bytes."""
        conn = self._connect()
        try:
            rows = conn.execute("SELECT principal FROM task_lists ORDER BY principal").fetchall()
        finally:
            conn.close()
        return [Principal(bytes(row[0])) for row in rows]
