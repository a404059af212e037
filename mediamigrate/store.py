"""
Store Handle
============

Explicit handle on one SQLite store file. Components receive a ``Store`` in
their constructor instead of reaching for a process-wide connection, so
several isolated stores can be used side by side (tests do this).
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

from .errors import SourceUnavailableError, StorageIOError
from .models import LEGACY_TABLES, MediaType

logger = logging.getLogger(__name__)

MEDIA_TABLE = "media"
MIGRATION_TABLE = "migration_records"

_LEGACY_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS {table} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at DATETIME,
        updated_at DATETIME,
        deleted_at DATETIME,
        file_name TEXT NOT NULL UNIQUE,
        checksum BLOB
    )
"""


class Store:
    """Handle on a SQLite store file."""

    def __init__(self, db_path: Union[str, Path], timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"Store({str(self.db_path)!r})"

    def exists(self) -> bool:
        return self.db_path.is_file()

    def require(self, stage: Optional[str] = None) -> None:
        """Raise SourceUnavailableError unless the store file exists."""
        if not self.exists():
            raise SourceUnavailableError(f"Store not found: {self.db_path}", stage=stage)

    @contextmanager
    def connect(self, read_only: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Open a connection in autocommit mode.

        Transactions are started explicitly (see ``transaction``) so that
        DDL and DML can share one atomic unit. A ``read_only`` connection
        never creates the store file and rejects writes.
        """
        if read_only:
            self.require()
        try:
            if read_only:
                conn = sqlite3.connect(
                    f"{self.db_path.resolve().as_uri()}?mode=ro",
                    uri=True, timeout=self.timeout, isolation_level=None,
                )
            else:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(
                    str(self.db_path), timeout=self.timeout, isolation_level=None
                )
        except (OSError, sqlite3.Error) as e:
            raise StorageIOError(f"Cannot open store {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block in one ``BEGIN IMMEDIATE`` transaction."""
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                # SQLite may already have aborted the transaction itself
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    @staticmethod
    def has_table(conn: sqlite3.Connection, table: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table,),
        ).fetchone()
        return row is not None

    @staticmethod
    def table_columns(conn: sqlite3.Connection, table: str) -> List[str]:
        return [row["name"] for row in conn.execute(f"PRAGMA table_info({table})")]

    @classmethod
    def count(cls, conn: sqlite3.Connection, table: str) -> int:
        """Row count of a table, 0 when the table does not exist."""
        if not cls.has_table(conn, table):
            return 0
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def ensure_legacy_tables(self) -> None:
        """Create the legacy ``images`` and ``docs`` tables if absent."""
        with self.connect() as conn:
            for table in LEGACY_TABLES.values():
                conn.execute(_LEGACY_TABLE_SQL.format(table=table))
        logger.debug(f"Legacy tables ensured in {self.db_path}")

    def insert_legacy(
        self,
        media_type: MediaType,
        file_name: str,
        checksum: Optional[bytes],
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
        deleted_at: Optional[str] = None,
    ) -> int:
        """Insert a legacy row and return its id."""
        table = LEGACY_TABLES[media_type]
        with self.connect() as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO {table} (file_name, checksum, created_at, updated_at, deleted_at)
                VALUES (?, ?, COALESCE(?, CURRENT_TIMESTAMP), COALESCE(?, CURRENT_TIMESTAMP), ?)
                """,
                (file_name, checksum, created_at, updated_at, deleted_at),
            )
            return cursor.lastrowid

    def has_open_journal(self) -> bool:
        """True when a SQLite rollback journal or WAL file sits next to the store."""
        for suffix in ("-journal", "-wal"):
            if Path(f"{self.db_path}{suffix}").exists():
                return True
        return False
