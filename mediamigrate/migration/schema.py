"""
Media Unification Schema Migration
==================================

Creates the unified ``media`` table, copies every legacy image and document
row into it tagged with its origin type, and writes the completion marker.

Steps run in order inside one SQLite transaction:

    1. CREATE_UNIFIED_TABLE  create ``media`` if absent
    2. MIGRATE_IMAGES        images -> media(type=image)
    3. MIGRATE_DOCUMENTS     docs   -> media(type=document)
    4. MARK_COMPLETED        write the migration state marker

A failure in any step aborts the whole transaction: no unified rows and no
marker survive, so the next ``migrate()`` starts from a clean slate. The
marker row is the only commit point; the presence of the table alone never
counts as "migrated".
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..errors import DuplicateKeyError, MigrationError, StorageIOError
from ..locking import MigrationLock
from ..models import (
    LEGACY_TABLES,
    LegacyRecord,
    MediaRecord,
    MediaType,
    MigrationStateRecord,
    MigrationStepResult,
)
from ..store import MEDIA_TABLE, MIGRATION_TABLE, Store
from ..config import MIGRATION_NAME

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 100

MEDIA_COLUMNS = [
    "id", "legacy_id", "created_at", "updated_at", "deleted_at",
    "file_name", "checksum", "type", "width", "height",
]

_MEDIA_TYPES_SQL = ", ".join(f"'{t.value}'" for t in MediaType)

CREATE_MEDIA_TABLE_SQL = f"""
    CREATE TABLE IF NOT EXISTS {MEDIA_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        legacy_id INTEGER,
        created_at DATETIME,
        updated_at DATETIME,
        deleted_at DATETIME,
        file_name TEXT NOT NULL UNIQUE,
        checksum BLOB,
        type VARCHAR(20) NOT NULL DEFAULT 'document' CHECK (type IN ({_MEDIA_TYPES_SQL})),
        width INTEGER DEFAULT NULL,
        height INTEGER DEFAULT NULL,
        UNIQUE (type, legacy_id)
    )
"""

CREATE_MIGRATION_TABLE_SQL = f"""
    CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE} (
        name TEXT PRIMARY KEY,
        completed_at TEXT NOT NULL
    )
"""


class MigrationStep(IntEnum):
    """Numbered steps, used in logs and error context."""

    CREATE_UNIFIED_TABLE = 1
    MIGRATE_IMAGES = 2
    MIGRATE_DOCUMENTS = 3
    MARK_COMPLETED = 4

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").title()


@dataclass
class SchemaMigrationResult:
    """Result of a schema migration run."""

    skipped: bool
    steps: List[MigrationStepResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def rows_migrated(self) -> int:
        return sum(s.rows for s in self.steps)


def checksum_bytes(value: Any) -> Optional[bytes]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.encode()
    return bytes(value)


def read_legacy_records(conn: sqlite3.Connection, media_type: MediaType) -> List[LegacyRecord]:
    """All rows of a legacy table, soft-deleted ones included, by id."""
    table = LEGACY_TABLES[media_type]
    if not Store.has_table(conn, table):
        return []
    rows = conn.execute(
        f"SELECT id, file_name, checksum, created_at, updated_at, deleted_at "
        f"FROM {table} ORDER BY id"
    ).fetchall()
    return [
        LegacyRecord(
            id=row["id"],
            file_name=row["file_name"],
            checksum=checksum_bytes(row["checksum"]),
            media_type=media_type,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )
        for row in rows
    ]


def insert_media(conn: sqlite3.Connection, media: MediaRecord) -> int:
    cursor = conn.execute(
        f"""
        INSERT INTO {MEDIA_TABLE}
            (legacy_id, file_name, checksum, type, width, height, created_at, updated_at, deleted_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            media.legacy_id,
            media.file_name,
            media.checksum,
            media.type.value,
            media.width,
            media.height,
            media.created_at,
            media.updated_at,
            media.deleted_at,
        ),
    )
    return cursor.lastrowid


class SchemaMigrator:
    """
    Migrates legacy image/document rows into the unified media table.

    ``migrate()`` is a no-op once the completion marker exists, which makes
    re-running safe. ``rollback()`` is idempotent.
    """

    def __init__(
        self,
        store: Store,
        migration_name: str = MIGRATION_NAME,
        lock_file: Optional[Union[str, Path]] = None,
    ):
        self.store = store
        self.migration_name = migration_name
        self.lock_file = Path(lock_file) if lock_file else None

    def _lock(self, operation: str) -> Optional[MigrationLock]:
        return MigrationLock(self.lock_file, operation) if self.lock_file else None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _read_state(self, conn: sqlite3.Connection) -> Optional[MigrationStateRecord]:
        if not Store.has_table(conn, MIGRATION_TABLE):
            return None
        row = conn.execute(
            f"SELECT name, completed_at FROM {MIGRATION_TABLE} WHERE name = ?",
            (self.migration_name,),
        ).fetchone()
        if row is None:
            return None
        return MigrationStateRecord(name=row["name"], completed_at=row["completed_at"])

    def get_state(self) -> Optional[MigrationStateRecord]:
        """The completion marker, or None if the migration has not completed."""
        if not self.store.exists():
            return None
        try:
            with self.store.connect(read_only=True) as conn:
                return self._read_state(conn)
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to read migration state: {e}", stage="schema") from e

    def is_completed(self) -> bool:
        return self.get_state() is not None

    def status(self) -> Dict[str, Any]:
        """Marker and table diagnostics for display."""
        self.store.require(stage="schema")
        try:
            with self.store.connect(read_only=True) as conn:
                state = self._read_state(conn)
                return {
                    "migration_name": self.migration_name,
                    "completed": state is not None,
                    "completed_at": state.completed_at if state else None,
                    "unified_table": Store.has_table(conn, MEDIA_TABLE),
                    "unified_count": Store.count(conn, MEDIA_TABLE),
                    "legacy_image_count": Store.count(conn, LEGACY_TABLES[MediaType.IMAGE]),
                    "legacy_doc_count": Store.count(conn, LEGACY_TABLES[MediaType.DOCUMENT]),
                }
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to read migration status: {e}", stage="schema") from e

    # ------------------------------------------------------------------
    # Forward
    # ------------------------------------------------------------------

    def migrate(self) -> SchemaMigrationResult:
        """
        Run steps 1-4 atomically.

        Returns:
            SchemaMigrationResult, with ``skipped=True`` if already completed

        Raises:
            SourceUnavailableError: The store file does not exist
            DuplicateKeyError: A file name collides across types or with an
                existing unified row (nothing is written)
            StorageIOError: The store cannot be read or written
            MigrationError: The existing unified table has another structure
        """
        lock = self._lock("schema-migrate")
        if lock:
            lock.acquire()
        try:
            return self._migrate()
        finally:
            if lock:
                lock.release()

    def _migrate(self) -> SchemaMigrationResult:
        start = time.time()
        self.store.require(stage="schema")

        if self.is_completed():
            logger.info("Media unification migration has already been completed. Skipping.")
            return SchemaMigrationResult(skipped=True)

        logger.info("Starting media unification migration...")
        result = SchemaMigrationResult(skipped=False)
        current = MigrationStep.CREATE_UNIFIED_TABLE

        try:
            with self.store.transaction() as conn:
                current = MigrationStep.CREATE_UNIFIED_TABLE
                result.steps.append(self._create_unified_table(conn))

                images = read_legacy_records(conn, MediaType.IMAGE)
                docs = read_legacy_records(conn, MediaType.DOCUMENT)

                current = MigrationStep.MIGRATE_IMAGES
                self._check_collisions(conn, images, docs)
                result.steps.append(self._migrate_records(conn, current, images))

                current = MigrationStep.MIGRATE_DOCUMENTS
                result.steps.append(self._migrate_records(conn, current, docs))

                current = MigrationStep.MARK_COMPLETED
                result.steps.append(self._mark_completed(conn))

        except MigrationError as e:
            if e.step is None:
                e.step = int(current)
            e.stage = e.stage or "schema"
            logger.error(f"Step {int(current)} ({current.label}) failed, migration rolled back: {e.message}")
            raise
        except sqlite3.IntegrityError as e:
            logger.error(f"Step {int(current)} ({current.label}) failed, migration rolled back: {e}")
            raise DuplicateKeyError(
                f"Integrity error during {current.label.lower()}: {e}",
                stage="schema",
                step=int(current),
            ) from e
        except sqlite3.Error as e:
            logger.error(f"Step {int(current)} ({current.label}) failed, migration rolled back: {e}")
            raise StorageIOError(
                f"Store error during {current.label.lower()}: {e}",
                stage="schema",
                step=int(current),
            ) from e

        result.duration_seconds = time.time() - start
        logger.info(
            f"Media unification migration completed successfully! "
            f"({result.rows_migrated} records in {result.duration_seconds:.2f}s)"
        )
        return result

    def _create_unified_table(self, conn: sqlite3.Connection) -> MigrationStepResult:
        step = MigrationStep.CREATE_UNIFIED_TABLE
        logger.info(f"Step {int(step)}: Creating media table...")

        existed = Store.has_table(conn, MEDIA_TABLE)
        if existed:
            columns = Store.table_columns(conn, MEDIA_TABLE)
            if sorted(columns) != sorted(MEDIA_COLUMNS):
                raise MigrationError(
                    f"Existing {MEDIA_TABLE} table has unexpected columns: {columns}",
                    stage="schema",
                    step=int(step),
                )
            logger.info("Media table already present")
        else:
            conn.execute(CREATE_MEDIA_TABLE_SQL)
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_media_type ON {MEDIA_TABLE}(type)")
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_media_checksum ON {MEDIA_TABLE}(checksum)")
            logger.info("Media table created successfully")

        return MigrationStepResult(step=int(step), name=step.name, details={"existed": existed})

    def _check_collisions(
        self,
        conn: sqlite3.Connection,
        images: List[LegacyRecord],
        docs: List[LegacyRecord],
    ) -> None:
        """File names must be unique across both legacy sets and existing unified rows."""
        image_names = {r.file_name for r in images}
        doc_names = {r.file_name for r in docs}

        cross_type = image_names & doc_names
        if cross_type:
            raise DuplicateKeyError.for_names(
                cross_type, stage="schema", step=int(MigrationStep.MIGRATE_IMAGES)
            )

        existing = {
            row["file_name"] for row in conn.execute(f"SELECT file_name FROM {MEDIA_TABLE}")
        }
        already_unified = existing & (image_names | doc_names)
        if already_unified:
            raise DuplicateKeyError.for_names(
                already_unified, stage="schema", step=int(MigrationStep.MIGRATE_IMAGES)
            )

    def _migrate_records(
        self,
        conn: sqlite3.Connection,
        step: MigrationStep,
        records: List[LegacyRecord],
    ) -> MigrationStepResult:
        label = "images" if step == MigrationStep.MIGRATE_IMAGES else "documents"
        logger.info(f"Step {int(step)}: Migrating {label} data...")
        logger.info(f"Found {len(records)} {label} to migrate")

        for i, record in enumerate(records):
            try:
                insert_media(conn, MediaRecord.from_legacy(record))
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(
                    f"Failed to migrate {record.media_type.value} {record.file_name}: {e}",
                    file_names=[record.file_name],
                    stage="schema",
                    step=int(step),
                ) from e

            if (i + 1) % PROGRESS_EVERY == 0 or i == len(records) - 1:
                logger.info(f"Migrated {i + 1}/{len(records)} {label}")

        return MigrationStepResult(step=int(step), name=step.name, rows=len(records))

    def _mark_completed(self, conn: sqlite3.Connection) -> MigrationStepResult:
        step = MigrationStep.MARK_COMPLETED
        logger.info(f"Step {int(step)}: Marking migration as completed...")
        conn.execute(CREATE_MIGRATION_TABLE_SQL)
        completed_at = datetime.now(timezone.utc).isoformat()
        conn.execute(
            f"INSERT OR REPLACE INTO {MIGRATION_TABLE} (name, completed_at) VALUES (?, ?)",
            (self.migration_name, completed_at),
        )
        return MigrationStepResult(
            step=int(step), name=step.name, details={"completed_at": completed_at}
        )

    # ------------------------------------------------------------------
    # Reverse
    # ------------------------------------------------------------------

    def rollback(self) -> bool:
        """
        Drop the unified table and delete the completion marker.

        Legacy tables are never touched. Safe to call repeatedly.

        Returns:
            True if anything was removed, False if there was nothing to undo

        Raises:
            SourceUnavailableError: The store file does not exist
            StorageIOError: On an unrecoverable store error
        """
        lock = self._lock("schema-rollback")
        if lock:
            lock.acquire()
        try:
            self.store.require(stage="schema-rollback")
            logger.info("Starting media unification migration rollback...")
            with self.store.transaction() as conn:
                had_table = Store.has_table(conn, MEDIA_TABLE)
                had_marker = self._read_state(conn) is not None

                if not had_table and not had_marker:
                    logger.info("Media unification migration has not been run. Nothing to rollback.")
                    return False

                logger.info("Step 1: Dropping media table...")
                conn.execute(f"DROP TABLE IF EXISTS {MEDIA_TABLE}")

                logger.info("Step 2: Removing migration completion marker...")
                if Store.has_table(conn, MIGRATION_TABLE):
                    conn.execute(
                        f"DELETE FROM {MIGRATION_TABLE} WHERE name = ?", (self.migration_name,)
                    )
        except sqlite3.Error as e:
            raise StorageIOError(f"Rollback failed: {e}", stage="schema-rollback") from e
        finally:
            if lock:
                lock.release()

        logger.info("Media unification migration rollback completed successfully!")
        return True
