"""
Migration Backup Module
=======================

Snapshots and restores the whole persisted store as an opaque, timestamped
artifact. Backups are byte-level copies of the SQLite file; they are taken
before any mutating step and are the last-resort recovery path when a
rollback cannot restore consistency.

Features:
- Sortable timestamped artifact names (db_backup_YYYYmmdd-HHMMSS-ffffff.db)
- Integrity check of every artifact by opening it with sqlite3
- Pre-restore safety backup of the current store
- Refuses to overwrite a store that is in use
"""

import logging
import os
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from ..errors import (
    ConflictError,
    CorruptionError,
    NotFoundError,
    SourceUnavailableError,
    StorageIOError,
)
from ..locking import MigrationLock, is_locked_by_other
from ..models import BackupArtifact
from ..store import Store
from ..utils import format_file_size

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "db_backup_"
BACKUP_SUFFIX = ".db"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S-%f"


class BackupManager:
    """
    Manages store backups for safe migration.

    The component performs destructive calls unconditionally; confirmation
    prompts belong to the caller.
    """

    def __init__(
        self,
        store: Store,
        backup_dir: Union[str, Path],
        lock_file: Optional[Union[str, Path]] = None,
    ):
        """
        Initialize backup manager.

        Args:
            store: Handle on the live store
            backup_dir: Managed directory for artifacts (created on demand)
            lock_file: Advisory lock taken while restoring
        """
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.lock_file = Path(lock_file) if lock_file else None

    def _artifact_name(self) -> str:
        return f"{BACKUP_PREFIX}{datetime.now().strftime(TIMESTAMP_FORMAT)}{BACKUP_SUFFIX}"

    def create_backup(self, output_dir: Optional[Union[str, Path]] = None) -> BackupArtifact:
        """
        Create a backup of the store.

        Args:
            output_dir: Write the artifact here instead of the managed directory

        Returns:
            BackupArtifact describing the new file

        Raises:
            SourceUnavailableError: The live store is missing or unreadable
            StorageIOError: The backup directory cannot be created or written
            CorruptionError: The written artifact is not a readable database
        """
        target_dir = Path(output_dir) if output_dir else self.backup_dir

        if not self.store.exists():
            raise SourceUnavailableError(
                f"Store not found: {self.store.db_path}", stage="backup"
            )

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(
                f"Failed to create backup directory {target_dir}: {e}", stage="backup"
            ) from e

        backup_path = target_dir / self._artifact_name()
        while backup_path.exists():
            backup_path = target_dir / self._artifact_name()

        logger.info(f"Creating backup: {backup_path.name}")

        try:
            source = open(self.store.db_path, "rb")
        except OSError as e:
            raise SourceUnavailableError(
                f"Failed to open source store {self.store.db_path}: {e}", stage="backup"
            ) from e

        try:
            with source, open(backup_path, "xb") as dest:
                shutil.copyfileobj(source, dest)
        except OSError as e:
            backup_path.unlink(missing_ok=True)
            raise StorageIOError(f"Failed to copy store to {backup_path}: {e}", stage="backup") from e

        try:
            self.verify_backup(backup_path)
        except CorruptionError:
            backup_path.unlink(missing_ok=True)
            raise

        artifact = BackupArtifact.from_path(backup_path)
        logger.info(f"Backup created: {backup_path} ({format_file_size(artifact.size_bytes)})")
        return artifact

    def verify_backup(self, backup_path: Union[str, Path]) -> None:
        """
        Check that an artifact opens as a SQLite database.

        Raises:
            CorruptionError: If the artifact cannot be queried
        """
        backup_path = Path(backup_path)
        try:
            # Read-only URI so the check never creates or modifies the file
            conn = sqlite3.connect(f"{backup_path.resolve().as_uri()}?mode=ro", uri=True)
            try:
                conn.execute("SELECT 1").fetchone()
                conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise CorruptionError(
                f"Backup integrity check failed for {backup_path}: {e}", stage="backup"
            ) from e

    def list_backups(self) -> List[BackupArtifact]:
        """
        List all available backups, oldest first.

        Returns:
            Artifacts in lexical (timestamp) order; empty if none exist
        """
        if not self.backup_dir.is_dir():
            return []

        return [
            BackupArtifact.from_path(path)
            for path in sorted(self.backup_dir.glob(f"*{BACKUP_SUFFIX}"))
            if path.is_file()
        ]

    def get_latest_backup(self) -> Optional[BackupArtifact]:
        """Get the most recent backup."""
        backups = self.list_backups()
        return backups[-1] if backups else None

    def _check_not_in_use(self) -> None:
        if self.lock_file and is_locked_by_other(self.lock_file):
            raise ConflictError(
                f"Store is in use by another process (lock file: {self.lock_file})",
                stage="restore",
            )
        if self.store.has_open_journal():
            raise ConflictError(
                f"Store has an open journal, a writer may still hold it: {self.store.db_path}",
                stage="restore",
            )

    def restore_backup(self, backup_path: Union[str, Path]) -> None:
        """
        Overwrite the live store with an artifact's contents.

        Destructive: the current store is replaced. A pre-restore backup of
        the current store is attempted first.

        Raises:
            NotFoundError: The artifact does not exist
            ConflictError: The live store is currently in use
            CorruptionError: The artifact fails its integrity check
            StorageIOError: The store cannot be written
        """
        backup_path = Path(backup_path)
        if not backup_path.is_file():
            raise NotFoundError(f"Backup file does not exist: {backup_path}", stage="restore")

        self._check_not_in_use()
        self.verify_backup(backup_path)

        lock = MigrationLock(self.lock_file, "restore") if self.lock_file else None
        if lock:
            lock.acquire()
        try:
            logger.info(f"Restoring from backup: {backup_path.name}")

            if self.store.exists():
                try:
                    pre_restore = self.create_backup()
                    logger.info(f"Pre-restore backup created: {pre_restore.path}")
                except (StorageIOError, CorruptionError) as e:
                    logger.warning(f"Failed to create pre-restore backup: {e}")

            db_path = self.store.db_path
            tmp_path = db_path.with_name(db_path.name + ".restore.tmp")
            try:
                db_path.parent.mkdir(parents=True, exist_ok=True)
                with open(backup_path, "rb") as source, open(tmp_path, "wb") as dest:
                    shutil.copyfileobj(source, dest)
                    dest.flush()
                    os.fsync(dest.fileno())
                os.replace(tmp_path, db_path)
            except OSError as e:
                tmp_path.unlink(missing_ok=True)
                raise StorageIOError(f"Failed to restore store file: {e}", stage="restore") from e

            logger.info(
                f"Store restored from {backup_path} "
                f"({format_file_size(self.store.db_path.stat().st_size)})"
            )
        finally:
            if lock:
                lock.release()

    def delete_backup(self, backup_path: Union[str, Path]) -> None:
        """
        Delete a specific backup.

        Raises:
            NotFoundError: The artifact does not exist
        """
        backup_path = Path(backup_path)
        if not backup_path.is_file():
            raise NotFoundError(f"Backup file does not exist: {backup_path}", stage="backup")

        try:
            backup_path.unlink()
        except OSError as e:
            raise StorageIOError(f"Failed to delete backup file: {e}", stage="backup") from e

        logger.info(f"Deleted backup: {backup_path.name}")
