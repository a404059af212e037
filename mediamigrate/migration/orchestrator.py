"""
Staged Migration Orchestrator
=============================

Runs the full media unification workflow:

1. Create backup of the store
2. Migrate legacy rows into the unified table
3. Copy legacy files into the unified directory
4. Verify the result

If any stage after the backup fails, the reverse path runs automatically:
file rollback, then schema rollback, and a restore from the backup when a
rollback step itself fails. Legacy file cleanup is never part of this flow.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import MigrationConfig
from ..errors import StageError, StorageIOError
from ..locking import MigrationLock
from ..models import BackupArtifact
from ..store import Store
from .backup import BackupManager
from .files import FileRelocator, RelocationLog
from .schema import SchemaMigrationResult, SchemaMigrator
from .verify import MigrationVerifier, VerificationReport

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Stages of a staged migration run."""
    BACKUP = "backup"
    SCHEMA = "schema"
    FILES = "files"
    VERIFY = "verify"
    ROLLBACK = "rollback"


@dataclass
class OrchestrationResult:
    """Result of a staged migration run."""
    ok: bool = False
    backup: Optional[BackupArtifact] = None
    schema: Optional[SchemaMigrationResult] = None
    relocation: Optional[RelocationLog] = None
    report: Optional[VerificationReport] = None
    stages: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class RollbackResult:
    """Result of a staged rollback."""
    backup: Optional[BackupArtifact] = None
    files_removed: int = 0
    schema_rolled_back: bool = False
    duration_seconds: float = 0.0


class MigrationOrchestrator:
    """
    Sequences backup, schema migration, file relocation and verification.

    Components can be passed in explicitly; otherwise they are built from
    the configuration.
    """

    def __init__(
        self,
        config: MigrationConfig,
        store: Optional[Store] = None,
        backups: Optional[BackupManager] = None,
        schema: Optional[SchemaMigrator] = None,
        files: Optional[FileRelocator] = None,
        verifier: Optional[MigrationVerifier] = None,
    ):
        self.config = config
        self.store = store or Store(config.db_path)
        self.backups = backups or BackupManager(self.store, config.backup_dir, lock_file=config.lock_file)
        self.schema = schema or SchemaMigrator(
            self.store, migration_name=config.migration_name, lock_file=config.lock_file
        )
        self.files = files or FileRelocator(
            config.uploads_dir, lock_file=config.lock_file, show_progress=config.show_progress
        )
        self.verifier = verifier or MigrationVerifier(
            self.store, sample_size=config.sample_size, migration_name=config.migration_name
        )

        # State tracking
        self.state_file = Path(config.state_file)
        self.state = self.load_state()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def load_state(self) -> Dict[str, Any]:
        """Load orchestration state from file."""
        if self.state_file.exists():
            try:
                with open(self.state_file, 'r') as f:
                    return json.load(f)
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable state file {self.state_file}: {e}")
        return {
            'phase': 'initial',
            'backup_path': None,
            'history': [],
            'errors': [],
        }

    def _save_state(self) -> None:
        self.state['updated_at'] = datetime.now().isoformat()
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.state_file, 'w') as f:
                json.dump(self.state, f, indent=2)
        except OSError as e:
            logger.warning(f"Could not persist migration state to {self.state_file}: {e}")

    def _record(self, stage: Stage, status: str, **details: Any) -> None:
        self.state['phase'] = f"{stage.value}:{status}"
        self.state['history'].append({
            'stage': stage.value,
            'status': status,
            'timestamp': datetime.now().isoformat(),
            **details,
        })
        self._save_state()

    def _record_error(self, stage: Stage, error: BaseException) -> None:
        self.state['errors'].append({
            'stage': stage.value,
            'error': str(error),
            'timestamp': datetime.now().isoformat(),
        })
        self._save_state()

    # ------------------------------------------------------------------
    # Forward
    # ------------------------------------------------------------------

    def run(self, skip_backup: bool = False) -> OrchestrationResult:
        """
        Run the staged migration.

        Args:
            skip_backup: Do not take a backup first (no last-resort restore)

        Returns:
            OrchestrationResult; ``ok`` is False when verification found
            mismatches (nothing is rolled back in that case)

        Raises:
            BusyError: Another migration holds the lock
            StageError: A stage failed; the reverse path has already run
        """
        start = time.time()
        result = OrchestrationResult()

        with MigrationLock(self.config.lock_file, "staging-migrate"):
            self.state['backup_path'] = None
            self.state['history'] = []
            self.state['started_at'] = datetime.now().isoformat()

            if skip_backup:
                logger.warning("Skipping backup step; no restore will be possible if rollback fails")
            else:
                logger.info("Phase 1: Creating store backup...")
                try:
                    result.backup = self.backups.create_backup()
                except Exception as e:
                    self._record_error(Stage.BACKUP, e)
                    logger.error(f"Backup failed, migration not started: {e}")
                    raise StageError(Stage.BACKUP.value, e) from e
                self.state['backup_path'] = str(result.backup.path)
                self._record(Stage.BACKUP, 'completed', path=str(result.backup.path))
                result.stages.append(Stage.BACKUP.value)

            stage = Stage.SCHEMA
            try:
                logger.info("Phase 2: Migrating schema...")
                result.schema = self.schema.migrate()
                self._record(stage, 'completed', rows=result.schema.rows_migrated,
                             skipped=result.schema.skipped)
                result.stages.append(stage.value)

                stage = Stage.FILES
                logger.info("Phase 3: Relocating files...")
                result.relocation = self.files.migrate()
                self._record(stage, 'completed', files=len(result.relocation.entries))
                result.stages.append(stage.value)

                stage = Stage.VERIFY
                logger.info("Phase 4: Verifying migration...")
                result.report = self.verifier.verify()
                self._record(stage, 'passed' if result.report.ok else 'mismatch',
                             unified_count=result.report.unified_count)
                result.stages.append(stage.value)

            except Exception as e:
                self._record_error(stage, e)
                logger.error(f"Stage '{stage.value}' failed: {e}")
                raise self._reverse(stage, e, result.backup) from e

        result.ok = result.report.ok
        result.duration_seconds = time.time() - start
        if result.ok:
            logger.info(f"Staged migration completed successfully in {result.duration_seconds:.2f}s")
        else:
            logger.warning(
                "Migration completed but verification reported mismatches; "
                "review the report before deciding to roll back"
            )
        return result

    def _reverse(
        self, stage: Stage, cause: BaseException, backup: Optional[BackupArtifact]
    ) -> StageError:
        """Undo files and schema; restore from the backup if that fails."""
        logger.info("Running automatic rollback...")
        errors = []

        try:
            self.files.rollback()
        except Exception as e:
            logger.error(f"File rollback failed: {e}")
            errors.append(f"files: {e}")

        try:
            self.schema.rollback()
        except Exception as e:
            logger.error(f"Schema rollback failed: {e}")
            errors.append(f"schema: {e}")

        if not errors:
            self._record(Stage.ROLLBACK, 'completed', after=stage.value)
            logger.info("Automatic rollback completed; store and uploads are back to their original state")
            return StageError(stage.value, cause, rolled_back=True)

        restored_from = None
        if backup is not None:
            logger.warning(f"Rollback incomplete, restoring store from backup {backup.path}")
            try:
                self.backups.restore_backup(backup.path)
                restored_from = str(backup.path)
                self._record(Stage.ROLLBACK, 'restored', path=restored_from)
            except Exception as e:
                logger.error(f"Backup restore failed: {e}")
                errors.append(f"restore: {e}")
        else:
            logger.error("Rollback incomplete and no backup was taken; manual recovery required")

        if restored_from is None:
            self._record(Stage.ROLLBACK, 'failed', errors=errors)
        return StageError(stage.value, cause, restored_from=restored_from, rollback_errors=errors)

    # ------------------------------------------------------------------
    # Reverse
    # ------------------------------------------------------------------

    def rollback(self, skip_backup: bool = False) -> RollbackResult:
        """
        Undo a completed (or partial) migration.

        Takes a backup first unless skipped, then rolls back files and
        schema. If either fails, the store is restored from that backup.

        Raises:
            BusyError: Another migration holds the lock
            StageError: Rollback failed; ``restored_from`` tells whether the
                store was restored
        """
        start = time.time()
        result = RollbackResult()

        with MigrationLock(self.config.lock_file, "staging-rollback"):
            if not skip_backup:
                logger.info("Step 1: Creating store backup before rollback...")
                try:
                    result.backup = self.backups.create_backup()
                except Exception as e:
                    self._record_error(Stage.BACKUP, e)
                    raise StageError(Stage.BACKUP.value, e) from e
                self._record(Stage.BACKUP, 'completed', path=str(result.backup.path))

            logger.info("Step 2: Rolling back migration...")
            try:
                result.files_removed = self.files.rollback()
                result.schema_rolled_back = self.schema.rollback()
            except Exception as e:
                self._record_error(Stage.ROLLBACK, e)
                logger.error(f"Rollback failed: {e}")
                restored_from = None
                rollback_errors = [str(e)]
                if result.backup is not None:
                    try:
                        self.backups.restore_backup(result.backup.path)
                        restored_from = str(result.backup.path)
                        logger.info(f"Store restored from backup {restored_from}")
                    except Exception as restore_error:
                        logger.error(f"Backup restore also failed: {restore_error}")
                        rollback_errors.append(f"restore: {restore_error}")
                raise StageError(
                    Stage.ROLLBACK.value, e, restored_from=restored_from, rollback_errors=rollback_errors
                ) from e

            self._record(Stage.ROLLBACK, 'completed', files_removed=result.files_removed)

        self._verify_rollback()
        result.duration_seconds = time.time() - start
        logger.info("Media unification migration rollback completed successfully!")
        return result

    def _verify_rollback(self) -> None:
        try:
            status = self.schema.status()
        except StorageIOError as e:
            logger.warning(f"Rollback verification warning: {e}")
            return
        if status['unified_table'] or status['completed']:
            logger.warning("Rollback verification warning: media table or marker still present")
        else:
            logger.info("Rollback verification completed successfully")
