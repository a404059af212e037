"""
File Relocation Module
======================

Copies stored files from the legacy ``uploads/images`` and ``uploads/docs``
directories into the unified ``uploads/media`` directory.

Features:
- Relocation log entry written before each copy (``uploads/.relocation_log.json``
  plus an fsynced ``.journal`` compacted at the start and end of a run)
- SHA-256 comparison of every source/destination pair
- Rollback only deletes destinations the relocator created
- Legacy files are left in place until an explicit, irreversible cleanup
"""

import json
import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from tqdm import tqdm

from ..errors import (
    CorruptionError,
    DuplicateKeyError,
    MigrationError,
    NotFoundError,
    StorageIOError,
)
from ..locking import MigrationLock
from ..models import LEGACY_DIRS, FileRelocationLogEntry, MediaType
from ..utils import compute_checksum

logger = logging.getLogger(__name__)

MEDIA_DIR_NAME = "media"
RELOCATION_LOG_NAME = ".relocation_log.json"
PROGRESS_EVERY = 100


class RelocationStatus(str, Enum):
    """Lifecycle of a relocation log."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLEANED_UP = "cleaned_up"


@dataclass
class RelocationLog:
    """
    Persistent record of a file relocation run.

    Stored as a JSON snapshot plus an append-only journal beside it. Each
    entry change appends one fsynced journal line; ``save`` compacts the
    journal into the snapshot. ``load`` replays the journal over the snapshot,
    so an interrupted run can be rolled back or resumed.
    """
    status: RelocationStatus = RelocationStatus.IN_PROGRESS
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    entries: List[FileRelocationLogEntry] = field(default_factory=list)
    _index: Dict[str, FileRelocationLogEntry] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self):
        self._index = {e.file_name: e for e in self.entries}

    def find(self, file_name: str) -> Optional[FileRelocationLogEntry]:
        if len(self._index) != len(self.entries):
            self._index = {e.file_name: e for e in self.entries}
        return self._index.get(file_name)

    def add(self, entry: FileRelocationLogEntry) -> None:
        self.entries.append(entry)
        self._index[entry.file_name] = entry

    @property
    def moved_count(self) -> int:
        return sum(1 for e in self.entries if e.moved)

    @staticmethod
    def journal_path(filepath: Path) -> Path:
        return filepath.with_name(filepath.name + ".journal")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'status': self.status.value,
            'started_at': self.started_at,
            'updated_at': self.updated_at,
            'completed_at': self.completed_at,
            'entries': [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RelocationLog':
        """Create from dictionary."""
        return cls(
            status=RelocationStatus(data.get('status', RelocationStatus.IN_PROGRESS.value)),
            started_at=data.get('started_at'),
            updated_at=data.get('updated_at'),
            completed_at=data.get('completed_at'),
            entries=[FileRelocationLogEntry.from_dict(e) for e in data.get('entries', [])],
        )

    def record(self, entry: FileRelocationLogEntry, filepath: Path) -> None:
        """Append the current state of one entry to the journal and fsync it."""
        try:
            with open(self.journal_path(filepath), 'a') as f:
                f.write(json.dumps(entry.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StorageIOError(
                f"Failed to append to relocation journal for {filepath}: {e}", stage="files"
            ) from e

    def save(self, filepath: Path) -> None:
        """Write the full snapshot atomically and truncate the journal."""
        self.updated_at = datetime.now().isoformat()
        tmp_path = filepath.with_name(filepath.name + ".tmp")
        try:
            with open(tmp_path, 'w') as f:
                json.dump(self.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, filepath)
            self.journal_path(filepath).unlink(missing_ok=True)
        except OSError as e:
            raise StorageIOError(f"Failed to write relocation log {filepath}: {e}", stage="files") from e

    @classmethod
    def load(cls, filepath: Path) -> Optional['RelocationLog']:
        """Load the snapshot and replay any journal lines written after it."""
        journal = cls.journal_path(filepath)
        if not filepath.exists():
            return None
        try:
            with open(filepath, 'r') as f:
                log = cls.from_dict(json.load(f))
            lines = journal.read_text().splitlines() if journal.exists() else []
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CorruptionError(f"Relocation log is unreadable: {filepath}: {e}", stage="files") from e

        by_name = {e.file_name: e for e in log.entries}
        for i, line in enumerate(lines):
            if not line.strip():
                continue
            try:
                entry = FileRelocationLogEntry.from_dict(json.loads(line))
            except (ValueError, KeyError, TypeError) as e:
                if i == len(lines) - 1:
                    # Torn final append from a crash; the copy it announced never started
                    logger.warning(f"Ignoring incomplete last line of {journal}")
                    break
                raise CorruptionError(f"Relocation journal is unreadable: {journal}: {e}", stage="files") from e
            by_name[entry.file_name] = entry
        log.entries = list(by_name.values())
        log._index = by_name
        return log

    def remove(self, filepath: Path) -> None:
        """Delete the snapshot and its journal."""
        filepath.unlink(missing_ok=True)
        self.journal_path(filepath).unlink(missing_ok=True)


class FileRelocator:
    """
    Relocates legacy upload files into the unified media directory.

    ``migrate()`` and ``rollback()`` are idempotent. ``cleanup()`` deletes
    the legacy copies and cannot be undone; it is never run automatically.
    """

    def __init__(
        self,
        uploads_dir: Union[str, Path],
        lock_file: Optional[Union[str, Path]] = None,
        show_progress: bool = True,
    ):
        """
        Initialize file relocator.

        Args:
            uploads_dir: Root holding ``images/``, ``docs/`` and ``media/``
            lock_file: Advisory lock taken by mutating operations
            show_progress: Show a tqdm progress bar while copying
        """
        self.uploads_dir = Path(uploads_dir)
        self.media_dir = self.uploads_dir / MEDIA_DIR_NAME
        self.log_path = self.uploads_dir / RELOCATION_LOG_NAME
        self.lock_file = Path(lock_file) if lock_file else None
        self.show_progress = show_progress

    def legacy_dir(self, media_type: MediaType) -> Path:
        return self.uploads_dir / LEGACY_DIRS[media_type]

    def _lock(self, operation: str) -> Optional[MigrationLock]:
        return MigrationLock(self.lock_file, operation) if self.lock_file else None

    def load_log(self) -> Optional[RelocationLog]:
        """Current relocation log, or None if no relocation has run."""
        return RelocationLog.load(self.log_path)

    # ------------------------------------------------------------------
    # Forward
    # ------------------------------------------------------------------

    def _scan(self) -> List[FileRelocationLogEntry]:
        """Regular files in the legacy directories; subdirectories are skipped."""
        planned = []
        for media_type in MediaType.legacy_types():
            source_dir = self.legacy_dir(media_type)
            if not source_dir.is_dir():
                logger.info(
                    f"Source directory {source_dir} does not exist, "
                    f"skipping {media_type.value} file migration"
                )
                continue

            try:
                files = sorted(p for p in source_dir.iterdir() if p.is_file())
            except OSError as e:
                raise StorageIOError(f"Failed to read source directory {source_dir}: {e}", stage="files") from e

            logger.info(f"Found {len(files)} {media_type.value} files to migrate")
            for path in files:
                planned.append(FileRelocationLogEntry(
                    file_name=path.name,
                    source_path=str(path),
                    dest_path=str(self.media_dir / path.name),
                    media_type=media_type,
                ))
        return planned

    def _check_collisions(
        self,
        planned: List[FileRelocationLogEntry],
        log: RelocationLog,
    ) -> None:
        """Abort before copying anything if names collide."""
        seen: Dict[str, MediaType] = {}
        cross_type = []
        for entry in planned:
            other = seen.get(entry.file_name)
            if other is not None and other != entry.media_type:
                cross_type.append(entry.file_name)
            seen[entry.file_name] = entry.media_type
        if cross_type:
            raise DuplicateKeyError.for_names(cross_type, stage="files")

        conflicting = []
        for entry in planned:
            dest = Path(entry.dest_path)
            if not dest.exists():
                continue
            logged = log.find(entry.file_name)
            if logged is not None and logged.owned:
                # Our own copy from an earlier run, verified or recopied below
                continue
            if compute_checksum(dest) != compute_checksum(entry.source_path):
                conflicting.append(entry.file_name)
        if conflicting:
            raise DuplicateKeyError(
                f"Files already exist in {self.media_dir} with different content: "
                f"{', '.join(sorted(conflicting)[:10])}",
                file_names=conflicting,
                stage="files",
            )

    def migrate(self) -> RelocationLog:
        """
        Copy every legacy file into the unified directory.

        Returns:
            The relocation log with status ``completed``

        Raises:
            DuplicateKeyError: A name exists in both legacy directories, or the
                destination holds a different file of the same name
            CorruptionError: A copy does not match its source
            StorageIOError: A directory or file cannot be read or written
        """
        lock = self._lock("file-migrate")
        if lock:
            lock.acquire()
        try:
            return self._migrate()
        finally:
            if lock:
                lock.release()

    def _migrate(self) -> RelocationLog:
        logger.info("Starting file migration to unified media directory...")

        log = self.load_log()
        if log is not None and log.status == RelocationStatus.CLEANED_UP:
            logger.info("Legacy files have already been cleaned up. Nothing to migrate.")
            return log
        if log is None:
            log = RelocationLog(started_at=datetime.now().isoformat())
        log.status = RelocationStatus.IN_PROGRESS
        log.completed_at = None

        try:
            self.media_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Failed to create media directory: {e}", stage="files") from e

        planned = self._scan()
        try:
            self._check_collisions(planned, log)
        except OSError as e:
            raise StorageIOError(f"Failed to read file during collision check: {e}", stage="files") from e

        log.save(self.log_path)

        with tqdm(total=len(planned), desc="📁 Files", unit="file", file=sys.stderr,
                  disable=not self.show_progress) as pbar:
            for i, planned_entry in enumerate(planned):
                pbar.set_postfix_str(planned_entry.file_name[:40])
                self._relocate(planned_entry, log)
                pbar.update(1)
                if (i + 1) % PROGRESS_EVERY == 0 or i == len(planned) - 1:
                    logger.info(f"Migrated {i + 1}/{len(planned)} files")

        log.status = RelocationStatus.COMPLETED
        log.completed_at = datetime.now().isoformat()
        log.save(self.log_path)

        logger.info(
            f"File migration completed successfully! "
            f"({log.moved_count} copied, {len(log.entries) - log.moved_count} already present)"
        )
        return log

    def _relocate(self, planned: FileRelocationLogEntry, log: RelocationLog) -> None:
        source = Path(planned.source_path)
        dest = Path(planned.dest_path)

        try:
            source_checksum = compute_checksum(source)
        except OSError as e:
            raise StorageIOError(f"Failed to read {source}: {e}", stage="files") from e

        entry = log.find(planned.file_name)
        if entry is None:
            entry = planned
            entry.checksum = source_checksum.hex()
            if dest.exists():
                # Identical file already there (collision check passed)
                entry.preexisting = True
                log.add(entry)
                log.record(entry, self.log_path)
                logger.info(f"File {entry.file_name} already exists in media directory, skipping")
                return
            log.add(entry)
            log.record(entry, self.log_path)
        else:
            entry.checksum = source_checksum.hex()
            if dest.exists() and compute_checksum(dest) == source_checksum:
                if entry.owned and not entry.moved:
                    entry.moved = True
                    log.record(entry, self.log_path)
                return
            entry.preexisting = False
            log.record(entry, self.log_path)

        try:
            shutil.copy2(source, dest)
        except OSError as e:
            dest.unlink(missing_ok=True)
            raise StorageIOError(f"Failed to copy file {entry.file_name}: {e}", stage="files") from e

        dest_checksum = compute_checksum(dest)
        if dest_checksum != source_checksum:
            raise CorruptionError(
                f"Checksum mismatch after copying {entry.file_name}: "
                f"source={source_checksum.hex()} dest={dest_checksum.hex()}",
                stage="files",
            )

        entry.moved = True
        log.record(entry, self.log_path)

    # ------------------------------------------------------------------
    # Reverse
    # ------------------------------------------------------------------

    def rollback(self) -> int:
        """
        Delete the unified copies this relocator created, then the log.

        Entries already cleaned up are kept: their unified copy is the only
        remaining copy. A missing log means there is nothing to undo.

        Returns:
            Number of files removed from the media directory
        """
        lock = self._lock("file-rollback")
        if lock:
            lock.acquire()
        try:
            logger.info("Starting file migration rollback...")
            log = self.load_log()
            if log is None:
                logger.info("No relocation log found, nothing to rollback")
                return 0

            removed = 0
            for entry in log.entries:
                if not entry.owned or entry.cleaned_up:
                    continue
                dest = Path(entry.dest_path)
                try:
                    if dest.exists():
                        dest.unlink()
                        removed += 1
                except OSError as e:
                    raise StorageIOError(
                        f"Failed to remove {dest} during rollback: {e}", stage="file-rollback"
                    ) from e
                entry.moved = False

            kept = sum(1 for e in log.entries if e.cleaned_up)
            if kept:
                logger.warning(
                    f"{kept} files were already cleaned up from legacy directories and stay in {self.media_dir}"
                )

            try:
                log.remove(self.log_path)
            except OSError as e:
                raise StorageIOError(f"Failed to remove relocation log: {e}", stage="file-rollback") from e

            logger.info(f"File migration rollback completed successfully! ({removed} files removed)")
            return removed
        finally:
            if lock:
                lock.release()

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """
        Delete legacy source files after a completed relocation.

        Irreversible. Every unified copy is re-verified before any legacy
        file is removed.

        Returns:
            Number of legacy files removed

        Raises:
            NotFoundError: No relocation log exists
            MigrationError: The relocation has not completed
            CorruptionError: A unified copy is missing or differs from its checksum
        """
        lock = self._lock("cleanup")
        if lock:
            lock.acquire()
        try:
            return self._cleanup()
        finally:
            if lock:
                lock.release()

    def _cleanup(self) -> int:
        log = self.load_log()
        if log is None:
            raise NotFoundError("No relocation log found; run the file migration first", stage="cleanup")
        if log.status != RelocationStatus.COMPLETED:
            raise MigrationError(
                f"File migration is not in a completed state (status: {log.status.value})",
                stage="cleanup",
            )

        logger.info("Starting cleanup of legacy files...")
        pending = [e for e in log.entries if not e.cleaned_up]

        for entry in pending:
            dest = Path(entry.dest_path)
            if not dest.is_file():
                raise CorruptionError(f"Unified copy missing: {dest}", stage="cleanup")
            try:
                actual = compute_checksum(dest).hex()
            except OSError as e:
                raise StorageIOError(f"Failed to read {dest}: {e}", stage="cleanup") from e
            if actual != entry.checksum:
                raise CorruptionError(
                    f"Unified copy of {entry.file_name} does not match its recorded checksum",
                    stage="cleanup",
                )

        removed = 0
        for i, entry in enumerate(pending):
            source = Path(entry.source_path)
            try:
                if source.exists():
                    source.unlink()
                    removed += 1
            except OSError as e:
                log.save(self.log_path)
                raise StorageIOError(f"Failed to remove {source}: {e}", stage="cleanup") from e
            entry.cleaned_up = True

            if (i + 1) % PROGRESS_EVERY == 0 or i == len(pending) - 1:
                logger.info(f"Cleaned up {i + 1}/{len(pending)} files")

        log.status = RelocationStatus.CLEANED_UP
        log.save(self.log_path)
        logger.info(f"Legacy files cleanup completed successfully! ({removed} files removed)")
        return removed
