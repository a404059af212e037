"""
Migration Error Types
=====================

Exception taxonomy shared by the backup, schema, file and orchestration
layers. Every error can carry the stage (or numbered step) it was raised
from so the operator can decide between retry, manual rollback, or a
restore from backup.
"""

from typing import Any, Iterable, Optional


class MigrationError(Exception):
    """Base class for all migration engine errors."""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        step: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.step = step

    def __str__(self) -> str:
        prefix = ""
        if self.stage:
            prefix += f"[{self.stage}] "
        if self.step is not None:
            prefix += f"(step {self.step}) "
        return f"{prefix}{self.message}"


class StorageIOError(MigrationError):
    """Disk or permission failure. Fatal to the current operation."""


class SourceUnavailableError(StorageIOError):
    """The live store cannot be read."""


class DuplicateKeyError(MigrationError):
    """A file name collides across legacy sets or with existing unified data."""

    def __init__(self, message: str, file_names: Iterable[str] = (), **kwargs: Any):
        super().__init__(message, **kwargs)
        self.file_names = sorted(set(file_names))

    @classmethod
    def for_names(cls, file_names: Iterable[str], **kwargs: Any) -> "DuplicateKeyError":
        names = sorted(set(file_names))
        shown = ", ".join(names[:10])
        if len(names) > 10:
            shown += f" (+{len(names) - 10} more)"
        return cls(f"Duplicate file names: {shown}", file_names=names, **kwargs)


class CorruptionError(MigrationError):
    """Checksum mismatch or an unreadable artifact."""


class NotFoundError(MigrationError):
    """A referenced backup, file or log does not exist."""


class ConflictError(MigrationError):
    """The live store is in use and cannot be overwritten."""


class BusyError(MigrationError):
    """Another migration or rollback holds the advisory lock."""


class VerificationMismatch(MigrationError):
    """Verification found differences. Reported, never triggers rollback."""

    def __init__(self, message: str, mismatches: Iterable[str] = (), **kwargs: Any):
        super().__init__(message, **kwargs)
        self.mismatches = list(mismatches)


class StageError(MigrationError):
    """
    Raised by the orchestrator when a stage fails.

    Records what the automatic reverse path managed to do so the caller
    knows whether a manual restore is still needed.
    """

    def __init__(
        self,
        stage: str,
        cause: BaseException,
        rolled_back: bool = False,
        restored_from: Optional[str] = None,
        rollback_errors: Optional[list] = None,
    ):
        message = f"{type(cause).__name__}: {cause}"
        if rolled_back:
            message += " (rolled back)"
        elif restored_from:
            message += f" (restored from {restored_from})"
        elif rollback_errors:
            message += " (rollback failed, manual restore required)"
        super().__init__(message, stage=stage)
        self.cause = cause
        self.rolled_back = rolled_back
        self.restored_from = restored_from
        self.rollback_errors = rollback_errors or []
