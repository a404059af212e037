"""
Record Models
=============

Dataclasses for the two legacy record shapes, the unified media record, the
migration state marker, backup artifacts and file relocation log entries.

Timestamps are kept exactly as the store holds them (text) so that copying a
row never changes its value.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


class MediaType(str, Enum):
    """Type discriminator for unified media records."""

    IMAGE = "image"
    DOCUMENT = "document"
    VIDEO = "video"
    AUDIO = "audio"

    @classmethod
    def legacy_types(cls) -> tuple:
        """Types that have a legacy table and directory."""
        return (cls.IMAGE, cls.DOCUMENT)

    @classmethod
    def from_string(cls, value: str) -> "MediaType":
        """Parse media type from string (case-insensitive)."""
        value_lower = value.lower().strip()
        for member in cls:
            if member.value == value_lower:
                return member
        raise ValueError(
            f"Invalid media type: {value}. "
            f"Valid types: {[m.value for m in cls]}"
        )


# Legacy table and upload directory per type
LEGACY_TABLES = {
    MediaType.IMAGE: "images",
    MediaType.DOCUMENT: "docs",
}
LEGACY_DIRS = {
    MediaType.IMAGE: "images",
    MediaType.DOCUMENT: "docs",
}


@dataclass
class LegacyRecord:
    """A row of the legacy ``images`` or ``docs`` table."""

    id: int
    file_name: str
    checksum: Optional[bytes]
    media_type: MediaType
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    deleted_at: Optional[str] = None


@dataclass
class MediaRecord:
    """
    A row of the unified ``media`` table.

    ``legacy_id`` keeps the primary key of the legacy row the record was
    migrated from. Width and height are only ever set for images.
    """

    file_name: str
    checksum: Optional[bytes]
    type: MediaType
    id: Optional[int] = None
    legacy_id: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    deleted_at: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.type, str) and not isinstance(self.type, MediaType):
            self.type = MediaType.from_string(self.type)
        if self.type != MediaType.IMAGE:
            self.width = None
            self.height = None

    @classmethod
    def from_legacy(cls, record: LegacyRecord) -> "MediaRecord":
        """Build the unified record for a legacy row, preserving its identity."""
        return cls(
            file_name=record.file_name,
            checksum=record.checksum,
            type=record.media_type,
            legacy_id=record.id,
            created_at=record.created_at,
            updated_at=record.updated_at,
            deleted_at=record.deleted_at,
        )

    def to_legacy(self) -> LegacyRecord:
        """Legacy-shaped view of this record for backward compatibility."""
        if self.type not in MediaType.legacy_types():
            raise ValueError(f"Media type {self.type.value} has no legacy shape")
        return LegacyRecord(
            id=self.legacy_id if self.legacy_id is not None else self.id,
            file_name=self.file_name,
            checksum=self.checksum,
            media_type=self.type,
            created_at=self.created_at,
            updated_at=self.updated_at,
            deleted_at=self.deleted_at,
        )


@dataclass
class MigrationStateRecord:
    """The persisted completion marker."""

    name: str
    completed_at: str


@dataclass
class BackupArtifact:
    """An immutable snapshot of the store file."""

    path: Path
    created_at: datetime
    size_bytes: int

    @classmethod
    def from_path(cls, path: Path) -> "BackupArtifact":
        stat = path.stat()
        return cls(
            path=path,
            created_at=datetime.fromtimestamp(stat.st_mtime),
            size_bytes=stat.st_size,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
        }


@dataclass
class FileRelocationLogEntry:
    """
    One file handled by the relocator.

    The entry is written before the copy starts. ``moved`` becomes True once
    the copy is verified. ``preexisting`` marks a destination that was
    already there with identical content; rollback never deletes it.
    """

    file_name: str
    source_path: str
    dest_path: str
    media_type: MediaType
    moved: bool = False
    cleaned_up: bool = False
    preexisting: bool = False
    checksum: Optional[str] = None  # hex digest of the source

    @property
    def owned(self) -> bool:
        """True when the relocator created (or started creating) ``dest_path``."""
        return not self.preexisting

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['media_type'] = self.media_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRelocationLogEntry":
        data = dict(data)
        data['media_type'] = MediaType(data['media_type'])
        return cls(**data)


@dataclass
class MigrationStepResult:
    """Outcome of one numbered schema migration step."""

    step: int
    name: str
    rows: int = 0
    details: Dict[str, Any] = field(default_factory=dict)
