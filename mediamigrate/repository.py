"""
Media Repository
================

One capability set over the unified ``media`` table:
``get, get_by_checksum, get_by_name, get_by_type, add, delete, rename``.

Every operation takes an optional type tag. Without it the call spans all
media types; with it the call is restricted to that type, which is what the
legacy image/document accessors used to do. The legacy-shaped view is
provided by thin adapter functions at the bottom of the module rather than
by separate repository classes.
"""

import logging
import sqlite3
from typing import List, Optional, Tuple

from .errors import DuplicateKeyError, NotFoundError, StorageIOError
from .models import LegacyRecord, MediaRecord, MediaType
from .store import MEDIA_TABLE, Store

logger = logging.getLogger(__name__)

_SELECT = (
    f"SELECT id, legacy_id, file_name, checksum, type, width, height, "
    f"created_at, updated_at, deleted_at FROM {MEDIA_TABLE}"
)


def _row_to_media(row: sqlite3.Row) -> MediaRecord:
    checksum = row["checksum"]
    return MediaRecord(
        id=row["id"],
        legacy_id=row["legacy_id"],
        file_name=row["file_name"],
        checksum=bytes(checksum) if checksum is not None else None,
        type=MediaType(row["type"]),
        width=row["width"],
        height=row["height"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row["deleted_at"],
    )


class MediaRepository:
    """Unified media accessor parameterized over a type tag."""

    def __init__(self, store: Store):
        self.store = store

    def _where(
        self, clause: str, params: Tuple, media_type: Optional[MediaType]
    ) -> Tuple[str, Tuple]:
        clauses = [clause] if clause else []
        if media_type is not None:
            clauses.append("type = ?")
            params = params + (MediaType(media_type).value,)
        sql = _SELECT
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        return sql + " ORDER BY id", params

    def _fetch(self, clause: str, params: Tuple, media_type: Optional[MediaType]) -> List[MediaRecord]:
        sql, params = self._where(clause, params, media_type)
        try:
            with self.store.connect() as conn:
                if not Store.has_table(conn, MEDIA_TABLE):
                    return []
                return [_row_to_media(row) for row in conn.execute(sql, params)]
        except sqlite3.Error as e:
            raise StorageIOError(f"Media query failed: {e}", stage="repository") from e

    def get(self, media_type: Optional[MediaType] = None) -> List[MediaRecord]:
        """All media records, optionally restricted to one type."""
        return self._fetch("", (), media_type)

    def get_by_checksum(
        self, checksum: bytes, media_type: Optional[MediaType] = None
    ) -> Optional[MediaRecord]:
        records = self._fetch("checksum = ?", (checksum,), media_type)
        return records[0] if records else None

    def get_by_name(
        self, file_name: str, media_type: Optional[MediaType] = None
    ) -> Optional[MediaRecord]:
        records = self._fetch("file_name = ?", (file_name,), media_type)
        return records[0] if records else None

    def get_by_type(self, media_type: MediaType) -> List[MediaRecord]:
        return self.get(media_type)

    def add(self, media: MediaRecord, media_type: Optional[MediaType] = None) -> MediaRecord:
        """
        Insert a record. A given type tag overrides ``media.type``.

        Raises:
            DuplicateKeyError: The file name is already used by any type
        """
        if media_type is not None:
            media = MediaRecord(
                file_name=media.file_name,
                checksum=media.checksum,
                type=MediaType(media_type),
                legacy_id=media.legacy_id,
                width=media.width,
                height=media.height,
                created_at=media.created_at,
                updated_at=media.updated_at,
                deleted_at=media.deleted_at,
            )

        try:
            with self.store.connect() as conn:
                cursor = conn.execute(
                    f"""
                    INSERT INTO {MEDIA_TABLE}
                        (legacy_id, file_name, checksum, type, width, height,
                         created_at, updated_at, deleted_at)
                    VALUES (?, ?, ?, ?, ?, ?,
                            COALESCE(?, CURRENT_TIMESTAMP), COALESCE(?, CURRENT_TIMESTAMP), ?)
                    """,
                    (
                        media.legacy_id, media.file_name, media.checksum, media.type.value,
                        media.width, media.height,
                        media.created_at, media.updated_at, media.deleted_at,
                    ),
                )
                media.id = cursor.lastrowid
                logger.debug(f"Added {media.type.value} {media.file_name} (id {media.id})")
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(
                f"File name already exists: {media.file_name}",
                file_names=[media.file_name],
                stage="repository",
            ) from e
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to add media {media.file_name}: {e}", stage="repository") from e

        return media

    def delete(self, file_name: str, media_type: Optional[MediaType] = None) -> bool:
        """Delete a record by name. Returns False when no record matched."""
        sql = f"DELETE FROM {MEDIA_TABLE} WHERE file_name = ?"
        params: Tuple = (file_name,)
        if media_type is not None:
            sql += " AND type = ?"
            params += (MediaType(media_type).value,)
        try:
            with self.store.connect() as conn:
                return conn.execute(sql, params).rowcount > 0
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to delete media {file_name}: {e}", stage="repository") from e

    def rename(
        self, old_file_name: str, new_file_name: str, media_type: Optional[MediaType] = None
    ) -> None:
        """
        Rename a record.

        Raises:
            NotFoundError: No record with ``old_file_name`` (of that type)
            DuplicateKeyError: ``new_file_name`` is already taken by any type
        """
        sql = (
            f"UPDATE {MEDIA_TABLE} SET file_name = ?, updated_at = CURRENT_TIMESTAMP "
            f"WHERE file_name = ?"
        )
        params: Tuple = (new_file_name, old_file_name)
        if media_type is not None:
            sql += " AND type = ?"
            params += (MediaType(media_type).value,)
        try:
            with self.store.connect() as conn:
                if conn.execute(sql, params).rowcount == 0:
                    raise NotFoundError(f"Media not found: {old_file_name}", stage="repository")
            logger.debug(f"Renamed {old_file_name} -> {new_file_name}")
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(
                f"File name already exists: {new_file_name}",
                file_names=[new_file_name],
                stage="repository",
            ) from e
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to rename media {old_file_name}: {e}", stage="repository") from e

    def update_image_dimensions(self, file_name: str, width: int, height: int) -> None:
        """Set width/height of an image record."""
        try:
            with self.store.connect() as conn:
                updated = conn.execute(
                    f"UPDATE {MEDIA_TABLE} SET width = ?, height = ? WHERE file_name = ? AND type = ?",
                    (width, height, file_name, MediaType.IMAGE.value),
                ).rowcount
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to update dimensions of {file_name}: {e}", stage="repository") from e
        if not updated:
            raise NotFoundError(f"Image not found: {file_name}", stage="repository")


# ----------------------------------------------------------------------
# Legacy-shaped view
# ----------------------------------------------------------------------

def as_legacy(records: List[MediaRecord]) -> List[LegacyRecord]:
    """Convert unified records to the legacy record shape."""
    return [record.to_legacy() for record in records]


def legacy_images(repo: MediaRepository) -> List[LegacyRecord]:
    """All images, shaped like rows of the old ``images`` table."""
    return as_legacy(repo.get_by_type(MediaType.IMAGE))


def legacy_docs(repo: MediaRepository) -> List[LegacyRecord]:
    """All documents, shaped like rows of the old ``docs`` table."""
    return as_legacy(repo.get_by_type(MediaType.DOCUMENT))


def legacy_image_by_checksum(repo: MediaRepository, checksum: bytes) -> Optional[LegacyRecord]:
    record = repo.get_by_checksum(checksum, MediaType.IMAGE)
    return record.to_legacy() if record else None


def legacy_doc_by_checksum(repo: MediaRepository, checksum: bytes) -> Optional[LegacyRecord]:
    record = repo.get_by_checksum(checksum, MediaType.DOCUMENT)
    return record.to_legacy() if record else None
