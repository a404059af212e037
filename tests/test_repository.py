"""
Media Repository Tests
======================

Tests cover:
- Type-tagged and untagged lookups over the unified table
- Name uniqueness across all types
- Legacy-shaped adapter view
"""

import pytest

from mediamigrate.errors import DuplicateKeyError, NotFoundError
from mediamigrate.migration.schema import SchemaMigrator
from mediamigrate.models import LegacyRecord, MediaRecord, MediaType
from mediamigrate.repository import (
    MediaRepository,
    legacy_doc_by_checksum,
    legacy_docs,
    legacy_image_by_checksum,
    legacy_images,
)
from mediamigrate.store import Store

from conftest import checksum_of


@pytest.fixture
def repo(store, seed) -> MediaRepository:
    seed(images=3, docs=2, files=False)
    SchemaMigrator(store).migrate()
    return MediaRepository(store)


class TestLookups:

    def test_get_all_and_by_type(self, repo):
        assert len(repo.get()) == 5
        assert len(repo.get(MediaType.IMAGE)) == 3
        assert len(repo.get_by_type(MediaType.DOCUMENT)) == 2
        assert repo.get_by_type(MediaType.VIDEO) == []

    def test_get_by_checksum_respects_type_tag(self, repo):
        checksum = checksum_of(b"image-bytes-1" * 8)

        assert repo.get_by_checksum(checksum).file_name == "img_0001.jpg"
        assert repo.get_by_checksum(checksum, MediaType.IMAGE).file_name == "img_0001.jpg"
        assert repo.get_by_checksum(checksum, MediaType.DOCUMENT) is None

    def test_get_by_name(self, repo):
        record = repo.get_by_name("doc_0001.pdf")
        assert record.type == MediaType.DOCUMENT
        assert record.width is None and record.height is None
        assert repo.get_by_name("doc_0001.pdf", MediaType.IMAGE) is None

    def test_empty_store_has_no_media(self, tmp_path):
        assert MediaRepository(Store(tmp_path / "empty.db")).get() == []


class TestMutations:

    def test_add_with_type_tag(self, repo):
        added = repo.add(MediaRecord(file_name="clip.mp4", checksum=b"v", type=MediaType.DOCUMENT),
                         MediaType.VIDEO)
        assert added.id is not None
        assert repo.get_by_name("clip.mp4").type == MediaType.VIDEO

    def test_add_duplicate_name_across_types(self, repo):
        with pytest.raises(DuplicateKeyError):
            repo.add(MediaRecord(file_name="img_0000.jpg", checksum=b"x", type=MediaType.DOCUMENT))

    def test_rename(self, repo):
        repo.rename("img_0000.jpg", "cover.jpg", MediaType.IMAGE)
        assert repo.get_by_name("cover.jpg") is not None
        assert repo.get_by_name("img_0000.jpg") is None

    def test_rename_to_taken_name(self, repo):
        with pytest.raises(DuplicateKeyError):
            repo.rename("img_0000.jpg", "doc_0000.pdf")

    def test_rename_missing(self, repo):
        with pytest.raises(NotFoundError):
            repo.rename("nope.jpg", "still-nope.jpg")

    def test_delete_respects_type_tag(self, repo):
        assert repo.delete("img_0002.jpg", MediaType.DOCUMENT) is False
        assert repo.delete("img_0002.jpg", MediaType.IMAGE) is True
        assert repo.get_by_name("img_0002.jpg") is None

    def test_update_image_dimensions(self, repo):
        repo.update_image_dimensions("img_0001.jpg", 640, 480)
        record = repo.get_by_name("img_0001.jpg")
        assert (record.width, record.height) == (640, 480)

    def test_update_dimensions_of_document_fails(self, repo):
        with pytest.raises(NotFoundError):
            repo.update_image_dimensions("doc_0000.pdf", 1, 1)


class TestLegacyView:

    def test_legacy_images_keep_legacy_ids(self, repo, store):
        with store.connect() as conn:
            expected = {r["file_name"]: r["id"] for r in conn.execute("SELECT id, file_name FROM images")}

        images = legacy_images(repo)

        assert all(isinstance(r, LegacyRecord) for r in images)
        assert {r.file_name: r.id for r in images} == expected

    def test_legacy_docs(self, repo):
        assert sorted(r.file_name for r in legacy_docs(repo)) == ["doc_0000.pdf", "doc_0001.pdf"]

    def test_legacy_lookup_by_checksum(self, repo):
        doc_checksum = checksum_of(b"document-bytes-0" * 8)
        assert legacy_doc_by_checksum(repo, doc_checksum).file_name == "doc_0000.pdf"
        assert legacy_image_by_checksum(repo, doc_checksum) is None
