"""
Migration Verification Tests
============================

Tests cover:
- ok iff counts add up and sampled checksums match
- Bounded, reproducible sampling
- Informational warnings that never flip the outcome
- Report serialization and printing
"""

import io
import json
import random

import pytest
from rich.console import Console

from mediamigrate.errors import SourceUnavailableError, VerificationMismatch
from mediamigrate.migration.schema import SchemaMigrator
from mediamigrate.migration.verify import MigrationVerifier
from mediamigrate.models import MediaType
from mediamigrate.store import MEDIA_TABLE, Store


@pytest.fixture
def migrated(store, seed):
    data = seed(images=6, docs=4, files=False)
    SchemaMigrator(store).migrate()
    return data


class TestVerify:

    def test_clean_migration_is_ok(self, store, migrated):
        report = MigrationVerifier(store).verify()

        assert report.ok
        assert report.unified_count == 10
        assert report.legacy_image_count == 6
        assert report.legacy_doc_count == 4
        assert report.mismatches == []
        assert report.warnings == []
        assert report.checks[0].details == {"images": 6, "docs": 4}
        report.raise_for_mismatch()

    def test_count_mismatch_is_not_ok(self, store, migrated):
        store.insert_legacy(MediaType.IMAGE, "late.jpg", b"late")

        report = MigrationVerifier(store).verify()

        assert not report.ok
        assert report.unified_count == 10
        assert report.legacy_image_count == 7

    def test_checksum_mismatch_is_reported_by_name(self, store, migrated):
        with store.connect() as conn:
            conn.execute(
                f"UPDATE {MEDIA_TABLE} SET checksum = ? WHERE file_name = ?",
                (b"wrong", "doc_0002.pdf"),
            )

        report = MigrationVerifier(store, sample_size=100).verify()

        assert not report.ok
        assert report.mismatches == ["doc_0002.pdf"]
        with pytest.raises(VerificationMismatch) as exc_info:
            report.raise_for_mismatch()
        assert exc_info.value.mismatches == ["doc_0002.pdf"]

    def test_verification_is_read_only(self, store, migrated):
        before = store.db_path.read_bytes()
        MigrationVerifier(store).verify()
        assert store.db_path.read_bytes() == before

    def test_missing_store_is_not_created(self, tmp_path):
        db_path = tmp_path / "db_data" / "main.db"

        with pytest.raises(SourceUnavailableError):
            MigrationVerifier(Store(db_path)).verify()

        assert not db_path.exists()
        assert not db_path.parent.exists()

    def test_unmigrated_store_is_not_ok(self, store, seed):
        seed(images=2, files=False)

        report = MigrationVerifier(store).verify()

        assert not report.ok
        assert any("Media table does not exist" in w for w in report.warnings)


class TestSampling:

    def test_sample_is_bounded(self, store, migrated):
        report = MigrationVerifier(store, sample_size=3).verify()
        assert report.sampled == 3

    def test_sample_never_exceeds_population(self, store, migrated):
        report = MigrationVerifier(store, sample_size=500).verify()
        assert report.sampled == 10

    def test_seeded_rng_is_reproducible(self, store, migrated):
        with store.connect() as conn:
            conn.execute(f"UPDATE {MEDIA_TABLE} SET checksum = ?", (b"bad",))

        first = MigrationVerifier(store, sample_size=4, rng=random.Random(7)).verify()
        second = MigrationVerifier(store, sample_size=4, rng=random.Random(7)).verify()

        assert first.mismatches == second.mismatches
        assert len(first.mismatches) == 4

    @pytest.mark.parametrize("sample_size", [0, -1])
    def test_non_positive_sample_size_rejected(self, store, sample_size):
        with pytest.raises(ValueError):
            MigrationVerifier(store, sample_size=sample_size)


class TestWarnings:

    def test_dimensions_on_document_warn_only(self, store, migrated):
        with store.connect() as conn:
            conn.execute(
                f"UPDATE {MEDIA_TABLE} SET width = 10, height = 20 WHERE file_name = ?",
                ("doc_0000.pdf",),
            )

        report = MigrationVerifier(store).verify()

        assert report.ok
        assert any("doc_0000.pdf" in w for w in report.warnings)

    def test_missing_marker_warns_only(self, store, migrated):
        with store.connect() as conn:
            conn.execute("DELETE FROM migration_records")

        report = MigrationVerifier(store).verify()

        assert report.ok
        assert any("Migration record not found" in w for w in report.warnings)

    def test_orphaned_unified_row_is_reported(self, store, migrated):
        with store.connect() as conn:
            conn.execute(
                f"INSERT INTO {MEDIA_TABLE} (file_name, checksum, type) VALUES (?, ?, ?)",
                ("orphan.jpg", b"o", "image"),
            )

        report = MigrationVerifier(store).verify()

        assert any("orphaned" in w for w in report.warnings)


class TestReportOutput:

    def test_to_dict_is_json_serializable(self, store, migrated):
        report = MigrationVerifier(store).verify()
        data = json.loads(json.dumps(report.to_dict()))
        assert data["ok"] is True
        assert data["unified_count"] == 10

    def test_print_report(self, store, migrated):
        buffer = io.StringIO()
        MigrationVerifier(store).verify().print_report(Console(file=buffer, width=120))

        output = buffer.getvalue()
        assert "Media Migration Verification" in output
        assert "All verification checks passed" in output

    def test_sample_failure_is_recorded_on_the_check(self, store, seed):
        seed(images=1, files=False)
        with store.connect() as conn:
            conn.execute(
                f"CREATE TABLE {MEDIA_TABLE} (id INTEGER PRIMARY KEY, file_name TEXT, "
                "checksum BLOB, type TEXT, width INTEGER, height INTEGER)"
            )
            conn.execute(
                f"INSERT INTO {MEDIA_TABLE} (file_name, checksum, type) VALUES (?, ?, ?)",
                ("img_0000.jpg", b"x", "image"),
            )

        report = MigrationVerifier(store).verify()

        sample = next(c for c in report.checks if c.check_name == "Sampled checksums")
        assert not report.ok
        assert "legacy_id" in sample.error
        assert "Error:" in sample.summary
        assert report.to_dict()["checks"][1]["error"] == sample.error
