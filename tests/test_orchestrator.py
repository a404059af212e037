"""
Staged Migration Orchestrator Tests
===================================

Tests cover:
- The full backup -> schema -> files -> verify flow
- Automatic reverse path on stage failure
- Restore from backup when a rollback step itself fails
- Verification mismatch reported without rollback
- Staged rollback and persisted state
"""

import json
import shutil

import pytest

from mediamigrate.errors import BusyError, StageError, StorageIOError
from mediamigrate.migration.files import FileRelocator
from mediamigrate.migration.orchestrator import MigrationOrchestrator
from mediamigrate.migration.verify import MigrationVerifier, VerificationReport, VerificationResult
from mediamigrate.store import MEDIA_TABLE, Store


def has_media_table(store: Store) -> bool:
    with store.connect() as conn:
        return Store.has_table(conn, MEDIA_TABLE)


def media_dir_files(config) -> list:
    if not config.media_dir.exists():
        return []
    return sorted(p.name for p in config.media_dir.iterdir() if p.is_file())


class BrokenRelocator(FileRelocator):
    """Relocator whose migrate and rollback both fail."""

    def migrate(self):
        raise StorageIOError("disk full", stage="files")

    def rollback(self):
        raise StorageIOError("read-only file system", stage="file-rollback")


class MismatchVerifier(MigrationVerifier):

    def verify(self):
        report = VerificationReport(unified_count=1, legacy_image_count=2)
        report.mismatches.append("img_0000.jpg")
        report.add_check(VerificationResult("Record count", passed=False, source_count=2, target_count=1))
        return report


# =============================================================================
# Forward flow
# =============================================================================

class TestRun:

    def test_documented_scenario_150_images_75_docs(self, config, store, seed):
        data = seed(images=150, docs=75)

        result = MigrationOrchestrator(config, store=store).run()

        assert result.ok
        assert result.report.unified_count == 225
        assert result.stages == ["backup", "schema", "files", "verify"]
        assert result.backup.path.is_file()
        assert media_dir_files(config) == sorted(data.all_files)

    def test_skip_backup(self, config, store, seed):
        seed(images=2, docs=1)

        result = MigrationOrchestrator(config, store=store).run(skip_backup=True)

        assert result.ok
        assert result.backup is None
        assert not config.backup_dir.exists()

    def test_never_cleans_up_legacy_files(self, config, store, seed):
        data = seed(images=3, docs=3)
        MigrationOrchestrator(config, store=store).run()
        legacy = sorted(p.name for d in (config.images_dir, config.docs_dir) for p in d.iterdir())
        assert legacy == sorted(data.all_files)

    def test_state_file_records_history(self, config, store, seed):
        seed(images=1)
        MigrationOrchestrator(config, store=store).run()

        state = json.loads(config.state_file.read_text())

        assert [h["stage"] for h in state["history"]] == ["backup", "schema", "files", "verify"]
        assert state["backup_path"]

    def test_rerun_after_success_is_ok(self, config, store, seed):
        seed(images=4, docs=4)
        orchestrator = MigrationOrchestrator(config, store=store)
        orchestrator.run()

        result = orchestrator.run(skip_backup=True)

        assert result.ok
        assert result.schema.skipped
        assert result.report.unified_count == 8

    def test_busy_when_lock_held(self, config, store, seed, foreign_lock):
        seed(images=1)
        with pytest.raises(BusyError):
            MigrationOrchestrator(config, store=store).run()


# =============================================================================
# Reverse path
# =============================================================================

class TestAutomaticRollback:

    def test_file_stage_failure_rolls_back_everything(self, config, store, seed, monkeypatch):
        seed(images=5, docs=5)
        real_copy2 = shutil.copy2
        calls = []

        def flaky_copy(src, dst, *args, **kwargs):
            calls.append(src)
            if len(calls) == 7:
                raise OSError("No space left on device")
            return real_copy2(src, dst, *args, **kwargs)

        monkeypatch.setattr(shutil, "copy2", flaky_copy)

        with pytest.raises(StageError) as exc_info:
            MigrationOrchestrator(config, store=store).run()

        error = exc_info.value
        assert error.stage == "files"
        assert error.rolled_back
        assert isinstance(error.cause, StorageIOError)
        assert not has_media_table(store)
        assert media_dir_files(config) == []

    def test_failed_rollback_restores_from_backup(self, config, store, seed):
        seed(images=3, docs=2)
        broken = BrokenRelocator(config.uploads_dir, lock_file=config.lock_file, show_progress=False)

        with pytest.raises(StageError) as exc_info:
            MigrationOrchestrator(config, store=store, files=broken).run()

        error = exc_info.value
        assert error.stage == "files"
        assert not error.rolled_back
        assert error.restored_from is not None
        assert any("read-only" in e for e in error.rollback_errors)
        assert not has_media_table(store)

    def test_failed_rollback_without_backup_reports_errors(self, config, store, seed):
        seed(images=1)
        broken = BrokenRelocator(config.uploads_dir, lock_file=config.lock_file, show_progress=False)

        with pytest.raises(StageError) as exc_info:
            MigrationOrchestrator(config, store=store, files=broken).run(skip_backup=True)

        assert exc_info.value.restored_from is None
        assert exc_info.value.rollback_errors

    def test_backup_failure_stops_before_mutation(self, tmp_path, config):
        orchestrator = MigrationOrchestrator(config, store=Store(tmp_path / "missing" / "main.db"))

        with pytest.raises(StageError) as exc_info:
            orchestrator.run()

        assert exc_info.value.stage == "backup"
        assert not config.media_dir.exists()

    def test_verification_mismatch_does_not_roll_back(self, config, store, seed):
        seed(images=2)
        verifier = MismatchVerifier(store)

        result = MigrationOrchestrator(config, store=store, verifier=verifier).run()

        assert not result.ok
        assert result.report.mismatches == ["img_0000.jpg"]
        assert has_media_table(store)
        assert len(media_dir_files(config)) == 2


# =============================================================================
# Staged rollback
# =============================================================================

class TestStagedRollback:

    def test_rollback_after_run(self, config, store, seed):
        seed(images=3, docs=3)
        orchestrator = MigrationOrchestrator(config, store=store)
        orchestrator.run()

        result = orchestrator.rollback()

        assert result.backup is not None
        assert result.files_removed == 6
        assert result.schema_rolled_back
        assert not has_media_table(store)
        assert media_dir_files(config) == []

    def test_rollback_skip_backup(self, config, store, seed):
        seed(images=1)
        orchestrator = MigrationOrchestrator(config, store=store)
        orchestrator.run(skip_backup=True)

        result = orchestrator.rollback(skip_backup=True)

        assert result.backup is None
        assert not has_media_table(store)

    def test_rollback_failure_restores_pre_rollback_backup(self, config, store, seed):
        seed(images=2)
        MigrationOrchestrator(config, store=store).run(skip_backup=True)
        broken = BrokenRelocator(config.uploads_dir, lock_file=config.lock_file, show_progress=False)

        with pytest.raises(StageError) as exc_info:
            MigrationOrchestrator(config, store=store, files=broken).rollback()

        assert exc_info.value.stage == "rollback"
        assert exc_info.value.restored_from is not None
        assert has_media_table(store)
