"""
Configuration Tests
===================
"""

from pathlib import Path

import pytest

from mediamigrate.config import MigrationConfig, load_config
from mediamigrate.errors import DuplicateKeyError, StageError, StorageIOError


class TestMigrationConfig:

    def test_paths_derive_from_data_dir(self, tmp_path):
        config = MigrationConfig(data_dir=tmp_path)
        assert config.db_path == tmp_path / "db_data" / "main.db"
        assert config.uploads_dir == tmp_path / "uploads"
        assert config.backup_dir == tmp_path / "backups"
        assert config.media_dir == tmp_path / "uploads" / "media"
        assert config.lock_file == tmp_path / ".migration.lock"

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            MigrationConfig(sample_size=0)
        with pytest.raises(ValueError):
            MigrationConfig(log_level="chatty")

    def test_ensure_upload_directories(self, tmp_path):
        config = MigrationConfig(data_dir=tmp_path)
        config.ensure_upload_directories()
        assert config.images_dir.is_dir() and config.docs_dir.is_dir() and config.media_dir.is_dir()


class TestLoadConfig:

    def test_environment_variables(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEDIAMIGRATE_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("MEDIAMIGRATE_SAMPLE_SIZE", "25")
        monkeypatch.setenv("MEDIAMIGRATE_PROGRESS", "false")

        config = load_config(env_file=str(tmp_path / "absent.env"))

        assert config.data_dir == tmp_path
        assert config.sample_size == 25
        assert config.show_progress is False

    def test_overrides_win_and_none_is_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEDIAMIGRATE_BACKUP_DIR", str(tmp_path / "env-backups"))

        config = load_config(
            env_file=str(tmp_path / "absent.env"),
            data_dir=tmp_path,
            backup_dir=tmp_path / "cli-backups",
            db_path=None,
        )

        assert config.backup_dir == tmp_path / "cli-backups"
        assert config.db_path == tmp_path / "db_data" / "main.db"

    def test_env_file_is_loaded(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(f"MEDIAMIGRATE_UPLOADS_DIR={tmp_path / 'files'}\n")

        config = load_config(env_file=str(env_file))

        assert config.uploads_dir == Path(tmp_path / "files")


class TestErrors:

    def test_error_carries_stage_and_step(self):
        error = StorageIOError("disk full", stage="schema", step=3)
        assert str(error) == "[schema] (step 3) disk full"

    def test_duplicate_key_lists_names(self):
        error = DuplicateKeyError.for_names(["b.jpg", "a.jpg", "a.jpg"])
        assert error.file_names == ["a.jpg", "b.jpg"]
        assert "a.jpg, b.jpg" in str(error)

    def test_stage_error_wraps_cause(self):
        cause = StorageIOError("boom")
        error = StageError("files", cause, rolled_back=True)
        assert error.cause is cause
        assert error.stage == "files"
        assert "rolled back" in str(error)
