"""
Shared fixtures: an isolated store, uploads tree and configuration per test.
"""

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

import pytest

from mediamigrate.config import MigrationConfig
from mediamigrate.models import LEGACY_DIRS, MediaType
from mediamigrate.store import Store

ENV_VARS = (
    "MEDIAMIGRATE_DATA_DIR",
    "MEDIAMIGRATE_DB_PATH",
    "MEDIAMIGRATE_UPLOADS_DIR",
    "MEDIAMIGRATE_BACKUP_DIR",
    "MEDIAMIGRATE_SAMPLE_SIZE",
    "MEDIAMIGRATE_LOG_LEVEL",
    "MEDIAMIGRATE_LOG_DIR",
    "MEDIAMIGRATE_PROGRESS",
)

# A PID above the kernel's maximum, never alive
DEAD_PID = 4_999_999


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config(tmp_path) -> MigrationConfig:
    return MigrationConfig(data_dir=tmp_path, show_progress=False)


@pytest.fixture
def store(config) -> Store:
    store = Store(config.db_path)
    store.ensure_legacy_tables()
    return store


@dataclass
class SeededData:
    """Names and contents of everything written by ``seed``."""
    images: Dict[str, bytes] = field(default_factory=dict)
    docs: Dict[str, bytes] = field(default_factory=dict)

    @property
    def all_files(self) -> Dict[str, bytes]:
        return {**self.images, **self.docs}


def checksum_of(content: bytes) -> bytes:
    return hashlib.sha256(content).digest()


def write_upload(config: MigrationConfig, media_type: MediaType, name: str, content: bytes) -> Path:
    path = config.uploads_dir / LEGACY_DIRS[media_type] / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


@pytest.fixture
def seed(store, config):
    """Insert legacy rows and write their files: ``seed(images=3, docs=2)``."""

    def _seed(images: int = 0, docs: int = 0, files: bool = True) -> SeededData:
        data = SeededData()
        for i in range(images):
            name = f"img_{i:04d}.jpg"
            content = f"image-bytes-{i}".encode() * 8
            store.insert_legacy(MediaType.IMAGE, name, checksum_of(content))
            if files:
                write_upload(config, MediaType.IMAGE, name, content)
            data.images[name] = content
        for i in range(docs):
            name = f"doc_{i:04d}.pdf"
            content = f"document-bytes-{i}".encode() * 8
            store.insert_legacy(MediaType.DOCUMENT, name, checksum_of(content))
            if files:
                write_upload(config, MediaType.DOCUMENT, name, content)
            data.docs[name] = content
        return data

    return _seed


@pytest.fixture
def foreign_lock(config):
    """Lock file owned by another live process."""
    config.lock_file.parent.mkdir(parents=True, exist_ok=True)
    config.lock_file.write_text(str(os.getppid()))
    yield config.lock_file
    config.lock_file.unlink(missing_ok=True)
