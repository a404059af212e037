"""Migration configuration for the media unification engine.

Defines where the live store, the backup directory and the uploads tree live,
and how verification and progress reporting behave. Values come from
``MEDIAMIGRATE_*`` environment variables (optionally via a ``.env`` file) and
can be overridden per invocation by the CLI.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

DB_FOLDER = "db_data"
DB_NAME = "main.db"
MIGRATION_NAME = "media_unification_2024"

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class MigrationConfig:
    """Configuration for one store and its uploads tree.

    Attributes:
        data_dir: Base directory, defaults for the other paths derive from it
        db_path: Live SQLite store file
        uploads_dir: Root holding ``images/``, ``docs/`` and ``media/``
        backup_dir: Managed directory for backup artifacts
        sample_size: Records spot-checked by the verifier
        log_level: Logging level name for the CLI
        log_dir: Optional directory for a rotating log file
        show_progress: Show tqdm progress bars during file relocation
        migration_name: Name written to the migration state marker
    """

    data_dir: Path = field(default_factory=lambda: Path("."))
    db_path: Optional[Path] = None
    uploads_dir: Optional[Path] = None
    backup_dir: Optional[Path] = None
    sample_size: int = 100
    log_level: str = "INFO"
    log_dir: Optional[Path] = None
    show_progress: bool = True
    migration_name: str = MIGRATION_NAME

    def __post_init__(self) -> None:
        """Resolve derived paths and validate values."""
        self.data_dir = Path(self.data_dir)
        self.db_path = Path(self.db_path) if self.db_path else self.data_dir / DB_FOLDER / DB_NAME
        self.uploads_dir = Path(self.uploads_dir) if self.uploads_dir else self.data_dir / "uploads"
        self.backup_dir = Path(self.backup_dir) if self.backup_dir else self.data_dir / "backups"
        if self.log_dir is not None:
            self.log_dir = Path(self.log_dir)

        if self.sample_size < 1:
            raise ValueError(f"sample_size must be >= 1, got {self.sample_size}")

        self.log_level = self.log_level.upper()
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log_level: {self.log_level}")

    @property
    def images_dir(self) -> Path:
        """Legacy image directory."""
        return self.uploads_dir / "images"

    @property
    def docs_dir(self) -> Path:
        """Legacy document directory."""
        return self.uploads_dir / "docs"

    @property
    def media_dir(self) -> Path:
        """Unified media directory."""
        return self.uploads_dir / "media"

    @property
    def lock_file(self) -> Path:
        return self.data_dir / ".migration.lock"

    @property
    def state_file(self) -> Path:
        return self.data_dir / ".migration_state.json"

    def ensure_upload_directories(self) -> None:
        """Create the uploads root and all three type directories."""
        for path in (self.uploads_dir, self.media_dir, self.images_dir, self.docs_dir):
            path.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display and state files."""
        return {
            "data_dir": str(self.data_dir),
            "db_path": str(self.db_path),
            "uploads_dir": str(self.uploads_dir),
            "backup_dir": str(self.backup_dir),
            "sample_size": self.sample_size,
            "log_level": self.log_level,
            "log_dir": str(self.log_dir) if self.log_dir else None,
            "show_progress": self.show_progress,
            "migration_name": self.migration_name,
        }


def _env_path(name: str) -> Optional[Path]:
    value = os.getenv(name)
    return Path(value) if value else None


def load_config(env_file: Optional[str] = None, **overrides: Any) -> MigrationConfig:
    """
    Load configuration from the environment.

    Args:
        env_file: Optional ``.env`` file to load first (default: search cwd)
        **overrides: Explicit values that win over the environment; ``None``
            values are ignored so CLI flags can be passed through unchanged

    Returns:
        MigrationConfig instance
    """
    load_dotenv(env_file)

    values: Dict[str, Any] = {
        "data_dir": _env_path("MEDIAMIGRATE_DATA_DIR") or Path("."),
        "db_path": _env_path("MEDIAMIGRATE_DB_PATH"),
        "uploads_dir": _env_path("MEDIAMIGRATE_UPLOADS_DIR"),
        "backup_dir": _env_path("MEDIAMIGRATE_BACKUP_DIR"),
        "log_dir": _env_path("MEDIAMIGRATE_LOG_DIR"),
        "log_level": os.getenv("MEDIAMIGRATE_LOG_LEVEL", "INFO"),
        "sample_size": int(os.getenv("MEDIAMIGRATE_SAMPLE_SIZE", "100")),
        "show_progress": os.getenv("MEDIAMIGRATE_PROGRESS", "true").lower() in _TRUE_VALUES,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    return MigrationConfig(**values)
