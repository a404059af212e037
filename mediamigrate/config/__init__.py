# Config module - re-exports for convenience
from .config import (  # noqa: F401
    DB_FOLDER,
    DB_NAME,
    MIGRATION_NAME,
    MigrationConfig,
    load_config,
)
