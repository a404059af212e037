"""
Logging setup for the CLI.

Library modules only create ``logging.getLogger(__name__)`` loggers; handlers
are attached here, once, by the entry point.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_NAME = "mediamigrate.log"


def setup_logging(level: str = "INFO", log_dir: Optional[Union[str, Path]] = None) -> None:
    """
    Configure the root logger.

    Args:
        level: Logging level name
        log_dir: If set, also log to ``<log_dir>/mediamigrate.log`` (rotated at 10 MB)
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    ch = logging.StreamHandler(sys.stderr)
    ch.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(ch)

    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(
            log_dir / LOG_FILE_NAME, maxBytes=10 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(fh)
