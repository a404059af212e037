"""
Media Migration Utility Functions
=================================
Common helpers for checksums and human-readable output.
"""

import hashlib
from pathlib import Path
from typing import Union


def compute_checksum(file_path: Union[str, Path], chunk_size: int = 8192) -> bytes:
    """
    Calculate the SHA256 digest of a file's content.

    Args:
        file_path: File to hash
        chunk_size: Read size in bytes

    Returns:
        Raw 32-byte digest

    Raises:
        OSError: If the file cannot be read
    """
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        while chunk := f.read(chunk_size):
            sha256_hash.update(chunk)
    return sha256_hash.digest()


def format_file_size(size_bytes: int) -> str:
    """
    Convert bytes to human-readable format with auto-unit selection.

    Examples:
        >>> format_file_size(1024)
        '1.0 KB'
        >>> format_file_size(0)
        '0 B'
    """
    if size_bytes == 0:
        return "0 B"

    size = float(size_bytes)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if abs(size) < 1024.0:
            if unit == 'B':
                return f"{int(size)} {unit}"
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"


def format_duration(seconds: float) -> str:
    """Convert seconds to a short duration like "2.5s" or "1m 30s"."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"
