"""Remote path normalisation and validation utilities."""

from __future__ import annotations

import logging
import posixpath
from pathlib import PurePosixPath

logger = logging.getLogger(__name__)

# Characters that terminate or corrupt an FTP command line.
_CONTROL_CHARS = ("\x00", "\r", "\n")


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote console paths regardless of the
    local OS.
    """
    return posixpath.join(*parts)


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def has_control_chars(text: str) -> bool:
    """Return True if *text* contains NUL, CR or LF."""
    return any(ch in text for ch in _CONTROL_CHARS)


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe to place on an FTP command line.

    Rejects paths that contain control characters or path-traversal
    sequences (``..``).
    """
    if has_control_chars(path):
        logger.warning("Remote path rejected — contains control characters: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True
