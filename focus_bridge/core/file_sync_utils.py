"""
Cross-platform file sync and atomic write helpers.

On POSIX systems uses os.fsync(); on Windows msvcrt._commit(), which wraps
FlushFileBuffers. Atomic writes go through a hidden temp file in the target
directory followed by os.replace(), so readers scanning the directory never
see a half-written file under its final name.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Union

from .logging_utils import get_module_logger

logger = get_module_logger("FileSyncUtils")

_msvcrt = None
if sys.platform == "win32":
    import msvcrt as _msvcrt


def safe_fsync(fd: int) -> bool:
    """Sync file descriptor to disk (cross-platform).

    Returns:
        True if sync succeeded, False if it failed. Failures are logged at
        debug level and never raised; fsync is advisory on some systems.
    """
    try:
        if _msvcrt is not None:
            _msvcrt._commit(fd)
        else:
            os.fsync(fd)
        return True
    except OSError as e:
        logger.debug("fsync failed for fd %d: %s", fd, e)
        return False


def fsync_file(file_obj) -> bool:
    """Flush and sync an open file object to disk."""
    try:
        file_obj.flush()
        return safe_fsync(file_obj.fileno())
    except (OSError, AttributeError, ValueError) as e:
        logger.debug("fsync_file failed: %s", e)
        return False


def temp_path_for(path: Union[str, Path]) -> Path:
    """Hidden sibling used while ``path`` is being written."""
    path = Path(path)
    return path.with_name(f".{path.name}.{os.getpid()}.tmp")


def atomic_write_bytes(path: Union[str, Path], data: bytes, *, fsync: bool = False) -> Path:
    """Write ``data`` to ``path`` so that it appears all at once.

    Raises:
        OSError: when the directory is missing or not writable. The temp file
            is removed before the error propagates.
    """
    path = Path(path)
    tmp_path = temp_path_for(path)
    try:
        with open(tmp_path, "wb") as fh:
            fh.write(data)
            if fsync:
                fsync_file(fh)
        os.replace(tmp_path, path)
    except OSError:
        try:
            tmp_path.unlink()
        except OSError:
            pass
        raise
    return path


__all__ = ["safe_fsync", "fsync_file", "temp_path_for", "atomic_write_bytes"]
