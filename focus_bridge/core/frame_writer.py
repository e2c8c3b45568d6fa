"""Shared frame directory between the capture side and the engine.

Frames are written as ``frame<16-digit microsecond timestamp>.jpg``. The
width is fixed and zero-padded, so a plain directory listing sorted by name
is also sorted by capture time; the engine relies on that and never parses
the timestamps itself. In docker mode the directory is bind-mounted at
``/frames`` inside the container.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Optional, Union

from .file_sync_utils import atomic_write_bytes
from .logging_utils import LoggerLike, ensure_structured_logger
from .paths import DEFAULT_FRAME_DIR

FRAME_PREFIX = "frame"
FRAME_SUFFIX = ".jpg"
TIMESTAMP_WIDTH = 16
END_OF_STREAM_NAME = "end_of_stream"
CONTAINER_FRAME_DIR = "/frames"

_MAX_TIMESTAMP_US = 10 ** TIMESTAMP_WIDTH - 1


def frame_filename(timestamp_us: Union[int, float]) -> str:
    """Return the frame file name for a capture timestamp in microseconds."""
    value = int(timestamp_us)
    if value < 0 or value > _MAX_TIMESTAMP_US:
        raise ValueError(
            f"Frame timestamp {timestamp_us!r} does not fit in {TIMESTAMP_WIDTH} digits"
        )
    return f"{FRAME_PREFIX}{value:0{TIMESTAMP_WIDTH}d}{FRAME_SUFFIX}"


class FrameWriter:

    def __init__(
        self,
        frame_dir: Optional[Union[str, Path]] = None,
        *,
        fsync: bool = False,
        logger: LoggerLike = None,
    ) -> None:
        self._frame_dir = Path(frame_dir) if frame_dir else DEFAULT_FRAME_DIR
        self._fsync = fsync
        self._frame_count = 0
        self._active = False
        self._dropped = 0
        self.logger = ensure_structured_logger(logger, fallback_name="FrameWriter")

    @property
    def directory(self) -> Path:
        """The host directory where frames are written."""
        return self._frame_dir

    @property
    def container_file_stream_path(self) -> str:
        """Frame path pattern as seen from inside the container.

        The 16 zeros tell the engine the digit width of the timestamp field.
        """
        return f"{CONTAINER_FRAME_DIR}/{FRAME_PREFIX}{'0' * TIMESTAMP_WIDTH}{FRAME_SUFFIX}"

    @property
    def count(self) -> int:
        return self._frame_count

    @property
    def is_active(self) -> bool:
        return self._active

    def init(self) -> None:
        """Create the directory if missing and drop leftovers from a crashed run."""
        self._frame_dir.mkdir(parents=True, exist_ok=True)
        self.clear_frames()
        self._frame_count = 0
        self._dropped = 0
        self._active = True
        self.logger.info("Frame directory ready: %s", self._frame_dir)

    def write_frame(self, timestamp_us: Union[int, float], data: bytes) -> Optional[Path]:
        """Write one encoded frame; returns its path, or None if nothing was written."""
        if not self._active:
            self._dropped += 1
            self.logger.debug("Dropping frame %s - writer inactive", timestamp_us)
            return None

        path = self._frame_dir / frame_filename(timestamp_us)
        try:
            atomic_write_bytes(path, bytes(data), fsync=self._fsync)
        except OSError as e:
            self.logger.error("Failed to write frame %s: %s", path.name, e)
            return None

        self._frame_count += 1
        return path

    async def write_frame_async(self, timestamp_us: Union[int, float], data: bytes) -> Optional[Path]:
        return await asyncio.to_thread(self.write_frame, timestamp_us, data)

    def write_end_of_stream(self) -> None:
        """Drop the zero-length marker that tells the engine no more frames follow."""
        try:
            (self._frame_dir / END_OF_STREAM_NAME).write_bytes(b"")
            self.logger.debug("Wrote end_of_stream marker after %d frames", self._frame_count)
        except OSError as e:
            self.logger.debug("Could not write end_of_stream marker: %s", e)

    def clear_frames(self) -> int:
        """Remove every entry from the frame directory; returns how many went."""
        removed = 0
        try:
            entries = list(self._frame_dir.iterdir())
        except OSError:
            return 0

        for entry in entries:
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                removed += 1
            except OSError as e:
                self.logger.debug("Could not remove %s: %s", entry, e)

        if removed:
            self.logger.info("Cleared %d leftover file(s) from %s", removed, self._frame_dir)
        return removed

    def cleanup(self) -> None:
        """Stop accepting frames and remove the directory entirely."""
        self._active = False
        shutil.rmtree(self._frame_dir, ignore_errors=True)
        if self._dropped:
            self.logger.debug("%d frame(s) dropped while inactive", self._dropped)
        self.logger.info("Frame directory removed: %s (%d frames written)", self._frame_dir, self._frame_count)


__all__ = [
    "CONTAINER_FRAME_DIR",
    "END_OF_STREAM_NAME",
    "FRAME_PREFIX",
    "FRAME_SUFFIX",
    "TIMESTAMP_WIDTH",
    "FrameWriter",
    "frame_filename",
]
