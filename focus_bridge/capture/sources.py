"""Frame sources that feed JPEG frames into a bridge session."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

import aiofiles
import cv2
import numpy as np

from ..core.logging_utils import LoggerLike, ensure_structured_logger

DEFAULT_JPEG_QUALITY = 85
DEFAULT_FPS = 30.0
REPLAY_SUFFIXES = (".jpg", ".jpeg")

Frame = Tuple[int, bytes]


class DeviceLost(Exception):
    """Raised when the camera disappears mid-capture."""


def timestamp_us() -> int:
    return time.time_ns() // 1000


def encode_jpeg(image: np.ndarray, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    ok, buffer = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buffer.tobytes()


class WebcamFrameSource:
    """Async JPEG frame reader for a local camera.

    Blocking OpenCV calls run in a worker thread so the event loop keeps
    servicing the engine's stdout while frames are captured.
    """

    def __init__(
        self,
        device_index: int = 0,
        *,
        width: Optional[int] = None,
        height: Optional[int] = None,
        fps: Optional[float] = None,
        quality: int = DEFAULT_JPEG_QUALITY,
        logger: LoggerLike = None,
    ) -> None:
        self.device_index = device_index
        self.width = width
        self.height = height
        self.fps = fps
        self.quality = quality
        self.logger = ensure_structured_logger(logger, fallback_name="WebcamFrameSource")
        self._cap = None
        self._frame_number = 0
        self._stopped = False

    @property
    def frame_number(self) -> int:
        return self._frame_number

    def _open_capture(self):
        """Prefer V4L2 backend then fallback to default."""
        backends = []
        v4l2 = getattr(cv2, "CAP_V4L2", None)
        if v4l2 is not None:
            backends.append(v4l2)
        backends.append(None)

        for backend in backends:
            cap = cv2.VideoCapture(self.device_index, backend) if backend is not None else cv2.VideoCapture(self.device_index)
            if cap is not None and cap.isOpened():
                return cap
            if cap is not None:
                cap.release()
        return None

    def _configure(self) -> None:
        cap = self._open_capture()
        if cap is None:
            raise DeviceLost(f"Camera {self.device_index} could not be opened")
        if self.width:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        if self.height:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        if self.fps:
            cap.set(cv2.CAP_PROP_FPS, self.fps)
        self._cap = cap

    async def start(self) -> None:
        await asyncio.to_thread(self._configure)
        self.logger.info(
            "Camera %d opened (%dx%d)",
            self.device_index,
            int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0),
            int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0),
        )

    def _read_jpeg(self) -> Optional[bytes]:
        success, image = self._cap.read()
        if not success or image is None:
            return None
        return encode_jpeg(image, self.quality)

    async def read_frame(self) -> Frame:
        if self._cap is None:
            raise DeviceLost(f"Camera {self.device_index} is not open")
        data = await asyncio.to_thread(self._read_jpeg)
        if data is None:
            raise DeviceLost(f"Camera {self.device_index} lost or failed to read")
        self._frame_number += 1
        return timestamp_us(), data

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._cap is not None:
            await asyncio.to_thread(self._cap.release)
            self._cap = None

    async def frames(self) -> AsyncIterator[Frame]:
        await self.start()
        try:
            while not self._stopped:
                yield await self.read_frame()
        finally:
            await self.stop()


class ReplayFrameSource:
    """Replays JPEG files from a directory, in name order, at a fixed rate."""

    def __init__(
        self,
        directory: Path,
        *,
        fps: float = DEFAULT_FPS,
        loop: bool = False,
        logger: LoggerLike = None,
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        self.directory = Path(directory)
        self.fps = fps
        self.loop = loop
        self.logger = ensure_structured_logger(logger, fallback_name="ReplayFrameSource")
        self._stopped = False

    def list_files(self) -> List[Path]:
        if not self.directory.is_dir():
            raise FileNotFoundError(f"Replay directory not found: {self.directory}")
        return sorted(
            path for path in self.directory.iterdir()
            if path.is_file() and path.suffix.lower() in REPLAY_SUFFIXES
        )

    async def stop(self) -> None:
        self._stopped = True

    async def frames(self) -> AsyncIterator[Frame]:
        files = self.list_files()
        if not files:
            self.logger.warning("No JPEG files in %s", self.directory)
            return

        self.logger.info("Replaying %d frames from %s at %.1f fps", len(files), self.directory, self.fps)
        interval = 1.0 / self.fps
        last_ts = 0
        while not self._stopped:
            for path in files:
                if self._stopped:
                    return
                async with aiofiles.open(path, "rb") as f:
                    data = await f.read()
                # Names must stay strictly increasing even on coarse clocks.
                ts = max(timestamp_us(), last_ts + 1)
                last_ts = ts
                yield ts, data
                await asyncio.sleep(interval)
            if not self.loop:
                return


__all__ = [
    "DeviceLost",
    "ReplayFrameSource",
    "WebcamFrameSource",
    "encode_jpeg",
    "timestamp_us",
]
