"""Execution backends for the analysis engine.

Both backends expose the same capability set (prepare, compose_args, spawn,
terminate, force_kill). The supervisor picks one per session from
``BridgeOptions.mode`` and never switches it afterwards.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Protocol

from .bridge_config import API_KEY_ENV, BridgeMode, BridgeOptions
from .docker_runtime import STOP_TIMEOUT, DockerRuntime
from .errors import BinaryNotFound, RuntimeUnavailable
from .frame_writer import CONTAINER_FRAME_DIR, FrameWriter
from .logging_utils import LoggerLike, ensure_structured_logger
from .orphan_cleanup import cleanup_orphaned_bridges
from .paths import NATIVE_BUILD_BINARY, RESOURCE_BINARY

BRIDGE_PATH_ENV = "FOCUS_BRIDGE_PATH"
DNS_SERVERS = ("8.8.8.8", "8.8.4.4")
NATIVE_KILL_DELAY = 5.0


class PrepareContext(Protocol):
    """What a backend may do to its session while preparing."""

    async def enter_preparing(self) -> None: ...

    async def report_status(self, text: str) -> None: ...


class BridgeBackend(ABC):
    mode: BridgeMode
    # Seconds between the graceful termination request and a forced kill.
    kill_delay: float
    starting_status: Optional[str] = None

    def __init__(self, options: BridgeOptions, *, logger: LoggerLike = None) -> None:
        self.options = options
        self.logger = ensure_structured_logger(logger, fallback_name=f"Backend.{self.mode.value}")

    @property
    def frame_writer(self) -> Optional[FrameWriter]:
        return None

    @property
    @abstractmethod
    def program(self) -> str:
        """Executable spawned for the session."""

    @abstractmethod
    async def prepare(self, context: PrepareContext) -> None:
        """Check prerequisites; raises a BridgeError subclass when unmet."""

    @abstractmethod
    def compose_args(self) -> List[str]:
        """Command-line arguments passed to ``program``."""

    @abstractmethod
    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Request a graceful exit without waiting for it."""

    async def force_kill(self, process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()

    def redact(self, args: List[str]) -> List[str]:
        key = self.options.api_key
        if not key:
            return list(args)
        return [arg.replace(key, "***") for arg in args]

    async def spawn(self) -> asyncio.subprocess.Process:
        args = self.compose_args()
        self.logger.info("Starting %s: %s %s", self.mode.value, self.program, " ".join(self.redact(args)))
        return await asyncio.create_subprocess_exec(
            self.program,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    def release(self) -> None:
        """Drop per-session resources; safe to call more than once."""


class DockerBackend(BridgeBackend):
    mode = BridgeMode.DOCKER
    kill_delay = STOP_TIMEOUT
    starting_status = "Starting SmartSpectra container..."

    def __init__(
        self,
        options: BridgeOptions,
        *,
        runtime: Optional[DockerRuntime] = None,
        logger: LoggerLike = None,
    ) -> None:
        super().__init__(options, logger=logger)
        self.runtime = runtime or DockerRuntime()
        self._frame_writer: Optional[FrameWriter] = None
        self._released = False

    @property
    def frame_writer(self) -> Optional[FrameWriter]:
        return self._frame_writer

    @property
    def program(self) -> str:
        return self.runtime.executable

    @property
    def container_name(self) -> str:
        return self.options.resolved_container_name

    async def prepare(self, context: PrepareContext) -> None:
        if not await self.runtime.is_available():
            raise RuntimeUnavailable()

        await self.ensure_image(context)

        # Leftover from a previous run that was never stopped.
        await self.runtime.remove_container(self.container_name)

        writer = FrameWriter(self.options.frame_dir, logger=self.logger.getChild("FrameWriter"))
        writer.init()
        self._frame_writer = writer

    async def ensure_image(self, context: PrepareContext) -> None:
        image = self.options.docker_image
        if await self.runtime.image_exists(image):
            await context.report_status("Docker image already built")
            return

        await context.enter_preparing()
        await context.report_status("Building Docker image (first run, may take a few minutes)...")
        await self.runtime.build_image(image, self.options.build_context, progress=context.report_status)
        await context.report_status("Docker image built successfully")

    def compose_args(self) -> List[str]:
        if self._frame_writer is None:
            raise RuntimeError("prepare() must run before compose_args()")

        args = [
            "run",
            "--rm",
            "--platform",
            self.runtime.platform,
            "--name",
            self.container_name,
        ]
        for server in DNS_SERVERS:
            args.extend(["--dns", server])
        args.extend([
            "-v",
            f"{self._frame_writer.directory}:{CONTAINER_FRAME_DIR}",
            "-e",
            f"{API_KEY_ENV}={self.options.api_key}",
            self.options.docker_image,
            "--mode=server",
            f"--file_stream_path={self._frame_writer.container_file_stream_path}",
            "--erase_read_files=true",
            "--rescan_delay_ms=5",
        ])
        args.extend(self.options.threshold_args())
        return args

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        await self.runtime.stop_container(self.container_name)

    async def force_kill(self, process: asyncio.subprocess.Process) -> None:
        await super().force_kill(process)
        await self.runtime.remove_container(self.container_name)

    def release(self) -> None:
        # Writer stays attached after cleanup; late frames hit an inactive writer.
        if self._frame_writer is not None and not self._released:
            self._released = True
            self._frame_writer.cleanup()


class NativeBackend(BridgeBackend):
    mode = BridgeMode.NATIVE
    kill_delay = NATIVE_KILL_DELAY

    def __init__(self, options: BridgeOptions, *, logger: LoggerLike = None) -> None:
        super().__init__(options, logger=logger)
        self._binary: Optional[Path] = None

    @property
    def program(self) -> str:
        if self._binary is None:
            raise RuntimeError("prepare() must run before spawn()")
        return str(self._binary)

    def binary_candidates(self) -> List[Path]:
        candidates = [
            self.options.bridge_path,
            os.environ.get(BRIDGE_PATH_ENV) or None,
            NATIVE_BUILD_BINARY,
            RESOURCE_BINARY,
        ]
        return [Path(candidate) for candidate in candidates if candidate]

    def resolve_binary(self) -> Path:
        candidates = self.binary_candidates()
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        raise BinaryNotFound(str(candidate) for candidate in candidates)

    async def prepare(self, context: PrepareContext) -> None:
        self._binary = self.resolve_binary()
        self.logger.debug("Using engine binary %s", self._binary)
        if self.options.cleanup_orphans:
            await asyncio.to_thread(cleanup_orphaned_bridges, self._binary.name)

    def compose_args(self) -> List[str]:
        args = [f"--api_key={self.options.api_key}"]
        if self.options.camera_index is not None:
            args.append(f"--camera_device_index={self.options.camera_index}")
        if self.options.capture_width is not None:
            args.append(f"--capture_width={self.options.capture_width}")
        if self.options.capture_height is not None:
            args.append(f"--capture_height={self.options.capture_height}")
        args.extend(self.options.threshold_args())
        return args

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            process.terminate()


def create_backend(
    options: BridgeOptions,
    *,
    runtime: Optional[DockerRuntime] = None,
    logger: LoggerLike = None,
) -> BridgeBackend:
    if options.mode is BridgeMode.DOCKER:
        return DockerBackend(options, runtime=runtime, logger=logger)
    return NativeBackend(options, logger=logger)


__all__ = [
    "BRIDGE_PATH_ENV",
    "BridgeBackend",
    "DockerBackend",
    "NativeBackend",
    "PrepareContext",
    "create_backend",
]
