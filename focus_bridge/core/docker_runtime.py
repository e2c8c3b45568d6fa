"""Thin async wrapper around the ``docker`` command line."""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence

from .asyncio_utils import cancel_and_wait, create_logged_task
from .errors import BuildContextNotFound, ImageBuildFailed
from .logging_utils import get_module_logger
from .paths import DOCKERFILE_RELATIVE, PROJECT_ROOT

DOCKER_PLATFORM = "linux/amd64"
PROBE_TIMEOUT = 10.0
INSPECT_TIMEOUT = 5.0
REMOVE_TIMEOUT = 5.0
STOP_GRACE_SECONDS = 5
STOP_TIMEOUT = 10.0
BUILD_STATUS_WIDTH = 100

ProgressCallback = Callable[[str], Awaitable[None]]

logger = get_module_logger("DockerRuntime")


def find_build_context(start_dirs: Iterable[Path], max_depth: int = 10) -> Path:
    """Walk up from each start dir until one contains ``bridge/Dockerfile``."""
    searched: List[str] = []
    for start in start_dirs:
        directory = Path(start).resolve()
        for _ in range(max_depth):
            searched.append(str(directory))
            if (directory / DOCKERFILE_RELATIVE).is_file():
                return directory
            if directory.parent == directory:
                break
            directory = directory.parent
    raise BuildContextNotFound(searched)


def summarize_build_output(text: str, width: int = BUILD_STATUS_WIDTH) -> Optional[str]:
    """One status line for a chunk of build output: its last line, truncated."""
    stripped = text.strip()
    if not stripped:
        return None
    last_line = stripped.splitlines()[-1]
    return f"Building: {last_line[:width]}"


class DockerRuntime:
    """Runs docker subcommands without ever blocking the event loop."""

    def __init__(self, executable: str = "docker", platform: str = DOCKER_PLATFORM) -> None:
        self.executable = executable
        self.platform = platform
        self.logger = logger

    async def _run_quiet(self, args: Sequence[str], timeout: float) -> Optional[int]:
        """Run ``docker <args>`` discarding output; None if it could not finish."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            self.logger.debug("Could not run %s %s: %s", self.executable, args[0], e)
            return None

        try:
            return await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning("%s %s timed out after %.1fs", self.executable, args[0], timeout)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            return None

    async def is_available(self, timeout: float = PROBE_TIMEOUT) -> bool:
        """True only if the docker daemon answers ``docker info`` in time."""
        return await self._run_quiet(["info"], timeout) == 0

    async def image_exists(self, image: str, timeout: float = INSPECT_TIMEOUT) -> bool:
        return await self._run_quiet(["image", "inspect", image], timeout) == 0

    async def remove_container(self, name: str, timeout: float = REMOVE_TIMEOUT) -> bool:
        """Force-remove a leftover container; absence is not an error."""
        removed = await self._run_quiet(["rm", "-f", name], timeout) == 0
        self.logger.debug("Stale container %s %s", name, "removed" if removed else "not present")
        return removed

    async def stop_container(
        self,
        name: str,
        grace_seconds: int = STOP_GRACE_SECONDS,
        timeout: float = STOP_TIMEOUT,
    ) -> bool:
        """``docker stop``: SIGTERM, then SIGKILL once the grace period ends."""
        stopped = await self._run_quiet(["stop", "-t", str(grace_seconds), name], timeout) == 0
        if not stopped:
            self.logger.debug("docker stop %s did not succeed (container may already be gone)", name)
        return stopped

    def build_args(self, image: str, context: Path) -> List[str]:
        return [
            "build",
            "--platform",
            self.platform,
            "-t",
            image,
            "-f",
            str(context / DOCKERFILE_RELATIVE),
            str(context),
        ]

    async def build_image(
        self,
        image: str,
        context: Optional[Path] = None,
        *,
        progress: Optional[ProgressCallback] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Build ``image`` from ``<context>/bridge/Dockerfile``.

        Each chunk of build stdout is logged and forwarded to ``progress`` as
        a single truncated status line. Stderr is logged only.

        Raises:
            BuildContextNotFound: no context given and none could be located.
            ImageBuildFailed: docker exited non-zero, could not be started,
                or the optional ``timeout`` elapsed.
        """
        if context is None:
            context = find_build_context([Path.cwd(), PROJECT_ROOT])

        args = self.build_args(image, context)
        self.logger.info("Building image: %s %s", self.executable, " ".join(args))

        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ImageBuildFailed(None, f"Docker build error: {e}") from e

        stderr_task = create_logged_task(
            self._log_build_stderr(process),
            logger=self.logger,
            context="docker-build-stderr",
        )

        try:
            returncode = await asyncio.wait_for(
                self._pump_build_stdout(process, progress),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise ImageBuildFailed(None, f"Docker build timed out after {timeout:.0f}s") from None
        finally:
            await asyncio.wait({stderr_task}, timeout=1.0)
            await cancel_and_wait(stderr_task)

        if returncode != 0:
            raise ImageBuildFailed(returncode)

        self.logger.info("Image %s built", image)

    async def _pump_build_stdout(
        self,
        process: asyncio.subprocess.Process,
        progress: Optional[ProgressCallback],
    ) -> int:
        assert process.stdout is not None
        while True:
            chunk = await process.stdout.read(4096)
            if not chunk:
                break
            text = chunk.decode(errors="replace")
            if text.strip():
                self.logger.info("[Docker Build] %s", text.strip())
            status = summarize_build_output(text)
            if status and progress is not None:
                await progress(status)
        return await process.wait()

    async def _log_build_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            text = line.decode(errors="replace").strip()
            if text:
                self.logger.info("[Docker Build] %s", text)


__all__ = [
    "DOCKER_PLATFORM",
    "STOP_GRACE_SECONDS",
    "DockerRuntime",
    "find_build_context",
    "summarize_build_output",
]
