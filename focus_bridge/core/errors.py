"""Exceptions raised by the bridge supervisor.

Everything here is a configuration error: it is raised synchronously from
``BridgeSupervisor.start()`` and the session never gets past STARTING.
Process and engine failures are reported as notifications instead.
"""

from __future__ import annotations

from typing import Iterable, Optional


class BridgeError(Exception):
    """Base class for bridge supervisor errors."""


class AlreadyRunning(BridgeError):
    def __init__(self, message: str = "Bridge is already running") -> None:
        super().__init__(message)


class MissingCredential(BridgeError):
    def __init__(self, message: str = "No SMARTSPECTRA_API_KEY set. Please configure your API key.") -> None:
        super().__init__(message)


class RuntimeUnavailable(BridgeError):
    def __init__(
        self,
        message: str = (
            "Docker is not installed or not running. "
            "Install Docker Desktop: https://www.docker.com/products/docker-desktop/"
        ),
    ) -> None:
        super().__init__(message)


class ImageBuildFailed(BridgeError):
    """The engine image could not be built; ``exit_code`` is docker's."""

    def __init__(self, exit_code: Optional[int], message: Optional[str] = None) -> None:
        self.exit_code = exit_code
        super().__init__(message or f"Docker build failed with exit code {exit_code}")


class BuildContextNotFound(ImageBuildFailed):
    def __init__(self, searched: Iterable[str]) -> None:
        self.searched = list(searched)
        super().__init__(
            None,
            "Could not find project root (looking for bridge/Dockerfile). "
            "Run from the project directory, or build the image manually: "
            "docker build -t focus-wizard-bridge -f bridge/Dockerfile .",
        )


class BinaryNotFound(BridgeError):
    def __init__(self, candidates: Iterable[str]) -> None:
        self.candidates = list(candidates)
        super().__init__(
            "Could not find focus_bridge binary. "
            "Build it with: cd bridge && mkdir build && cd build && cmake .. && make\n"
            f"Searched: {', '.join(self.candidates)}"
        )


__all__ = [
    "BridgeError",
    "AlreadyRunning",
    "MissingCredential",
    "RuntimeUnavailable",
    "ImageBuildFailed",
    "BuildContextNotFound",
    "BinaryNotFound",
]
