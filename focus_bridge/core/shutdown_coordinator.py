"""
Shutdown Coordinator - single point of control for graceful shutdown.

Signals, engine exit and frame-source exhaustion can all ask the runner to
shut down; the coordinator makes sure the registered cleanup runs once.
"""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from .logging_utils import get_module_logger


class ShutdownState(Enum):
    RUNNING = "running"
    REQUESTED = "requested"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class ShutdownCoordinator:
    """
    Coordinates shutdown of the bridge runner.

    Shutdown sequence:
    1. Signal/engine exit triggers initiate_shutdown()
    2. State transitions to REQUESTED
    3. Cleanup callbacks are executed in registration order
    4. State transitions to COMPLETE
    """

    def __init__(self):
        self.logger = get_module_logger("ShutdownCoordinator")
        self._state = ShutdownState.RUNNING
        self._shutdown_event = asyncio.Event()
        self._cleanup_callbacks: list[Callable[[], Awaitable[None]]] = []
        self._lock = asyncio.Lock()
        self.source: Optional[str] = None

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def is_shutting_down(self) -> bool:
        return self._state in (ShutdownState.REQUESTED, ShutdownState.IN_PROGRESS)

    @property
    def is_complete(self) -> bool:
        return self._state == ShutdownState.COMPLETE

    def register_cleanup(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Register an async cleanup callback; callbacks run in registration order."""
        self._cleanup_callbacks.append(callback)
        self.logger.debug("Registered cleanup callback: %s", getattr(callback, "__name__", callback))

    async def initiate_shutdown(self, source: str = "unknown") -> None:
        """
        Initiate graceful shutdown.

        If shutdown is already in progress, this call is a no-op.

        Args:
            source: Description of what triggered shutdown (for logging)
        """
        shutdown_start = time.time()

        async with self._lock:
            if self._state != ShutdownState.RUNNING:
                self.logger.debug("Shutdown already initiated (state=%s), ignoring request from %s",
                                  self._state.value, source)
                return

            self.logger.info("Shutdown initiated by: %s", source)
            self.source = source
            self._state = ShutdownState.REQUESTED

        await self._execute_cleanup()

        async with self._lock:
            self._state = ShutdownState.COMPLETE
            self._shutdown_event.set()

        self.logger.info("Shutdown complete in %.3fs", time.time() - shutdown_start)

    async def _execute_cleanup(self) -> None:
        async with self._lock:
            self._state = ShutdownState.IN_PROGRESS

        for i, callback in enumerate(self._cleanup_callbacks, 1):
            name = getattr(callback, "__name__", repr(callback))
            try:
                callback_start = time.time()
                await callback()
                self.logger.debug("Cleanup %d/%d %s done in %.3fs",
                                  i, len(self._cleanup_callbacks), name, time.time() - callback_start)
            except Exception as e:
                self.logger.error("Error in cleanup callback %s: %s", name, e, exc_info=True)

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()


_coordinator: Optional[ShutdownCoordinator] = None


def get_shutdown_coordinator() -> ShutdownCoordinator:
    """Get the global shutdown coordinator instance."""
    global _coordinator
    if _coordinator is None:
        _coordinator = ShutdownCoordinator()
    return _coordinator


def reset_shutdown_coordinator() -> None:
    """Reset the global coordinator (mainly for testing)."""
    global _coordinator
    _coordinator = None
