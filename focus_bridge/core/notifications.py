"""
Outward notifications emitted by the bridge supervisor.

Every decoded engine event, plus process exit and process-level failures,
becomes one ``BridgeNotification``. Observers are called one at a time in
registration order, and each notification is fully delivered before the
next is dispatched, so observers see the engine's output order.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from .logging_utils import get_module_logger
from .protocol import EngineErrorKind, FocusData


class NotificationKind(Enum):
    READY = "ready"
    STATUS = "status"
    FOCUS = "focus"
    METRICS = "metrics"
    EDGE = "edge"
    ERROR = "error"
    CLOSE = "close"


class ErrorSource(Enum):
    """Where an ERROR notification came from."""
    ENGINE = "engine"      # "error" event on the engine's stdout
    PROCESS = "process"    # spawn failure or other out-of-band process error


@dataclass
class BridgeNotification:
    kind: NotificationKind
    text: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    exit_code: Optional[int] = None
    error_source: Optional[ErrorSource] = None
    error_kind: Optional[EngineErrorKind] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def focus(self) -> Optional[FocusData]:
        if self.kind is not NotificationKind.FOCUS:
            return None
        return FocusData.from_payload(self.payload)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly form, as printed by the command-line runner."""
        data: Dict[str, Any] = {"kind": self.kind.value}
        if self.text is not None:
            data["text"] = self.text
        if self.payload:
            data["payload"] = self.payload
        if self.exit_code is not None:
            data["exit_code"] = self.exit_code
        if self.error_source is not None:
            data["error_source"] = self.error_source.value
        if self.error_kind is not None:
            data["error_kind"] = self.error_kind.value
        data["timestamp"] = self.timestamp.isoformat()
        return data

    # ------------------------------------------------------------------
    # Constructors

    @classmethod
    def ready(cls) -> "BridgeNotification":
        return cls(NotificationKind.READY)

    @classmethod
    def status(cls, text: str) -> "BridgeNotification":
        return cls(NotificationKind.STATUS, text=text)

    @classmethod
    def data_event(cls, kind: NotificationKind, payload: Dict[str, Any]) -> "BridgeNotification":
        return cls(kind, payload=payload)

    @classmethod
    def error(
        cls,
        message: str,
        *,
        source: ErrorSource,
        error_kind: Optional[EngineErrorKind] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> "BridgeNotification":
        return cls(
            NotificationKind.ERROR,
            text=message,
            payload=payload or {},
            error_source=source,
            error_kind=error_kind,
        )

    @classmethod
    def close(cls, exit_code: Optional[int]) -> "BridgeNotification":
        return cls(NotificationKind.CLOSE, exit_code=exit_code)


NotificationObserver = Callable[[BridgeNotification], Union[Awaitable[None], None]]


class NotificationHub:
    """Ordered observer list with optional per-observer kind filters."""

    def __init__(self) -> None:
        self.logger = get_module_logger("NotificationHub")
        self._observers: List[NotificationObserver] = []
        self._filters: Dict[NotificationObserver, Optional[Set[NotificationKind]]] = {}

    def add_observer(
        self,
        observer: NotificationObserver,
        *,
        kinds: Optional[Set[NotificationKind]] = None,
    ) -> None:
        """
        Register an observer.

        Args:
            observer: Sync or async callable taking a BridgeNotification
            kinds: Optional set of kinds to receive. If None, receives all.
        """
        if observer not in self._observers:
            self._observers.append(observer)
            self._filters[observer] = set(kinds) if kinds else None
            self.logger.debug("Added observer %s (filter: %s)", _observer_name(observer), kinds)

    def remove_observer(self, observer: NotificationObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)
            self._filters.pop(observer, None)
            self.logger.debug("Removed observer %s", _observer_name(observer))

    def __len__(self) -> int:
        return len(self._observers)

    async def publish(self, notification: BridgeNotification) -> None:
        for observer in list(self._observers):
            kind_filter = self._filters.get(observer)
            if kind_filter is not None and notification.kind not in kind_filter:
                continue

            try:
                result = observer(notification)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(
                    "Observer %s error handling %s: %s",
                    _observer_name(observer),
                    notification.kind.value,
                    e,
                    exc_info=True,
                )


def _observer_name(observer: Any) -> str:
    return getattr(observer, "__name__", None) or repr(observer)


class NotificationQueue:
    """Observer that buffers notifications for ``async for`` consumers."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def __call__(self, notification: BridgeNotification) -> None:
        await self._queue.put(notification)

    async def get(self) -> BridgeNotification:
        return await self._queue.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> BridgeNotification:
        return await self._queue.get()


__all__ = [
    "BridgeNotification",
    "ErrorSource",
    "NotificationHub",
    "NotificationKind",
    "NotificationObserver",
    "NotificationQueue",
]
