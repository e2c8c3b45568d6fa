"""Component-prefixed loggers under the ``focus_bridge`` namespace.

Every message goes out as ``[Component] text`` so the engine's stderr,
docker build output and supervisor state changes can be told apart in
one log file.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

NAMESPACE = "focus_bridge"


def _component_for(name: str) -> str:
    suffix = name[len(NAMESPACE):].lstrip(".") if name.startswith(NAMESPACE) else name
    return suffix or "Core"


class StructuredLogger:
    """Thin wrapper around ``logging.Logger`` that adds the component prefix."""

    def __init__(self, logger: logging.Logger, component: Optional[str] = None) -> None:
        self._logger = logger
        self._component = component or _component_for(logger.name)

    def __getattr__(self, item):
        if item.startswith("_"):
            raise AttributeError(item)
        return getattr(self._logger, item)

    @property
    def name(self) -> str:
        return self._logger.name

    @property
    def component(self) -> str:
        return self._component

    def _emit(self, level: int, message: object, args: tuple, kwargs: dict) -> None:
        if not self._logger.isEnabledFor(level):
            return
        text = str(message)
        if args:
            try:
                text = text % args
            except (TypeError, ValueError):
                text = f"{text} | args={' '.join(str(arg) for arg in args)}"
        self._logger.log(level, f"[{self._component}] {text}", **kwargs)

    def debug(self, message: object, *args, **kwargs) -> None:
        self._emit(logging.DEBUG, message, args, kwargs)

    def info(self, message: object, *args, **kwargs) -> None:
        self._emit(logging.INFO, message, args, kwargs)

    def warning(self, message: object, *args, **kwargs) -> None:
        self._emit(logging.WARNING, message, args, kwargs)

    def error(self, message: object, *args, **kwargs) -> None:
        self._emit(logging.ERROR, message, args, kwargs)

    def critical(self, message: object, *args, **kwargs) -> None:
        self._emit(logging.CRITICAL, message, args, kwargs)

    def getChild(self, suffix: str) -> "StructuredLogger":
        return StructuredLogger(self._logger.getChild(suffix), component=f"{self._component}.{suffix}")


LoggerLike = Union[StructuredLogger, logging.Logger, None]


def ensure_structured_logger(logger: LoggerLike, *, fallback_name: Optional[str] = None) -> StructuredLogger:
    """Accept whatever a caller passed as ``logger=`` and return a StructuredLogger."""
    if isinstance(logger, StructuredLogger):
        return logger
    if isinstance(logger, logging.Logger):
        return StructuredLogger(logger)
    return get_module_logger(fallback_name)


def get_module_logger(name: Optional[str] = None) -> StructuredLogger:
    if not name:
        full_name = NAMESPACE
    elif name.startswith(NAMESPACE):
        full_name = name
    else:
        full_name = f"{NAMESPACE}.{name}"
    return StructuredLogger(logging.getLogger(full_name))


__all__ = [
    "LoggerLike",
    "StructuredLogger",
    "ensure_structured_logger",
    "get_module_logger",
]
