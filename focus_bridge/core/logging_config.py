"""Root logging setup for ``focus-bridge``.

Console output goes to stderr; stdout carries the notification stream
printed by ``focus-bridge run``.
"""

from __future__ import annotations

import contextlib
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 1024 * 1024
LOG_BACKUPS = 3


def coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    value = getattr(logging, level.upper(), None)
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level '{level}'")
    return value


def configure_logging(
    level: Union[int, str] = logging.INFO,
    *,
    force: bool = False,
    console: bool = True,
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """Install the stderr and rotating file handlers on the root logger.

    Without ``force`` an already configured root logger only has its level
    changed.
    """
    numeric_level = coerce_level(level)
    root = logging.getLogger()
    root.setLevel(numeric_level)

    if root.handlers and not force:
        return

    for handler in list(root.handlers):
        root.removeHandler(handler)
        with contextlib.suppress(Exception):
            handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    handlers: list[logging.Handler] = []

    if console:
        handlers.append(logging.StreamHandler(sys.stderr))

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
        )

    for handler in handlers or [logging.NullHandler()]:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)


__all__ = ["configure_logging", "coerce_level", "LOG_FORMAT", "LOG_DATEFMT"]
