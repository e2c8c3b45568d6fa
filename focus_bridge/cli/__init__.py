"""Command-line helpers shared by the focus bridge entry points."""

from .common import (
    LOG_LEVELS,
    add_bridge_arguments,
    add_logging_arguments,
    bridge_overrides,
    install_exception_handlers,
    install_signal_handlers,
    log_startup,
    non_negative_int,
    positive_float,
    positive_int,
)

__all__ = [
    "LOG_LEVELS",
    "add_bridge_arguments",
    "add_logging_arguments",
    "bridge_overrides",
    "install_exception_handlers",
    "install_signal_handlers",
    "log_startup",
    "non_negative_int",
    "positive_float",
    "positive_int",
]
