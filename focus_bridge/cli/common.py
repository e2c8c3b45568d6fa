from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from focus_bridge.core.bridge_config import BridgeMode


LOG_LEVELS: dict[str, int] = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def _positive_number(value: str, typ: type, name: str):
    """Generic positive number validator for argparse."""
    try:
        parsed = typ(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Value must be a {name}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError("Value must be positive")
    return parsed

def positive_int(value: str) -> int:
    return _positive_number(value, int, "integer")

def positive_float(value: str) -> float:
    return _positive_number(value, float, "number")

def non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("Value must be an integer") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError("Value must not be negative")
    return parsed


def add_logging_arguments(
    parser: argparse.ArgumentParser,
    *,
    default_level: str = "info",
    default_console_output: bool = True,
) -> None:
    parser.add_argument(
        "--log-level",
        choices=sorted(LOG_LEVELS.keys()),
        default=default_level,
        help="Logging verbosity",
    )

    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Optional path for the rotating log file (default: logs/bridge.log)",
    )

    console_group = parser.add_mutually_exclusive_group()
    console_group.add_argument(
        "--console",
        dest="console_output",
        action="store_true",
        default=default_console_output,
        help="Also log to console (stderr)",
    )
    console_group.add_argument(
        "--no-console",
        dest="console_output",
        action="store_false",
        help="Log to file only",
    )


def add_bridge_arguments(parser: argparse.ArgumentParser) -> None:
    """Flags that override ``config.txt``; all default to None (not given)."""

    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in BridgeMode] + ["local"],
        default=None,
        help="Run the engine in a docker container or as a native binary",
    )
    parser.add_argument(
        "--api-key",
        dest="api_key",
        default=None,
        help="SmartSpectra API key (default: config or $SMARTSPECTRA_API_KEY)",
    )
    parser.add_argument("--docker-image", dest="docker_image", default=None, help="Docker image tag")
    parser.add_argument("--container-name", dest="container_name", default=None, help="Docker container name")
    parser.add_argument("--frame-dir", dest="frame_dir", type=Path, default=None,
                        help="Host directory shared with the container for frames")
    parser.add_argument("--build-context", dest="build_context", type=Path, default=None,
                        help="Directory containing bridge/Dockerfile")
    parser.add_argument("--bridge-path", dest="bridge_path", type=Path, default=None,
                        help="Path to the native engine binary")
    parser.add_argument("--camera-index", dest="camera_index", type=non_negative_int, default=None,
                        help="Camera device index")
    parser.add_argument("--capture-width", dest="capture_width", type=positive_int, default=None)
    parser.add_argument("--capture-height", dest="capture_height", type=positive_int, default=None)

    thresholds = parser.add_argument_group("analysis thresholds")
    for name in ("gaze", "blink", "pulse", "breathing"):
        thresholds.add_argument(
            f"--{name}-threshold",
            dest=f"{name}_threshold",
            type=float,
            default=None,
        )


BRIDGE_OVERRIDE_KEYS = (
    "mode",
    "api_key",
    "docker_image",
    "container_name",
    "frame_dir",
    "build_context",
    "bridge_path",
    "camera_index",
    "capture_width",
    "capture_height",
    "gaze_threshold",
    "blink_threshold",
    "pulse_threshold",
    "breathing_threshold",
)


def bridge_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {key: getattr(args, key, None) for key in BRIDGE_OVERRIDE_KEYS}


def install_exception_handlers(
    logger: logging.Logger,
    loop: Optional[asyncio.AbstractEventLoop] = None
) -> None:
    def handle_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logger.critical(
            "Uncaught exception",
            exc_info=(exc_type, exc_value, exc_traceback)
        )

    sys.excepthook = handle_exception

    if loop is not None:
        def handle_asyncio_exception(loop, context):
            exception = context.get('exception')
            message = context.get('message', 'Unhandled asyncio exception')
            if exception:
                logger.error("Asyncio exception: %s", message, exc_info=exception)
            else:
                logger.error("Asyncio error: %s, context: %s", message, context)

        loop.set_exception_handler(handle_asyncio_exception)


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    shutdown: Callable[[str], Awaitable[None]],
) -> None:
    """Register SIGINT/SIGTERM handlers that schedule ``shutdown(source)`` once."""

    shutdown_task: Optional[asyncio.Task] = None

    def signal_handler(sig: signal.Signals):
        nonlocal shutdown_task
        if shutdown_task is None or shutdown_task.done():
            shutdown_task = asyncio.create_task(shutdown(f"signal {sig.name}"))

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, signal_handler, sig)


def log_startup(logger: logging.Logger, title: str, **extra_info) -> None:
    logger.info("=" * 60)
    logger.info(title)
    logger.info("=" * 60)
    for key, value in extra_info.items():
        display_key = key.replace('_', ' ').title()
        logger.info("%s: %s", display_key, value)
    logger.info("=" * 60)
