"""``focus-bridge`` command-line entry point.

Subcommands:
    check-docker   probe the docker daemon (exit 0 when usable)
    build-image    make sure the engine image exists, building it if needed
    run            supervise one engine session and print its notifications
                   to stdout as JSON lines
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from focus_bridge.capture import DeviceLost, ReplayFrameSource, WebcamFrameSource
from focus_bridge.cli import (
    add_bridge_arguments,
    add_logging_arguments,
    bridge_overrides,
    install_exception_handlers,
    install_signal_handlers,
    log_startup,
    positive_float,
)
from focus_bridge.core import (
    BridgeError,
    BridgeMode,
    BridgeNotification,
    BridgeOptions,
    BridgeSupervisor,
    ImageBuildFailed,
    NotificationKind,
    get_shutdown_coordinator,
)
from focus_bridge.core.asyncio_utils import cancel_and_wait, create_logged_task
from focus_bridge.core.config_manager import get_config_manager
from focus_bridge.core.docker_runtime import PROBE_TIMEOUT, STOP_TIMEOUT, DockerRuntime
from focus_bridge.core.logging_config import configure_logging
from focus_bridge.core.logging_utils import get_module_logger
from focus_bridge.core.paths import CONFIG_PATH, ensure_directories, writable_log_file
from focus_bridge.core.shutdown_coordinator import ShutdownState

logger = get_module_logger("Runner")

# Extra time on top of the docker stop timeout before giving up on the close.
CLOSE_WAIT_MARGIN = 5.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="focus-bridge",
        description="Supervise the SmartSpectra focus analysis engine",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Configuration file (default: {CONFIG_PATH.name} in the project root)",
    )
    add_logging_arguments(parser, default_level=None)

    subparsers = parser.add_subparsers(dest="command", required=True)

    check = subparsers.add_parser("check-docker", help="Check whether docker is usable")
    check.add_argument("--timeout", type=positive_float, default=PROBE_TIMEOUT)

    build = subparsers.add_parser("build-image", help="Build the engine docker image if missing")
    build.add_argument("--docker-image", dest="docker_image", default=None, help="Docker image tag")
    build.add_argument("--build-context", dest="build_context", type=Path, default=None,
                       help="Directory containing bridge/Dockerfile")
    build.add_argument("--force", action="store_true", help="Rebuild even if the image exists")

    run = subparsers.add_parser("run", help="Run an engine session")
    add_bridge_arguments(run)
    run.add_argument(
        "--source",
        choices=["webcam", "replay", "none"],
        default=None,
        help="Where frames come from in docker mode (default: webcam)",
    )
    run.add_argument("--replay-dir", dest="replay_dir", type=Path, default=None,
                     help="Directory of JPEG files for --source replay")
    run.add_argument("--loop", action="store_true", help="Loop the replay directory")
    run.add_argument("--fps", type=positive_float, default=None, help="Frame rate for the frame source")

    return parser


def load_config(path: Optional[Path]) -> Dict[str, str]:
    return get_config_manager().read_config(path or CONFIG_PATH)


def setup_logging(args: argparse.Namespace, config: Dict[str, str]) -> Path:
    config_manager = get_config_manager()
    level = args.log_level or config_manager.get_str(config, "log_level", "info")
    ensure_directories()
    log_file = args.log_file or writable_log_file()
    configure_logging(level, force=True, console=args.console_output, log_file=log_file)
    return log_file


def notification_printer(stream: TextIO):
    """Observer that writes each notification to ``stream`` as one JSON line."""

    def emit(notification: BridgeNotification) -> None:
        stream.write(json.dumps(notification.to_dict()) + "\n")
        stream.flush()

    return emit


# ----------------------------------------------------------------------
# Subcommands


async def check_docker(args: argparse.Namespace, config: Dict[str, str]) -> int:
    available = await BridgeSupervisor.is_docker_available(timeout=args.timeout)
    print("docker: available" if available else "docker: unavailable")
    return 0 if available else 1


async def build_image(args: argparse.Namespace, config: Dict[str, str]) -> int:
    options = BridgeOptions.from_config(
        config,
        docker_image=args.docker_image,
        build_context=args.build_context,
    )
    runtime = DockerRuntime()

    if not await runtime.is_available():
        logger.error("Docker is not available")
        return 1

    if not args.force and await runtime.image_exists(options.docker_image):
        print("Docker image already built")
        return 0

    async def progress(text: str) -> None:
        print(text, flush=True)

    try:
        await runtime.build_image(options.docker_image, options.build_context, progress=progress)
    except ImageBuildFailed as e:
        logger.error("%s", e)
        return 1

    print("Docker image built successfully")
    return 0


def create_frame_source(args: argparse.Namespace, options: BridgeOptions, config: Dict[str, str]):
    config_manager = get_config_manager()
    source = args.source or config_manager.get_str(config, "frame_source", "webcam")
    fps = args.fps or config_manager.get_float(config, "frame_rate", 30.0)

    if source == "none":
        return None
    if options.mode is BridgeMode.NATIVE:
        logger.info("Native engine captures the camera itself; ignoring frame source '%s'", source)
        return None
    if source == "replay":
        replay_dir = args.replay_dir or config_manager.get_optional_path(config, "replay_dir")
        if replay_dir is None:
            raise ValueError("--source replay requires --replay-dir")
        return ReplayFrameSource(replay_dir, fps=fps, loop=args.loop)
    if source == "webcam":
        return WebcamFrameSource(
            options.camera_index or 0,
            width=options.capture_width,
            height=options.capture_height,
            fps=fps,
        )
    raise ValueError(f"Unknown frame source '{source}'")


async def run_session(args: argparse.Namespace, config: Dict[str, str]) -> int:
    options = BridgeOptions.from_config(config, **bridge_overrides(args))
    try:
        frame_source = create_frame_source(args, options, config)
    except ValueError as e:
        logger.error("%s", e)
        return 2

    supervisor = BridgeSupervisor()
    coordinator = get_shutdown_coordinator()
    pump_task: Optional[asyncio.Task] = None
    state: Dict[str, Any] = {"engine_exit": None, "unexpected_exit": False}

    supervisor.add_observer(notification_printer(sys.stdout))

    def on_close(notification: BridgeNotification) -> None:
        state["engine_exit"] = notification.exit_code
        # A close that arrives before any shutdown request means the engine quit on its own.
        state["unexpected_exit"] = coordinator.state is ShutdownState.RUNNING
        create_logged_task(
            coordinator.initiate_shutdown("engine exit"),
            logger=logger,
            context="engine-exit-shutdown",
        )

    supervisor.add_observer(on_close, kinds={NotificationKind.CLOSE})

    async def pump_frames() -> None:
        try:
            async for timestamp_us, data in frame_source.frames():
                await supervisor.write_frame_async(timestamp_us, data)
        except (DeviceLost, OSError) as e:
            logger.error("Frame source failed: %s", e)
            await coordinator.initiate_shutdown("frame source lost")
            return
        logger.info("Frame source exhausted")
        await coordinator.initiate_shutdown("frame source exhausted")

    async def stop_frame_source() -> None:
        if frame_source is not None:
            await frame_source.stop()
        if pump_task is not None and pump_task is not asyncio.current_task():
            await cancel_and_wait(pump_task)

    async def stop_bridge() -> None:
        await supervisor.stop()
        try:
            await supervisor.wait_closed(timeout=STOP_TIMEOUT + CLOSE_WAIT_MARGIN)
        except asyncio.TimeoutError:
            logger.error("Bridge did not close within %.0fs", STOP_TIMEOUT + CLOSE_WAIT_MARGIN)

    coordinator.register_cleanup(stop_frame_source)
    coordinator.register_cleanup(stop_bridge)

    loop = asyncio.get_running_loop()
    install_signal_handlers(loop, coordinator.initiate_shutdown)

    log_startup(
        logger,
        "Focus Bridge - Session Starting",
        mode=options.mode.value,
        docker_image=options.docker_image if options.mode is BridgeMode.DOCKER else "-",
        frame_source=type(frame_source).__name__ if frame_source else "none",
    )
    logger.debug("Options: %s", options.redacted())

    try:
        await supervisor.start(options)
    except BridgeError as e:
        logger.error("Failed to start bridge: %s", e)
        await coordinator.initiate_shutdown("start failure")
        return 1

    if frame_source is not None and supervisor.active:
        pump_task = create_logged_task(pump_frames(), logger=logger, context="frame-pump")

    if not supervisor.active and not coordinator.is_complete:
        await coordinator.initiate_shutdown("session ended during start")

    await coordinator.wait_for_shutdown()

    session = supervisor.session
    if state["unexpected_exit"] and state["engine_exit"] not in (None, 0):
        return 1
    if session is not None and session.error_message:
        return 1
    return 0


COMMANDS = {
    "check-docker": check_docker,
    "build-image": build_image,
    "run": run_session,
}


async def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    log_file = setup_logging(args, config)

    loop = asyncio.get_running_loop()
    install_exception_handlers(logger, loop)
    logger.debug("Command %s, log file %s", args.command, log_file)

    return await COMMANDS[args.command](args, config)
