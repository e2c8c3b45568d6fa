import asyncio
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, Union

from .asyncio_utils import cancel_and_wait, create_logged_task
from .backends import BridgeBackend, create_backend
from .bridge_config import BridgeOptions
from .docker_runtime import PROBE_TIMEOUT, DockerRuntime
from .errors import AlreadyRunning, MissingCredential
from .frame_writer import FrameWriter
from .logging_utils import get_module_logger
from .notifications import (
    BridgeNotification,
    ErrorSource,
    NotificationHub,
    NotificationKind,
    NotificationObserver,
)
from .protocol import BridgeMessage, LineDecoder, MessageType, classify_engine_error

STDOUT_CHUNK_SIZE = 4096
EXIT_DRAIN_TIMEOUT = 2.0

_DATA_EVENTS = {
    MessageType.FOCUS: NotificationKind.FOCUS,
    MessageType.METRICS: NotificationKind.METRICS,
    MessageType.EDGE: NotificationKind.EDGE,
}


class BridgeState(Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    STARTING = "starting"
    RUNNING = "running"          # process up, no "ready" event yet
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


TERMINAL_STATES = {BridgeState.STOPPED, BridgeState.ERROR}


class BridgeSession:
    """One supervised run of the analysis engine.

    Created by ``BridgeSupervisor.start()``; once STOPPED or ERROR it is
    finished for good and a new session has to be started.
    """

    def __init__(
        self,
        options: BridgeOptions,
        backend: BridgeBackend,
        hub: NotificationHub,
    ) -> None:
        self.session_id = uuid.uuid4().hex[:8]
        self.options = options
        self.backend = backend
        self.logger = get_module_logger(f"BridgeSession.{self.session_id}")

        self.state = BridgeState.IDLE
        self.process: Optional[asyncio.subprocess.Process] = None
        self.decoder = LineDecoder()
        self.ready = False
        self.exit_code: Optional[int] = None
        self.error_message: Optional[str] = None
        self.started_at: Optional[datetime] = None

        self._hub = hub
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._kill_task: Optional[asyncio.Task] = None
        self._spawning = False
        self._closed = asyncio.Event()

    # ------------------------------------------------------------------
    # Queries

    @property
    def mode(self):
        return self.backend.mode

    @property
    def frame_writer(self) -> Optional[FrameWriter]:
        return self.backend.frame_writer

    @property
    def is_active(self) -> bool:
        return self.state not in TERMINAL_STATES

    @property
    def running(self) -> bool:
        return self.process is not None and self.ready

    def status(self) -> Dict[str, Any]:
        writer = self.frame_writer
        return {
            "session_id": self.session_id,
            "mode": self.mode.value,
            "state": self.state.value,
            "running": self.running,
            "pid": self.process.pid if self.process else None,
            "exit_code": self.exit_code,
            "error": self.error_message,
            "frame_dir": str(writer.directory) if writer else None,
            "frames_written": writer.count if writer else 0,
            "malformed_lines": self.decoder.malformed_lines,
        }

    async def wait_closed(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait until the session is over; returns the process exit code."""
        await asyncio.wait_for(self._closed.wait(), timeout=timeout)
        return self.exit_code

    # ------------------------------------------------------------------
    # PrepareContext

    async def enter_preparing(self) -> None:
        self._transition(BridgeState.PREPARING)

    async def report_status(self, text: str) -> None:
        self.logger.info("Status: %s", text)
        await self._hub.publish(BridgeNotification.status(text))

    # ------------------------------------------------------------------
    # Lifecycle

    def _transition(self, new_state: BridgeState) -> None:
        if new_state is self.state:
            return
        self.logger.debug("State %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def _fail(self, message: str) -> None:
        self.error_message = message
        self._transition(BridgeState.ERROR)
        self.backend.release()
        self._closed.set()

    async def launch(self) -> None:
        try:
            await self.backend.prepare(self)
        except BaseException as e:
            self.logger.error("Failed to prepare %s bridge: %s", self.mode.value, e)
            self._fail(str(e))
            raise

        if self.state in TERMINAL_STATES:
            # stop() arrived while we were still preparing
            self.backend.release()
            return

        self._transition(BridgeState.STARTING)
        if self.backend.starting_status:
            await self.report_status(self.backend.starting_status)
            if self.state is not BridgeState.STARTING:
                self.logger.info("Stop requested before spawn; not starting the bridge")
                self.backend.release()
                return

        self._spawning = True
        try:
            process = await self.backend.spawn()
        except (OSError, RuntimeError) as e:
            self.logger.error("Failed to spawn bridge process: %s", e, exc_info=True)
            self._fail(str(e))
            await self._hub.publish(BridgeNotification.error(str(e), source=ErrorSource.PROCESS))
            return
        finally:
            self._spawning = False

        self.process = process
        self.started_at = datetime.now()
        self._attach_process_handlers(process)

        if self.state is not BridgeState.STARTING:
            # stop() arrived during spawn; the monitor reports the close.
            self.logger.info("Stop requested during spawn; terminating PID %d", process.pid)
            await self._terminate(process)
            return

        self._transition(BridgeState.RUNNING)
        self.logger.info("Bridge process started with PID: %d", process.pid)

    def _attach_process_handlers(self, process: asyncio.subprocess.Process) -> None:
        self._stdout_task = create_logged_task(
            self._stdout_reader(process), logger=self.logger, context=f"bridge-stdout-{self.session_id}"
        )
        self._stderr_task = create_logged_task(
            self._stderr_reader(process), logger=self.logger, context=f"bridge-stderr-{self.session_id}"
        )
        self._monitor_task = create_logged_task(
            self._process_monitor(process), logger=self.logger, context=f"bridge-monitor-{self.session_id}"
        )

    async def request_stop(self) -> None:
        if not self.is_active or self.state is BridgeState.STOPPING:
            self.logger.debug("Stop ignored in state %s", self.state.value)
            return

        self.logger.info("Stopping...")
        self._transition(BridgeState.STOPPING)

        writer = self.frame_writer
        if writer is not None:
            writer.write_end_of_stream()

        process = self.process
        if process is not None and process.returncode is None:
            await self._terminate(process)

        self.backend.release()

        if self.process is None and self._monitor_task is None and not self._spawning:
            # Never spawned: nothing will report an exit.
            self._transition(BridgeState.STOPPED)
            self._closed.set()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            await self.backend.terminate(process)
        except Exception as e:
            self.logger.error("Error requesting bridge termination: %s", e, exc_info=True)
        if self.process is not None:
            self._kill_task = create_logged_task(
                self._kill_after(process, self.backend.kill_delay),
                logger=self.logger,
                context=f"bridge-kill-{self.session_id}",
            )

    async def _kill_after(self, process: asyncio.subprocess.Process, delay: float) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=delay)
        except asyncio.TimeoutError:
            if process.returncode is None:
                self.logger.warning("Bridge did not exit after %.1fs, force killing...", delay)
                await self.backend.force_kill(process)

    # ------------------------------------------------------------------
    # stdio handlers

    async def _stdout_reader(self, process: asyncio.subprocess.Process) -> None:
        if process.stdout is None:
            return

        while True:
            chunk = await process.stdout.read(STDOUT_CHUNK_SIZE)
            if not chunk:
                break
            for message in self.decoder.feed(chunk):
                await self._dispatch(message)

        for message in self.decoder.flush():
            await self._dispatch(message)

    async def _stderr_reader(self, process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return

        while True:
            line = await process.stderr.readline()
            if not line:
                break
            text = line.decode(errors="replace").strip()
            if text:
                self.logger.info("stderr: %s", text)

    async def _dispatch(self, message: BridgeMessage) -> None:
        message_type = message.message_type

        if message_type is MessageType.READY:
            self.ready = True
            if self.state is BridgeState.RUNNING:
                self._transition(BridgeState.READY)
            self.logger.info("Bridge is ready")
            await self._hub.publish(BridgeNotification.ready())

        elif message_type is MessageType.STATUS:
            await self.report_status(message.get_status_text())

        elif message_type in _DATA_EVENTS:
            await self._hub.publish(BridgeNotification.data_event(_DATA_EVENTS[message_type], message.data))

        elif message_type is MessageType.ERROR:
            text = message.get_error_message()
            error_kind = classify_engine_error(text, message.data)
            self.logger.error("Bridge error (%s): %s", error_kind.value, text)
            await self._hub.publish(
                BridgeNotification.error(
                    text,
                    source=ErrorSource.ENGINE,
                    error_kind=error_kind,
                    payload=message.data,
                )
            )

        else:
            self.logger.warning("Unknown message type: %s", message.type_tag)

    async def _process_monitor(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()

        # Every event the engine printed is delivered before the close.
        for task in (self._stdout_task, self._stderr_task):
            if task is not None:
                await asyncio.wait({task}, timeout=EXIT_DRAIN_TIMEOUT)
                await cancel_and_wait(task)
        await cancel_and_wait(self._kill_task)

        self.process = None
        self.ready = False
        self.exit_code = returncode

        if self.state is BridgeState.STOPPING or returncode == 0:
            self.logger.info("Process exited with code %s", returncode)
        else:
            self.logger.error("Process exited unexpectedly with code %s", returncode)

        self.backend.release()
        self._transition(BridgeState.STOPPED)
        await self._hub.publish(BridgeNotification.close(returncode))
        self._closed.set()


class BridgeSupervisor:
    """Owns at most one active ``BridgeSession`` and its observers."""

    def __init__(
        self,
        *,
        runtime: Optional[DockerRuntime] = None,
        backend_factory: Callable[..., BridgeBackend] = create_backend,
    ) -> None:
        self.logger = get_module_logger("BridgeSupervisor")
        self._runtime = runtime
        self._backend_factory = backend_factory
        self._hub = NotificationHub()
        self._session: Optional[BridgeSession] = None
        self._frame_warning_logged = False

    # ------------------------------------------------------------------
    # Observers

    def add_observer(
        self,
        observer: NotificationObserver,
        *,
        kinds: Optional[Set[NotificationKind]] = None,
    ) -> None:
        self._hub.add_observer(observer, kinds=kinds)

    def remove_observer(self, observer: NotificationObserver) -> None:
        self._hub.remove_observer(observer)

    # ------------------------------------------------------------------
    # Queries

    @property
    def session(self) -> Optional[BridgeSession]:
        return self._session

    @property
    def active(self) -> bool:
        return self._session is not None and self._session.is_active

    @property
    def running(self) -> bool:
        return self._session is not None and self._session.running

    @property
    def frame_writer(self) -> Optional[FrameWriter]:
        return self._session.frame_writer if self._session else None

    def status(self) -> Dict[str, Any]:
        if self._session is None:
            return {"running": False, "state": BridgeState.IDLE.value}
        return self._session.status()

    @staticmethod
    async def is_docker_available(
        timeout: float = PROBE_TIMEOUT,
        runtime: Optional[DockerRuntime] = None,
    ) -> bool:
        return await (runtime or DockerRuntime()).is_available(timeout=timeout)

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self, options: BridgeOptions) -> BridgeSession:
        if self.active:
            raise AlreadyRunning()
        if not options.api_key:
            raise MissingCredential()

        backend = self._backend_factory(options, runtime=self._runtime)
        session = BridgeSession(options, backend, self._hub)
        self._session = session
        self._frame_warning_logged = False

        self.logger.info("Starting %s bridge session %s", backend.mode.value, session.session_id)
        await session.launch()
        return session

    async def stop(self) -> None:
        session = self._session
        if session is None or not session.is_active:
            self.logger.debug("Bridge not running")
            return
        await session.request_stop()

    async def wait_closed(self, timeout: Optional[float] = None) -> Optional[int]:
        if self._session is None:
            return None
        return await self._session.wait_closed(timeout)

    # ------------------------------------------------------------------
    # Frames

    def _writer_for_frame(self) -> Optional[FrameWriter]:
        writer = self.frame_writer
        if writer is None and not self._frame_warning_logged:
            self.logger.warning("Received frame but frame writer not initialized")
            self._frame_warning_logged = True
        return writer

    def write_frame(self, timestamp_us: Union[int, float], data: bytes) -> Optional[Path]:
        writer = self._writer_for_frame()
        return writer.write_frame(timestamp_us, data) if writer else None

    async def write_frame_async(self, timestamp_us: Union[int, float], data: bytes) -> Optional[Path]:
        writer = self._writer_for_frame()
        return await writer.write_frame_async(timestamp_us, data) if writer else None


__all__ = [
    "BridgeSession",
    "BridgeState",
    "BridgeSupervisor",
    "TERMINAL_STATES",
]
