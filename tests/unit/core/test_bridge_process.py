"""Lifecycle tests for BridgeSupervisor against real fake-engine subprocesses."""

import asyncio
from typing import List

import pytest

from focus_bridge.core.backends import NativeBackend, create_backend
from focus_bridge.core.bridge_process import BridgeState, BridgeSupervisor
from focus_bridge.core.docker_runtime import DockerRuntime
from focus_bridge.core.errors import AlreadyRunning, BinaryNotFound, MissingCredential
from focus_bridge.core.frame_writer import END_OF_STREAM_NAME
from focus_bridge.core.notifications import (
    BridgeNotification,
    ErrorSource,
    NotificationKind,
    NotificationQueue,
)
from focus_bridge.core.protocol import EngineErrorKind, FocusState

READY_THEN_CRASH = '''
import json
import sys

print(json.dumps({"type": "ready"}), flush=True)
sys.exit(137)
'''

CHATTY_ENGINE = '''
import json
import sys
import time

def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\\n")
    sys.stdout.flush()

emit({"type": "status", "data": {"status": "Loading model"}})
emit({"type": "ready"})
emit({"type": "focus", "data": {"state": "focused", "focus_score": 0.82, "face_detected": True}})
sys.stdout.write("{not json at all\\n")
emit({"type": "metrics", "data": {"pulse_bpm": 71.0}})
emit({"type": "edge", "data": {"kind": "blink"}})
emit({"type": "error", "data": {"message": "Out of credits for this API key"}})
emit({"type": "mystery", "data": {}})
sys.stderr.write("engine warming up\\n")
sys.stderr.flush()
while True:
    time.sleep(0.05)
'''

SPLIT_WRITES = '''
import sys
import time

sys.stdout.write('{"type": "sta')
sys.stdout.flush()
time.sleep(0.1)
sys.stdout.write('tus", "data": {"status": "half"}}\\n{"type": "ready"}')
sys.stdout.flush()
'''

IGNORES_SIGTERM = '''
import json
import signal
import time

signal.signal(signal.SIGTERM, signal.SIG_IGN)
print(json.dumps({"type": "ready"}), flush=True)
while True:
    time.sleep(0.05)
'''

WAIT_TIMEOUT = 10.0


async def drain(queue: NotificationQueue, timeout: float = 0.2) -> List[BridgeNotification]:
    notes = []
    while True:
        try:
            notes.append(await asyncio.wait_for(queue.get(), timeout=timeout))
        except asyncio.TimeoutError:
            return notes


async def wait_for_kind(queue: NotificationQueue, kind: NotificationKind) -> List[BridgeNotification]:
    """Collect notifications up to and including the first one of ``kind``."""
    notes = []
    while True:
        note = await asyncio.wait_for(queue.get(), timeout=WAIT_TIMEOUT)
        notes.append(note)
        if note.kind is kind:
            return notes


@pytest.fixture
def supervisor() -> BridgeSupervisor:
    return BridgeSupervisor()


@pytest.fixture
def queue(supervisor) -> NotificationQueue:
    queue = NotificationQueue()
    supervisor.add_observer(queue)
    return queue


class TestNativeLifecycle:

    @pytest.mark.asyncio
    async def test_unexpected_exit_reports_ready_then_close(self, supervisor, queue, make_executable, native_options):
        engine = make_executable("focus_bridge", READY_THEN_CRASH)
        running_at_ready = []
        supervisor.add_observer(
            lambda note: running_at_ready.append(supervisor.running),
            kinds={NotificationKind.READY},
        )

        await supervisor.start(native_options(engine))
        exit_code = await supervisor.wait_closed(timeout=WAIT_TIMEOUT)

        notes = await drain(queue)
        assert [n.kind for n in notes] == [NotificationKind.READY, NotificationKind.CLOSE]
        assert notes[-1].exit_code == 137
        assert exit_code == 137
        assert running_at_ready == [True]
        assert supervisor.running is False
        assert supervisor.active is False
        assert supervisor.session.state is BridgeState.STOPPED

    @pytest.mark.asyncio
    async def test_events_delivered_in_order(self, supervisor, queue, make_executable, native_options):
        engine = make_executable("focus_bridge", CHATTY_ENGINE)

        session = await supervisor.start(native_options(engine))
        notes = await wait_for_kind(queue, NotificationKind.ERROR)

        assert [n.kind for n in notes] == [
            NotificationKind.STATUS,
            NotificationKind.READY,
            NotificationKind.FOCUS,
            NotificationKind.METRICS,
            NotificationKind.EDGE,
            NotificationKind.ERROR,
        ]
        assert notes[0].text == "Loading model"
        assert notes[2].focus.state is FocusState.FOCUSED
        assert notes[2].payload["focus_score"] == 0.82
        assert notes[3].payload == {"pulse_bpm": 71.0}
        assert notes[5].text == "Out of credits for this API key"
        assert notes[5].error_source is ErrorSource.ENGINE
        assert notes[5].error_kind is EngineErrorKind.USAGE_EXHAUSTED
        assert session.state is BridgeState.READY
        assert supervisor.running is True

        await supervisor.stop()
        await supervisor.wait_closed(timeout=WAIT_TIMEOUT)

        remaining = await drain(queue)
        assert [n.kind for n in remaining] == [NotificationKind.CLOSE]
        assert session.decoder.malformed_lines == 1
        assert supervisor.running is False

    @pytest.mark.asyncio
    async def test_split_writes_and_unterminated_last_line(self, supervisor, queue, make_executable, native_options):
        engine = make_executable("focus_bridge", SPLIT_WRITES)

        await supervisor.start(native_options(engine))
        assert await supervisor.wait_closed(timeout=WAIT_TIMEOUT) == 0

        notes = await drain(queue)
        assert [n.kind for n in notes] == [
            NotificationKind.STATUS,
            NotificationKind.READY,
            NotificationKind.CLOSE,
        ]
        assert notes[0].text == "half"

    @pytest.mark.asyncio
    async def test_second_start_rejected_while_active(self, supervisor, queue, make_executable, native_options):
        engine = make_executable("focus_bridge", CHATTY_ENGINE)
        session = await supervisor.start(native_options(engine))
        await wait_for_kind(queue, NotificationKind.ERROR)
        pid = session.process.pid
        state = session.state

        with pytest.raises(AlreadyRunning):
            await supervisor.start(native_options(engine))

        assert supervisor.session is session
        assert session.process is not None and session.process.pid == pid
        assert session.state is state
        assert await drain(queue) == []

        await supervisor.stop()
        await supervisor.wait_closed(timeout=WAIT_TIMEOUT)

    @pytest.mark.asyncio
    async def test_double_stop_is_noop(self, supervisor, queue, make_executable, native_options):
        engine = make_executable("focus_bridge", CHATTY_ENGINE)
        await supervisor.start(native_options(engine))
        await wait_for_kind(queue, NotificationKind.READY)

        await supervisor.stop()
        await supervisor.stop()
        await supervisor.wait_closed(timeout=WAIT_TIMEOUT)
        await supervisor.stop()

        closes = [n for n in await drain(queue) if n.kind is NotificationKind.CLOSE]
        assert len(closes) == 1

    @pytest.mark.asyncio
    async def test_restart_after_close(self, supervisor, queue, make_executable, native_options):
        engine = make_executable("focus_bridge", READY_THEN_CRASH)

        first = await supervisor.start(native_options(engine))
        await supervisor.wait_closed(timeout=WAIT_TIMEOUT)
        second = await supervisor.start(native_options(engine))
        await supervisor.wait_closed(timeout=WAIT_TIMEOUT)

        assert first.session_id != second.session_id
        assert supervisor.session is second

    @pytest.mark.asyncio
    async def test_unresponsive_engine_is_force_killed(self, queue, make_executable, native_options):
        def quick_kill_backend(options, **kwargs):
            backend = create_backend(options, **kwargs)
            backend.kill_delay = 0.3
            return backend

        supervisor = BridgeSupervisor(backend_factory=quick_kill_backend)
        supervisor.add_observer(queue)
        engine = make_executable("focus_bridge", IGNORES_SIGTERM)

        await supervisor.start(native_options(engine))
        await wait_for_kind(queue, NotificationKind.READY)
        await supervisor.stop()

        exit_code = await supervisor.wait_closed(timeout=WAIT_TIMEOUT)
        assert exit_code == -9

    @pytest.mark.asyncio
    async def test_status_snapshot(self, supervisor, queue, make_executable, native_options):
        assert supervisor.status() == {"running": False, "state": "idle"}

        engine = make_executable("focus_bridge", CHATTY_ENGINE)
        await supervisor.start(native_options(engine))
        await wait_for_kind(queue, NotificationKind.READY)

        status = supervisor.status()
        assert status["mode"] == "native"
        assert status["running"] is True
        assert isinstance(status["pid"], int)
        assert status["frame_dir"] is None

        await supervisor.stop()
        await supervisor.wait_closed(timeout=WAIT_TIMEOUT)
        assert supervisor.status()["pid"] is None


class TestStartFailures:

    @pytest.mark.asyncio
    async def test_missing_api_key(self, supervisor, tmp_path, native_options):
        with pytest.raises(MissingCredential):
            await supervisor.start(native_options(tmp_path / "focus_bridge", api_key=""))

        assert supervisor.session is None

    @pytest.mark.asyncio
    async def test_binary_not_found(self, supervisor, tmp_path, native_options, monkeypatch):
        monkeypatch.setattr(
            "focus_bridge.core.backends.NativeBackend.binary_candidates",
            lambda self: [tmp_path / "missing"],
        )

        with pytest.raises(BinaryNotFound):
            await supervisor.start(native_options(tmp_path / "missing"))

        assert supervisor.session.state is BridgeState.ERROR
        assert supervisor.active is False

    @pytest.mark.asyncio
    async def test_spawn_failure_becomes_error_notification(self, supervisor, queue, tmp_path, native_options):
        not_executable = tmp_path / "focus_bridge"
        not_executable.write_text("not a program")
        not_executable.chmod(0o644)

        session = await supervisor.start(native_options(not_executable))

        notes = await drain(queue)
        assert [n.kind for n in notes] == [NotificationKind.ERROR]
        assert notes[0].error_source is ErrorSource.PROCESS
        assert session.state is BridgeState.ERROR
        assert await supervisor.wait_closed(timeout=1.0) is None
        assert supervisor.active is False

    @pytest.mark.asyncio
    async def test_stop_without_session(self, supervisor):
        await supervisor.stop()
        assert await supervisor.wait_closed() is None

    def test_frame_without_session_is_dropped(self, supervisor):
        assert supervisor.write_frame(1000, b"jpeg") is None
        assert supervisor.write_frame(1001, b"jpeg") is None


class TestDockerLifecycle:

    @pytest.mark.asyncio
    async def test_full_session(self, fake_docker, docker_options, frame_dir):
        fake_docker.set_image_built()
        supervisor = BridgeSupervisor(runtime=DockerRuntime(executable=str(fake_docker.executable)))
        queue = NotificationQueue()
        supervisor.add_observer(queue)

        await supervisor.start(docker_options())
        notes = await wait_for_kind(queue, NotificationKind.READY)

        assert [n.text for n in notes if n.kind is NotificationKind.STATUS] == [
            "Docker image already built",
            "Starting SmartSpectra container...",
            "Loading model",
        ]

        for ts in (1000, 500, 1500):
            assert await supervisor.write_frame_async(ts, b"\xff\xd8frame") is not None
        assert sorted(p.name for p in frame_dir.iterdir()) == [
            "frame0000000000000500.jpg",
            "frame0000000000001000.jpg",
            "frame0000000000001500.jpg",
        ]
        assert supervisor.status()["frames_written"] == 3

        await supervisor.stop()
        exit_code = await supervisor.wait_closed(timeout=WAIT_TIMEOUT)

        assert exit_code == 143
        assert not frame_dir.exists()
        assert supervisor.write_frame(2000, b"late") is None
        assert not frame_dir.exists()

        commands = fake_docker.commands()
        assert commands.index("rm") < commands.index("run") < commands.index("stop")

    @pytest.mark.asyncio
    async def test_sentinel_written_before_terminate(self, fake_docker, docker_options, frame_dir, monkeypatch):
        fake_docker.set_image_built()
        runtime = DockerRuntime(executable=str(fake_docker.executable))
        supervisor = BridgeSupervisor(runtime=runtime)
        queue = NotificationQueue()
        supervisor.add_observer(queue)
        seen_at_stop = []

        original_stop = runtime.stop_container

        async def recording_stop(name, *args, **kwargs):
            seen_at_stop.append((frame_dir / END_OF_STREAM_NAME).exists())
            return await original_stop(name, *args, **kwargs)

        monkeypatch.setattr(runtime, "stop_container", recording_stop)

        await supervisor.start(docker_options())
        await wait_for_kind(queue, NotificationKind.READY)
        await supervisor.stop()
        await supervisor.wait_closed(timeout=WAIT_TIMEOUT)

        assert seen_at_stop == [True]

    @pytest.mark.asyncio
    async def test_builds_missing_image(self, fake_docker, docker_options):
        supervisor = BridgeSupervisor(runtime=DockerRuntime(executable=str(fake_docker.executable)))
        queue = NotificationQueue()
        supervisor.add_observer(queue)

        await supervisor.start(docker_options())
        notes = await wait_for_kind(queue, NotificationKind.READY)

        statuses = [n.text for n in notes if n.kind is NotificationKind.STATUS]
        assert statuses[0] == "Building Docker image (first run, may take a few minutes)..."
        assert any(text.startswith("Building: ") for text in statuses)
        assert "Docker image built successfully" in statuses
        assert "build" in fake_docker.commands()

        await supervisor.stop()
        await supervisor.wait_closed(timeout=WAIT_TIMEOUT)

    @pytest.mark.asyncio
    async def test_docker_available_probe(self, fake_docker):
        runtime = DockerRuntime(executable=str(fake_docker.executable))
        assert await BridgeSupervisor.is_docker_available(runtime=runtime) is True

        fake_docker.set_daemon_down()
        assert await BridgeSupervisor.is_docker_available(runtime=runtime) is False


class SlowSpawnBackend(NativeBackend):
    spawn_delay = 0.3

    def __init__(self, options, **kwargs):
        kwargs.pop("runtime", None)
        super().__init__(options, **kwargs)
        self.spawn_calls = 0

    async def spawn(self):
        self.spawn_calls += 1
        await asyncio.sleep(self.spawn_delay)
        return await super().spawn()


class AnnouncingBackend(SlowSpawnBackend):
    starting_status = "Launching engine"


class TestStopDuringStartup:

    @pytest.mark.asyncio
    async def test_stop_while_spawning_terminates_new_process(self, queue, make_executable, native_options):
        backends = []

        def factory(options, **kwargs):
            backends.append(SlowSpawnBackend(options, **kwargs))
            return backends[-1]

        supervisor = BridgeSupervisor(backend_factory=factory)
        supervisor.add_observer(queue)
        engine = make_executable("focus_bridge", CHATTY_ENGINE)

        start_task = asyncio.create_task(supervisor.start(native_options(engine)))
        await asyncio.sleep(0.1)
        await supervisor.stop()

        assert supervisor.session.state is BridgeState.STOPPING
        session = await asyncio.wait_for(start_task, timeout=WAIT_TIMEOUT)
        assert backends[0].spawn_calls == 1
        assert session.state not in (BridgeState.RUNNING, BridgeState.READY)

        exit_code = await supervisor.wait_closed(timeout=WAIT_TIMEOUT)

        assert exit_code is not None and exit_code != 0
        assert session.process is None
        assert session.state is BridgeState.STOPPED
        assert supervisor.active is False
        assert supervisor.running is False
        closes = [n for n in await drain(queue) if n.kind is NotificationKind.CLOSE]
        assert len(closes) == 1

    @pytest.mark.asyncio
    async def test_stop_before_spawn_skips_spawn(self, queue, make_executable, native_options):
        backends = []

        def factory(options, **kwargs):
            backends.append(AnnouncingBackend(options, **kwargs))
            return backends[-1]

        supervisor = BridgeSupervisor(backend_factory=factory)
        supervisor.add_observer(queue)

        async def stop_on_status(note):
            await supervisor.stop()

        supervisor.add_observer(stop_on_status, kinds={NotificationKind.STATUS})
        engine = make_executable("focus_bridge", CHATTY_ENGINE)

        session = await supervisor.start(native_options(engine))

        assert backends[0].spawn_calls == 0
        assert session.process is None
        assert session.state is BridgeState.STOPPED
        assert await supervisor.wait_closed(timeout=1.0) is None
        assert [n.kind for n in await drain(queue)] == [NotificationKind.STATUS]
