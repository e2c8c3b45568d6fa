"""Shared pytest configuration and fixtures for the focus bridge test suite."""

import json
import sys
import textwrap
from pathlib import Path
from typing import Callable

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "hardware: mark test as requiring physical hardware"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--run-hardware",
        action="store_true",
        default=False,
        help="Run tests that require physical hardware (camera, docker daemon)",
    )


def pytest_collection_modifyitems(config, items):
    """Skip hardware tests unless --run-hardware is specified."""
    if config.getoption("--run-hardware"):
        return

    skip_hardware = pytest.mark.skip(reason="Need --run-hardware option to run")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip_hardware)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def make_executable(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a Python script with a shebang for the running interpreter.

    Example:
        engine = make_executable("focus_bridge", 'print("hi")')
    """

    def factory(name: str, body: str) -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
        path.chmod(0o755)
        return path

    return factory


FAKE_DOCKER = '''
import json
import os
import signal
import sys
import time
from pathlib import Path

state = Path(os.environ["FAKE_DOCKER_STATE"])
args = sys.argv[1:]
with open(state / "calls.log", "a") as log:
    log.write(json.dumps(args) + "\\n")

command = args[0] if args else ""

if command == "info":
    sys.exit(1 if (state / "daemon_down").exists() else 0)

if command == "image":
    sys.exit(0 if (state / "image_built").exists() else 1)

if command == "rm":
    sys.exit(0)

if command == "build":
    print("Step 1/2 : FROM ubuntu:22.04", flush=True)
    print("Step 2/2 : RUN make focus_bridge", flush=True)
    print("build warning", file=sys.stderr, flush=True)
    exit_file = state / "build_exit"
    code = int(exit_file.read_text()) if exit_file.exists() else 0
    if code == 0:
        (state / "image_built").touch()
    sys.exit(code)

if command == "stop":
    pid_file = state / "run.pid"
    if pid_file.exists():
        try:
            os.kill(int(pid_file.read_text()), signal.SIGTERM)
        except ProcessLookupError:
            pass
    sys.exit(0)

if command == "run":
    def on_term(signum, frame):
        sys.exit(143)

    signal.signal(signal.SIGTERM, on_term)
    (state / "run.pid").write_text(str(os.getpid()))
    print(json.dumps({"type": "status", "data": {"status": "Loading model"}}), flush=True)
    print(json.dumps({"type": "ready"}), flush=True)
    while True:
        time.sleep(0.05)

sys.exit(2)
'''


class FakeDocker:
    """Handle on the fake ``docker`` executable and its state directory."""

    def __init__(self, executable: Path, state_dir: Path) -> None:
        self.executable = executable
        self.state_dir = state_dir

    def calls(self) -> list:
        log = self.state_dir / "calls.log"
        if not log.exists():
            return []
        return [json.loads(line) for line in log.read_text().splitlines() if line.strip()]

    def commands(self) -> list:
        return [call[0] for call in self.calls() if call]

    def set_image_built(self, built: bool = True) -> None:
        marker = self.state_dir / "image_built"
        if built:
            marker.touch()
        elif marker.exists():
            marker.unlink()

    def set_daemon_down(self) -> None:
        (self.state_dir / "daemon_down").touch()

    def set_build_exit(self, code: int) -> None:
        (self.state_dir / "build_exit").write_text(str(code))


@pytest.fixture
def fake_docker(tmp_path: Path, make_executable, monkeypatch) -> FakeDocker:
    """A scripted stand-in for the docker CLI; records every invocation."""
    state_dir = tmp_path / "docker-state"
    state_dir.mkdir()
    monkeypatch.setenv("FAKE_DOCKER_STATE", str(state_dir))
    executable = make_executable("docker", FAKE_DOCKER)
    return FakeDocker(executable, state_dir)


@pytest.fixture(autouse=True)
def clean_bridge_env(monkeypatch):
    """Keep host credentials and binary overrides out of the tests."""
    for name in ("SMARTSPECTRA_API_KEY", "FOCUS_BRIDGE_PATH"):
        monkeypatch.delenv(name, raising=False)
