"""Unit test fixtures for isolated, fast test execution.

The root conftest provides:
- project_root
- make_executable (script factory for fake engines)
- fake_docker (scripted docker CLI)

This file provides:
- Isolated state directory for paths that would touch the user's home
- A fresh shutdown coordinator per test
- Option factories for both execution modes
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from focus_bridge.core.bridge_config import BridgeMode, BridgeOptions
from focus_bridge.core.shutdown_coordinator import reset_shutdown_coordinator


@pytest.fixture(autouse=True)
def isolated_state_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    state_dir = tmp_path / "state"
    monkeypatch.setenv("FOCUS_BRIDGE_STATE_DIR", str(state_dir))
    return state_dir


@pytest.fixture(autouse=True)
def fresh_shutdown_coordinator():
    reset_shutdown_coordinator()
    yield
    reset_shutdown_coordinator()


@pytest.fixture
def frame_dir(tmp_path: Path) -> Path:
    return tmp_path / "frames"


@pytest.fixture
def native_options() -> Callable[..., BridgeOptions]:
    """Factory for native-mode options pointing at a given binary."""

    def factory(bridge_path: Path, **overrides: Any) -> BridgeOptions:
        values = dict(
            api_key="test-key",
            mode=BridgeMode.NATIVE,
            bridge_path=bridge_path,
            cleanup_orphans=False,
        )
        values.update(overrides)
        return BridgeOptions(**values)

    return factory


@pytest.fixture
def docker_options(frame_dir: Path) -> Callable[..., BridgeOptions]:
    """Factory for docker-mode options using a per-test frame directory."""

    def factory(**overrides: Any) -> BridgeOptions:
        values = dict(
            api_key="test-key",
            mode=BridgeMode.DOCKER,
            frame_dir=frame_dir,
            build_context=frame_dir.parent,
        )
        values.update(overrides)
        return BridgeOptions(**values)

    return factory
