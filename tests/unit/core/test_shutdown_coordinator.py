"""Unit tests for ShutdownCoordinator."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from focus_bridge.core.shutdown_coordinator import (
    ShutdownCoordinator,
    ShutdownState,
    get_shutdown_coordinator,
)


@pytest.mark.asyncio
async def test_cleanup_runs_once_in_order():
    coordinator = ShutdownCoordinator()
    order = []

    async def first():
        order.append("first")

    async def second():
        order.append("second")

    coordinator.register_cleanup(first)
    coordinator.register_cleanup(second)

    await coordinator.initiate_shutdown("signal SIGINT")
    await coordinator.initiate_shutdown("engine exit")

    assert order == ["first", "second"]
    assert coordinator.source == "signal SIGINT"
    assert coordinator.state is ShutdownState.COMPLETE
    assert coordinator.is_complete


@pytest.mark.asyncio
async def test_failing_callback_does_not_stop_the_rest():
    coordinator = ShutdownCoordinator()
    broken = AsyncMock(side_effect=RuntimeError("boom"))
    healthy = AsyncMock()
    coordinator.register_cleanup(broken)
    coordinator.register_cleanup(healthy)

    await coordinator.initiate_shutdown("test")

    healthy.assert_awaited_once()
    assert coordinator.is_complete


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_shutdown():
    coordinator = ShutdownCoordinator()
    calls = AsyncMock()
    coordinator.register_cleanup(calls)

    await asyncio.gather(
        coordinator.initiate_shutdown("a"),
        coordinator.initiate_shutdown("b"),
        coordinator.wait_for_shutdown(),
    )

    calls.assert_awaited_once()


def test_global_instance_is_shared():
    assert get_shutdown_coordinator() is get_shutdown_coordinator()
