"""
Tests for BackgroundTasksManager.

The BackgroundTasksManager runs periodic async tasks for:
- Coordinator ticks
- Results sweeps and fixture sync
- Chain event polling
- Health and cycle monitoring
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cycle_engine.core.background_tasks import BackgroundTaskConfig, BackgroundTasksManager
from cycle_engine.monitoring.health_checker import HealthStatus


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def mock_coordinator():
    coordinator = MagicMock()
    coordinator.tick = AsyncMock(return_value=0)
    return coordinator


@pytest.fixture
def mock_collector():
    collector = MagicMock()
    collector.sweep = AsyncMock(return_value=MagicMock(recorded=0, conflicts=0, cancelled=0, checked=0))
    return collector


@pytest.fixture
def mock_subscriber():
    subscriber = MagicMock()
    subscriber.poll_once = AsyncMock(return_value=0)
    return subscriber


@pytest.fixture
def fast_config():
    """Short intervals for fast tests."""
    return BackgroundTaskConfig(
        coordinator_tick_interval_seconds=0.05,
        results_sweep_interval_seconds=0.05,
        fixture_sync_interval_seconds=0.05,
        event_poll_interval_seconds=0.05,
        health_check_interval_seconds=0.05,
    )


# =============================================================================
# Start / Stop
# =============================================================================


class TestStartStop:
    """Tests for idempotent start and stop behavior."""

    @pytest.mark.asyncio
    async def test_start_twice_warns_and_returns(self, mock_coordinator, fast_config):
        manager = BackgroundTasksManager(coordinator=mock_coordinator, config=fast_config)

        await manager.start()
        with patch("cycle_engine.core.background_tasks.logger") as mock_logger:
            await manager.start()
            mock_logger.warning.assert_called_once()

        assert manager.task_names == ["coordinator_tick"]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start_is_safe(self, fast_config):
        manager = BackgroundTasksManager(config=fast_config)

        await manager.stop()

        assert not manager.is_running

    @pytest.mark.asyncio
    async def test_stop_clears_tasks(self, mock_coordinator, mock_subscriber, fast_config):
        manager = BackgroundTasksManager(
            coordinator=mock_coordinator, subscriber=mock_subscriber, config=fast_config
        )
        await manager.start()

        await manager.stop()

        assert not manager.is_running
        assert manager.task_names == []


# =============================================================================
# Task gating
# =============================================================================


class TestTaskGating:
    @pytest.mark.asyncio
    async def test_tasks_follow_dependencies(self, mock_coordinator, mock_collector, fast_config):
        manager = BackgroundTasksManager(
            coordinator=mock_coordinator, collector=mock_collector, config=fast_config
        )

        await manager.start()
        names = manager.task_names
        await manager.stop()

        assert names == ["coordinator_tick", "results_sweep"]

    @pytest.mark.asyncio
    async def test_disabled_task_is_not_started(self, mock_coordinator, mock_collector):
        config = BackgroundTaskConfig(coordinator_enabled=False)
        manager = BackgroundTasksManager(coordinator=mock_coordinator, collector=mock_collector, config=config)

        await manager.start()
        names = manager.task_names
        await manager.stop()

        assert names == ["results_sweep"]


# =============================================================================
# Loops
# =============================================================================


class TestLoops:
    @pytest.mark.asyncio
    async def test_coordinator_ticks_repeatedly(self, mock_coordinator, fast_config):
        manager = BackgroundTasksManager(coordinator=mock_coordinator, config=fast_config)

        await manager.start()
        await asyncio.sleep(0.2)
        await manager.stop()

        assert mock_coordinator.tick.await_count >= 2

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, mock_coordinator, fast_config):
        """An exception inside a pass is logged and the task keeps running."""
        mock_coordinator.tick.side_effect = RuntimeError("boom")
        manager = BackgroundTasksManager(coordinator=mock_coordinator, config=fast_config)

        await manager.start()
        await asyncio.sleep(0.15)
        task = manager._tasks[0]
        assert not task.done()
        await manager.stop()

        assert mock_coordinator.tick.await_count >= 1

    @pytest.mark.asyncio
    async def test_event_poll_runs(self, mock_subscriber, fast_config):
        manager = BackgroundTasksManager(subscriber=mock_subscriber, config=fast_config)

        await manager.start()
        await asyncio.sleep(0.15)
        await manager.stop()

        mock_subscriber.poll_once.assert_awaited()

    @pytest.mark.asyncio
    async def test_health_loop_alerts_unhealthy_components(self, fast_config):
        component = MagicMock(component="chain", status=HealthStatus.DEGRADED, message="head is stale")
        health_checker = MagicMock()
        health_checker.check_all = AsyncMock(return_value=MagicMock(components=[component]))
        cycle_monitor = MagicMock()
        cycle_monitor.run = AsyncMock(return_value=[])
        alerts = MagicMock()
        manager = BackgroundTasksManager(
            health_checker=health_checker, cycle_monitor=cycle_monitor, alerts=alerts, config=fast_config
        )

        await manager.start()
        await asyncio.sleep(0.15)
        await manager.stop()

        alerts.alert_health_issue.assert_any_call("chain", "DEGRADED", "head is stale")
        cycle_monitor.run.assert_awaited()
