"""
BackgroundTasksManager - Manages async background tasks.

Handles periodic tasks like:
- Coordinator tick (advance every active cycle)
- Results sweep
- Fixture / odds sync
- Chain event subscription
- Health and cycle monitoring
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from cycle_engine.monitoring.health_checker import HealthStatus

if TYPE_CHECKING:
    from cycle_engine.chain.events import EventSubscriber
    from cycle_engine.core.coordinator import CycleCoordinator
    from cycle_engine.ingestion.collector import ResultsCollector
    from cycle_engine.ingestion.fixture_sync import FixtureSync
    from cycle_engine.monitoring.alerting import AlertManager
    from cycle_engine.monitoring.cycle_monitor import CycleMonitor
    from cycle_engine.monitoring.health_checker import HealthChecker

logger = logging.getLogger(__name__)


@dataclass
class BackgroundTaskConfig:
    """Configuration for background tasks."""

    coordinator_tick_interval_seconds: float = 15
    coordinator_enabled: bool = True

    results_sweep_interval_seconds: float = 60
    results_sweep_enabled: bool = True

    fixture_sync_interval_seconds: float = 900  # 15 minutes
    fixture_sync_enabled: bool = True

    # Block time is a few seconds; the subscriber only reads K-deep blocks anyway
    event_poll_interval_seconds: float = 6
    event_poll_enabled: bool = True

    health_check_interval_seconds: float = 60
    health_check_enabled: bool = True


class BackgroundTasksManager:
    """
    Manages the orchestrator's background loops.

    Each loop waits on the stop event for its interval, runs one pass and
    logs (never raises) unexpected errors before a brief pause.

    Usage:
        manager = BackgroundTasksManager(
            coordinator=coordinator,
            collector=collector,
            subscriber=subscriber,
            config=BackgroundTaskConfig(),
        )
        await manager.start()
        # ... orchestrator runs ...
        await manager.stop()
    """

    def __init__(
        self,
        coordinator: Optional["CycleCoordinator"] = None,
        collector: Optional["ResultsCollector"] = None,
        fixture_sync: Optional["FixtureSync"] = None,
        subscriber: Optional["EventSubscriber"] = None,
        health_checker: Optional["HealthChecker"] = None,
        cycle_monitor: Optional["CycleMonitor"] = None,
        alerts: Optional["AlertManager"] = None,
        config: Optional[BackgroundTaskConfig] = None,
    ) -> None:
        self._coordinator = coordinator
        self._collector = collector
        self._fixture_sync = fixture_sync
        self._subscriber = subscriber
        self._health_checker = health_checker
        self._cycle_monitor = cycle_monitor
        self._alerts = alerts
        self._config = config or BackgroundTaskConfig()

        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        """Whether the manager is running."""
        return self._running

    @property
    def task_names(self) -> List[str]:
        return [t.get_name() for t in self._tasks]

    async def start(self) -> None:
        """Start all background tasks."""
        if self._running:
            logger.warning("BackgroundTasksManager already running")
            return

        logger.info("Starting background tasks...")
        self._running = True
        self._stop_event.clear()

        cfg = self._config
        loops = [
            ("coordinator_tick", cfg.coordinator_enabled and self._coordinator,
             self._coordinator_loop, cfg.coordinator_tick_interval_seconds),
            ("results_sweep", cfg.results_sweep_enabled and self._collector,
             self._results_sweep_loop, cfg.results_sweep_interval_seconds),
            ("fixture_sync", cfg.fixture_sync_enabled and self._fixture_sync,
             self._fixture_sync_loop, cfg.fixture_sync_interval_seconds),
            ("event_subscriber", cfg.event_poll_enabled and self._subscriber,
             self._event_loop, cfg.event_poll_interval_seconds),
            ("health_check", cfg.health_check_enabled and (self._health_checker or self._cycle_monitor),
             self._health_loop, cfg.health_check_interval_seconds),
        ]
        for name, enabled, loop, interval in loops:
            if not enabled:
                continue
            self._tasks.append(asyncio.create_task(loop(), name=name))
            logger.info(f"Started {name} task (interval={interval}s)")

        logger.info(f"Background tasks started: {len(self._tasks)} tasks")

    async def stop(self) -> None:
        """Stop all background tasks gracefully."""
        if not self._running:
            return

        logger.info("Stopping background tasks...")
        self._running = False
        self._stop_event.set()

        for task in self._tasks:
            if not task.done():
                task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        logger.info("Background tasks stopped")

    async def _wait(self, interval: float) -> bool:
        """Sleep for ``interval`` or until stop. Returns True when stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            return True
        except asyncio.TimeoutError:
            return not self._running

    async def _coordinator_loop(self) -> None:
        """Advance every active cycle by at most one step."""
        interval = self._config.coordinator_tick_interval_seconds

        while self._running:
            try:
                if await self._wait(interval):
                    break

                examined = await self._coordinator.tick()
                logger.debug(f"Coordinator tick: {examined} active cycle(s)")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in coordinator tick: {e}")
                await asyncio.sleep(5)  # Brief pause before retry

    async def _results_sweep_loop(self) -> None:
        """Poll the feed for fixtures whose result is due."""
        interval = self._config.results_sweep_interval_seconds

        while self._running:
            try:
                if await self._wait(interval):
                    break

                stats = await self._collector.sweep()
                if stats.recorded or stats.conflicts or stats.cancelled:
                    logger.info(
                        f"Results sweep: {stats.recorded} recorded, "
                        f"{stats.conflicts} conflicts, {stats.cancelled} cancelled "
                        f"({stats.checked} checked)"
                    )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in results sweep: {e}")
                await asyncio.sleep(5)

    async def _fixture_sync_loop(self) -> None:
        interval = self._config.fixture_sync_interval_seconds

        while self._running:
            try:
                if await self._wait(interval):
                    break

                stats = await self._fixture_sync.sync()
                logger.debug(
                    f"Fixture sync: {stats.fixtures_upserted}/{stats.fixtures_seen} fixtures, "
                    f"{stats.odds_recorded} odds snapshots"
                )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in fixture sync: {e}")
                await asyncio.sleep(5)

    async def _event_loop(self) -> None:
        """Project confirmed contract events."""
        interval = self._config.event_poll_interval_seconds

        while self._running:
            try:
                if await self._wait(interval):
                    break

                handled = await self._subscriber.poll_once()
                if handled:
                    logger.debug(f"Event subscriber: {handled} event(s) handled")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in event subscriber: {e}")
                await asyncio.sleep(5)

    async def _health_loop(self) -> None:
        interval = self._config.health_check_interval_seconds

        while self._running:
            try:
                if await self._wait(interval):
                    break

                if self._health_checker is not None:
                    health = await self._health_checker.check_all()
                    for component in health.components:
                        if component.status in (HealthStatus.UNHEALTHY, HealthStatus.DEGRADED):
                            logger.warning(
                                f"Health: {component.component} {component.status.value}: "
                                f"{component.message}"
                            )
                            if self._alerts is not None:
                                self._alerts.alert_health_issue(
                                    component.component,
                                    component.status.value.upper(),
                                    component.message,
                                )

                if self._cycle_monitor is not None:
                    await self._cycle_monitor.run()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in health check: {e}")
                await asyncio.sleep(5)
