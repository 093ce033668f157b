"""
Selection schedule.

One apscheduler cron job in UTC fires the coordinator's selection tick.
The job never overlaps itself and a missed fire (process down at the
selection instant) runs once on start-up if still inside the grace window.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

if TYPE_CHECKING:
    from cycle_engine.core.coordinator import CycleCoordinator

logger = logging.getLogger(__name__)

SELECTION_JOB_ID = "cycle_selection"


def parse_cron(expression: str) -> CronTrigger:
    """Standard 5-field crontab evaluated in UTC. Raises ValueError when malformed."""
    return CronTrigger.from_crontab(expression, timezone=timezone.utc)


class SelectionScheduler:
    """Fires ``coordinator.run_selection`` on a UTC cron."""

    def __init__(
        self,
        coordinator: "CycleCoordinator",
        cron: str = "0 6 * * *",
        misfire_grace_seconds: int = 3600,
    ):
        self.coordinator = coordinator
        self.cron = cron
        self.trigger = parse_cron(cron)
        self.misfire_grace_seconds = misfire_grace_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start the scheduler. Must be called with the event loop running."""
        if self.is_running:
            logger.warning("Selection scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self.run_selection,
            trigger=self.trigger,
            id=SELECTION_JOB_ID,
            name="Daily cycle selection",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.misfire_grace_seconds,
        )
        self._scheduler.start()
        logger.info(f"Selection scheduled on '{self.cron}' UTC (next: {self.next_run_time})")

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Selection scheduler stopped")

    @property
    def next_run_time(self) -> Optional[datetime]:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(SELECTION_JOB_ID)
        return job.next_run_time if job else None

    async def run_selection(self) -> None:
        logger.info("Selection tick")
        try:
            cycle = await self.coordinator.run_selection()
            if cycle is not None:
                logger.info(
                    f"Selection tick done: cycle {cycle.cycle_id} "
                    f"({'slate ' + cycle.slate_hash if cycle.slate_hash else 'no slate'})"
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Selection tick failed: {e}", exc_info=True)
