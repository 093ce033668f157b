"""
Cycle monitor.

Flags conditions that need an operator but that no single component owns:

    no_selection        the selection instant passed today without a cycle
    deadline_passed     a cycle is still unresolved after its resolve deadline
    halted              a cycle is waiting for clear-halt
    result_conflict     a fixture has an unresolved result conflict
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from cycle_engine.core.states import STATE_RANK, CycleState
from cycle_engine.monitoring.alerting import AlertManager
from cycle_engine.storage.database import Database
from cycle_engine.storage.fixture_store import FixtureStore
from cycle_engine.storage.repositories import CycleRepository
from cycle_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleIssue:
    issue: str
    message: str
    cycle_id: Optional[int] = None


class CycleMonitor:
    def __init__(
        self,
        db: Database,
        store: FixtureStore,
        alerts: Optional[AlertManager] = None,
        selection_trigger: Optional[CronTrigger] = None,
        selection_slack: timedelta = timedelta(minutes=30),
        clock: Clock = utc_now,
    ):
        self.cycles = CycleRepository(db)
        self.store = store
        self.alerts = alerts or AlertManager()
        self.selection_trigger = selection_trigger
        self.selection_slack = selection_slack
        self._clock = clock

    def first_selection_today(self, now: datetime) -> Optional[datetime]:
        if self.selection_trigger is None:
            return None
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        fire = self.selection_trigger.get_next_fire_time(None, midnight)
        if fire is None or fire.date() != now.date():
            return None
        return fire.astimezone(timezone.utc)

    async def check(self) -> list[CycleIssue]:
        now = self._clock()
        issues: list[CycleIssue] = []

        expected_at = self.first_selection_today(now)
        if expected_at is not None and now >= expected_at + self.selection_slack:
            recent = await self.cycles.recent(limit=5)
            if not any(c.selection_date == now.date() and c.slate_hash for c in recent):
                issues.append(CycleIssue(
                    "no_selection",
                    f"No slate selected today (selection due {expected_at:%H:%M} UTC)",
                ))

        for cycle in await self.cycles.active():
            if cycle.is_halted:
                issues.append(CycleIssue(
                    "halted",
                    f"Halted in {cycle.state.value}: {cycle.halted_reason}",
                    cycle.cycle_id,
                ))
            if (
                cycle.resolve_deadline is not None
                and now > cycle.resolve_deadline
                and STATE_RANK[cycle.state] < STATE_RANK[CycleState.RESOLVED]
            ):
                overdue = now - cycle.resolve_deadline
                issues.append(CycleIssue(
                    "deadline_passed",
                    f"Still {cycle.state.value} {overdue.total_seconds() / 3600:.1f}h "
                    f"after resolve deadline {cycle.resolve_deadline.isoformat()}",
                    cycle.cycle_id,
                ))

        conflicted = sorted({c.fixture_id for c in await self.store.open_conflicts()})
        for fixture_id in conflicted:
            issues.append(CycleIssue(
                f"result_conflict_{fixture_id}",
                f"Fixture {fixture_id} has an open result conflict; "
                f"run 'cycle-engine resolve-conflict {fixture_id}'",
            ))

        return issues

    async def run(self) -> list[CycleIssue]:
        """Check and alert. Returns the issues found."""
        issues = await self.check()
        for issue in issues:
            logger.warning(
                f"Cycle monitor: {issue.issue}"
                + (f" (cycle {issue.cycle_id})" if issue.cycle_id is not None else "")
                + f": {issue.message}"
            )
            self.alerts.alert_cycle_issue(issue.issue, issue.cycle_id, issue.message)
        return issues
