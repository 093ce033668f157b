"""
Tests for the cycle monitor.
"""
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger

from cycle_engine.core.states import CycleState
from cycle_engine.monitoring.cycle_monitor import CycleMonitor
from cycle_engine.storage.models import Cycle, ResultConflict
from cycle_engine.utils.clock import FrozenClock

NOW = datetime(2025, 3, 14, 7, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    store = MagicMock()
    store.open_conflicts = AsyncMock(return_value=[])
    return store


@pytest.fixture
def alerts():
    return MagicMock()


@pytest.fixture
def monitor(store, alerts):
    m = CycleMonitor(
        MagicMock(),
        store,
        alerts=alerts,
        selection_trigger=CronTrigger(hour=6, minute=0, timezone="UTC"),
        clock=FrozenClock(NOW),
    )
    m.cycles = MagicMock()
    m.cycles.recent = AsyncMock(return_value=[])
    m.cycles.active = AsyncMock(return_value=[])
    return m


def todays_cycle(**kwargs):
    fields = dict(
        cycle_id=12,
        state=CycleState.PENDING,
        selection_date=date(2025, 3, 14),
        slate_hash="0x" + "ab" * 32,
    )
    fields.update(kwargs)
    return Cycle(**fields)


class TestCheck:
    @pytest.mark.asyncio
    async def test_nothing_to_report(self, monitor):
        monitor.cycles.recent.return_value = [todays_cycle()]

        assert await monitor.check() == []

    @pytest.mark.asyncio
    async def test_missing_selection(self, monitor):
        monitor.cycles.recent.return_value = [todays_cycle(slate_hash=None)]

        issues = await monitor.check()

        assert [i.issue for i in issues] == ["no_selection"]
        assert "06:00" in issues[0].message

    @pytest.mark.asyncio
    async def test_selection_not_yet_overdue(self, monitor):
        monitor._clock = FrozenClock(datetime(2025, 3, 14, 6, 10, tzinfo=timezone.utc))

        assert await monitor.check() == []
        monitor.cycles.recent.assert_not_awaited()

    def test_first_selection_today(self, monitor):
        assert monitor.first_selection_today(NOW) == datetime(2025, 3, 14, 6, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_halted_and_overdue_cycles(self, monitor):
        monitor.cycles.recent.return_value = [todays_cycle()]
        monitor.cycles.active.return_value = [
            todays_cycle(
                cycle_id=11,
                state=CycleState.AWAITING_RESULTS,
                resolve_deadline=NOW - timedelta(hours=3),
                halted_reason="resolveCycle reverted",
            ),
            todays_cycle(cycle_id=12, state=CycleState.OPEN, resolve_deadline=NOW + timedelta(hours=20)),
        ]

        issues = await monitor.check()

        assert [(i.issue, i.cycle_id) for i in issues] == [("halted", 11), ("deadline_passed", 11)]
        assert "3.0h" in issues[1].message

    @pytest.mark.asyncio
    async def test_open_conflicts_reported_once_per_fixture(self, monitor, store):
        monitor.cycles.recent.return_value = [todays_cycle()]
        conflict = dict(stored_home=2, stored_away=1, incoming_home=1, incoming_away=2, detected_at=NOW)
        store.open_conflicts.return_value = [
            ResultConflict(fixture_id="501", **conflict),
            ResultConflict(fixture_id="501", **{**conflict, "incoming_home": 3}),
        ]

        issues = await monitor.check()

        assert [i.issue for i in issues] == ["result_conflict_501"]


class TestRun:
    @pytest.mark.asyncio
    async def test_run_alerts_each_issue(self, monitor, alerts):
        monitor.cycles.recent.return_value = []

        issues = await monitor.run()

        assert len(issues) == 1
        alerts.alert_cycle_issue.assert_called_once_with("no_selection", None, issues[0].message)
