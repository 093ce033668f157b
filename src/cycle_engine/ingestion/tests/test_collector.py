"""
Tests for the Results Collector.

Covers payload validation, status handling, conflicts and retry budgets.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from cycle_engine.core.outcomes import FixtureStatus
from cycle_engine.errors import (
    InvalidResultPayloadError,
    RateLimitedError,
    ResultConflictError,
    TransientNetworkError,
)
from cycle_engine.ingestion.collector import CollectorStats, ResultsCollector, validate_score
from cycle_engine.ingestion.feed_client import FeedError
from cycle_engine.ingestion.models import FeedResult, FeedStatus

NOW = datetime(2025, 3, 15, 20, 0, tzinfo=timezone.utc)


def finished(home, away, fixture_id="1003"):
    return FeedResult(fixture_id=fixture_id, status=FeedStatus.FINISHED, home_score=home, away_score=away)


@pytest.fixture
def collector(mock_store, mock_feed, mock_alerts, fast_retry, clock):
    return ResultsCollector(mock_store, mock_feed, alerts=mock_alerts, retry_policy=fast_retry, clock=clock)


class TestValidateScore:
    @pytest.mark.parametrize("value", [0, 1, 7])
    def test_accepts_non_negative_integers(self, value):
        assert validate_score("1", "home", value) == value

    @pytest.mark.parametrize("value", [None, True, False, 1.0, 2.5, "2", -1])
    def test_rejects_everything_else(self, value):
        with pytest.raises(InvalidResultPayloadError):
            validate_score("1", "home", value)


class TestDueFixtures:
    @pytest.mark.asyncio
    async def test_window_and_stale_slate_fixtures_are_merged(
        self, collector, mock_store, fixture_factory
    ):
        recent = fixture_factory("2001", kickoff=NOW - timedelta(hours=2))
        stale = fixture_factory("1003", kickoff=NOW - timedelta(hours=9))
        mock_store.fixtures_awaiting_results.return_value = [recent]
        mock_store.fixtures.unfinished_in_live_slates.return_value = [stale, recent]

        due = await collector.due_fixtures()

        assert [f.fixture_id for f in due] == ["1003", "2001"]
        mock_store.fixtures_awaiting_results.assert_awaited_once_with(
            NOW - timedelta(hours=6), NOW - timedelta(minutes=5)
        )

    @pytest.mark.asyncio
    async def test_slate_fixture_postponed_before_kickoff_is_cancelled(
        self, collector, mock_store, mock_feed, fixture_factory
    ):
        upcoming = fixture_factory("1003", kickoff=NOW + timedelta(hours=8))
        mock_store.fixtures.unfinished_in_live_slates.return_value = [upcoming]
        mock_feed.get_result.return_value = FeedResult(
            fixture_id="1003", status=FeedStatus.POSTPONED, home_score=None, away_score=None
        )

        stats = await collector.sweep()

        mock_feed.get_result.assert_awaited_once_with("1003")
        mock_store.set_status.assert_awaited_once_with("1003", FixtureStatus.CANCELLED)
        assert stats.cancelled == 1


class TestApply:
    @pytest.mark.asyncio
    async def test_finished_result_is_recorded(self, collector, mock_store, fixture_factory):
        stats = CollectorStats()

        await collector.apply(fixture_factory(), finished(2, 1), stats)

        mock_store.record_result.assert_awaited_once_with("1003", 2, 1, NOW)
        assert stats.recorded == 1

    @pytest.mark.asyncio
    async def test_null_score_is_rejected_and_alerted(self, collector, mock_store, mock_alerts, fixture_factory):
        stats = CollectorStats()

        await collector.apply(fixture_factory(), finished(None, 1), stats)

        mock_store.record_result.assert_not_awaited()
        mock_alerts.alert_invalid_payload.assert_called_once()
        assert stats.rejected == 1

    @pytest.mark.asyncio
    async def test_fractional_score_is_rejected(self, collector, mock_store, fixture_factory):
        stats = CollectorStats()

        await collector.apply(fixture_factory(), finished(2, 1.5), stats)

        mock_store.record_result.assert_not_awaited()
        assert stats.rejected == 1

    @pytest.mark.asyncio
    async def test_conflicting_resubmission_alerts(self, collector, mock_store, mock_alerts, fixture_factory):
        """(2,1) stored, feed now says (1,2): conflict surfaced, nothing overwritten."""
        mock_store.record_result.side_effect = ResultConflictError("1003", (2, 1), (1, 2))
        stats = CollectorStats()

        await collector.apply(fixture_factory(), finished(1, 2), stats)

        assert stats.conflicts == 1
        assert stats.recorded == 0
        mock_alerts.alert_result_conflict.assert_called_once_with("1003", (2, 1), (1, 2))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [FeedStatus.CANCELLED, FeedStatus.POSTPONED])
    async def test_permanent_failure_cancels_fixture(self, collector, mock_store, fixture_factory, status):
        stats = CollectorStats()
        result = FeedResult(fixture_id="1003", status=status, home_score=None, away_score=None)

        await collector.apply(fixture_factory(), result, stats)

        mock_store.set_status.assert_awaited_once_with("1003", FixtureStatus.CANCELLED)
        assert stats.cancelled == 1

    @pytest.mark.asyncio
    async def test_live_moves_scheduled_fixture(self, collector, mock_store, fixture_factory):
        stats = CollectorStats()
        result = FeedResult(fixture_id="1003", status=FeedStatus.LIVE, home_score=1, away_score=0)

        await collector.apply(fixture_factory(), result, stats)

        mock_store.set_status.assert_awaited_once_with("1003", FixtureStatus.LIVE)
        mock_store.record_result.assert_not_awaited()
        assert stats.live == 1

    @pytest.mark.asyncio
    async def test_live_fixture_stays_live(self, collector, mock_store, fixture_factory):
        result = FeedResult(fixture_id="1003", status=FeedStatus.LIVE, home_score=1, away_score=0)

        await collector.apply(fixture_factory(status=FixtureStatus.LIVE), result, CollectorStats())

        mock_store.set_status.assert_not_awaited()


class TestSweep:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, collector, mock_store, mock_feed, fixture_factory):
        mock_store.fixtures_awaiting_results.return_value = [fixture_factory()]
        mock_feed.get_result.side_effect = [RateLimitedError("slow down", 429), finished(0, 0)]

        stats = await collector.sweep()

        assert mock_feed.get_result.await_count == 2
        assert stats.recorded == 1

    @pytest.mark.asyncio
    async def test_exhausted_budget_alerts_and_leaves_fixture(
        self, collector, mock_store, mock_feed, mock_alerts, fixture_factory
    ):
        mock_store.fixtures_awaiting_results.return_value = [fixture_factory()]
        mock_feed.get_result.side_effect = TransientNetworkError("timeout")

        stats = await collector.sweep()

        assert stats.exhausted == 1
        assert mock_feed.get_result.await_count == 3
        mock_alerts.alert_feed_exhausted.assert_called_once()
        mock_store.record_result.assert_not_awaited()
        mock_store.set_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_permanent_feed_error_is_not_retried_and_alerted(
        self, collector, mock_store, mock_feed, mock_alerts, fixture_factory
    ):
        mock_store.fixtures_awaiting_results.return_value = [fixture_factory()]
        mock_feed.get_result.side_effect = FeedError("not found", 404)

        stats = await collector.sweep()

        assert mock_feed.get_result.await_count == 1
        assert stats.rejected == 1
        mock_alerts.alert_invalid_payload.assert_called_once_with("1003", "not found")
        mock_store.set_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_feed_status_is_rejected_and_alerted(
        self, collector, mock_store, mock_feed, mock_alerts, fixture_factory
    ):
        mock_store.fixtures_awaiting_results.return_value = [fixture_factory()]
        mock_feed.get_result.side_effect = lambda fid: FeedResult.from_payload(fid, {"status": "Abandoned"})

        stats = await collector.sweep()

        assert stats.rejected == 1
        reason = mock_alerts.alert_invalid_payload.call_args.args[1]
        assert "Abandoned" in reason
        mock_store.record_result.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_failing_fixture_does_not_stop_others(
        self, collector, mock_store, mock_feed, fixture_factory
    ):
        mock_store.fixtures_awaiting_results.return_value = [
            fixture_factory("1001", kickoff=NOW - timedelta(hours=3)),
            fixture_factory("1002", kickoff=NOW - timedelta(hours=2)),
        ]

        async def result(fixture_id):
            if fixture_id == "1001":
                raise RuntimeError("unexpected")
            return finished(3, 1, fixture_id)

        mock_feed.get_result.side_effect = result

        with patch("cycle_engine.ingestion.collector.logger"):
            stats = await collector.sweep()

        assert stats.errors == 1
        assert stats.recorded == 1

    @pytest.mark.asyncio
    async def test_nothing_due(self, collector, mock_feed):
        stats = await collector.sweep()

        assert stats.checked == 0
        mock_feed.get_result.assert_not_awaited()
