"""
Results Collector.

Drives fixtures Scheduled -> Live -> Finished (or Cancelled) by polling
the results feed. One sweep:

    1. select fixtures with kickoff in [now - 6h, now - 5min] that are not
       final, plus every unfinished slate fixture of a live cycle, so a
       cancellation before kickoff reaches the cycle while it is Open
    2. query the feed for each one under a per-fixture retry budget
    3. Finished  -> validate scores, derive outcomes, record_result
       Live      -> status Live
       Cancelled / Postponed -> status Cancelled

A payload with a null, boolean, fractional, negative or non-numeric score
is rejected and alerted; nothing is imputed. So are permanent feed errors
and payloads that do not parse. Budget exhaustion alerts and leaves the
fixture untouched for the next sweep.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from cycle_engine.core.outcomes import FixtureStatus
from cycle_engine.errors import (
    InvalidResultPayloadError,
    ResultConflictError,
    UnknownFixtureError,
)
from cycle_engine.monitoring.alerting import AlertManager
from cycle_engine.storage.fixture_store import FixtureStore
from cycle_engine.storage.models import Fixture
from cycle_engine.utils.clock import Clock, utc_now
from cycle_engine.utils.retry import RetryBudgetExhausted, RetryPolicy, retry_async

from .feed_client import FeedError, ResultsFeedClient
from .models import FeedResult, FeedStatus

logger = logging.getLogger(__name__)

LOOKBACK = timedelta(hours=6)
SETTLE_DELAY = timedelta(minutes=5)


def validate_score(fixture_id: str, side: str, value: Any) -> int:
    """
    Accept only non-negative integers.

    Raises:
        InvalidResultPayloadError: for null, bool, float, string or negative values.
    """
    if value is None:
        raise InvalidResultPayloadError(fixture_id, f"{side} score is null")
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidResultPayloadError(
            fixture_id, f"{side} score {value!r} is not an integer"
        )
    if value < 0:
        raise InvalidResultPayloadError(fixture_id, f"{side} score {value} is negative")
    return value


@dataclass
class CollectorStats:
    """Outcome counters of one sweep."""

    checked: int = 0
    recorded: int = 0
    live: int = 0
    cancelled: int = 0
    conflicts: int = 0
    rejected: int = 0
    exhausted: int = 0
    errors: int = 0


class ResultsCollector:
    """Periodic poller writing results into the Fixture Store."""

    def __init__(
        self,
        store: FixtureStore,
        feed: ResultsFeedClient,
        alerts: Optional[AlertManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 8,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.feed = feed
        self.alerts = alerts or AlertManager()
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=4, initial_delay=2.0, max_delay=30.0)
        self._semaphore = asyncio.Semaphore(concurrency)
        self._clock = clock

    async def due_fixtures(self) -> list[Fixture]:
        now = self._clock()
        window_end = now - SETTLE_DELAY
        due = await self.store.fixtures_awaiting_results(now - LOOKBACK, window_end)
        in_slates = await self.store.fixtures.unfinished_in_live_slates()

        by_id = {f.fixture_id: f for f in due}
        for fixture in in_slates:
            by_id.setdefault(fixture.fixture_id, fixture)
        return sorted(by_id.values(), key=lambda f: (f.kickoff, f.fixture_id))

    async def sweep(self) -> CollectorStats:
        """Poll every due fixture once (each under its own retry budget)."""
        stats = CollectorStats()
        fixtures = await self.due_fixtures()
        if not fixtures:
            logger.debug("Results sweep: nothing due")
            return stats

        await asyncio.gather(*(self._guarded(f, stats) for f in fixtures))
        logger.info(
            f"Results sweep: checked={stats.checked} recorded={stats.recorded} "
            f"live={stats.live} cancelled={stats.cancelled} conflicts={stats.conflicts} "
            f"rejected={stats.rejected} exhausted={stats.exhausted} errors={stats.errors}"
        )
        return stats

    async def _guarded(self, fixture: Fixture, stats: CollectorStats) -> None:
        async with self._semaphore:
            try:
                await self.process_fixture(fixture, stats)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                stats.errors += 1
                logger.error(f"Unexpected error collecting {fixture.fixture_id}: {e}", exc_info=True)

    async def process_fixture(self, fixture: Fixture, stats: CollectorStats) -> None:
        fixture_id = fixture.fixture_id
        stats.checked += 1

        try:
            result = await retry_async(
                lambda: self.feed.get_result(fixture_id),
                self.retry_policy,
                name=f"results feed {fixture_id}",
            )
        except RetryBudgetExhausted as e:
            stats.exhausted += 1
            logger.error(f"Feed budget exhausted for {fixture_id}: {e.last_error}")
            self.alerts.alert_feed_exhausted(fixture_id, e.attempts, str(e.last_error))
            return
        except (FeedError, ValueError) as e:
            # permanent: a 4xx, an unparseable body or an unknown status
            stats.rejected += 1
            logger.error(f"Feed payload for {fixture_id} rejected: {e}")
            self.alerts.alert_invalid_payload(fixture_id, str(e))
            return

        await self.apply(fixture, result, stats)

    async def apply(self, fixture: Fixture, result: FeedResult, stats: CollectorStats) -> None:
        """Apply one feed payload to the store."""
        fixture_id = fixture.fixture_id

        if result.status == FeedStatus.FINISHED:
            try:
                home = validate_score(fixture_id, "home", result.home_score)
                away = validate_score(fixture_id, "away", result.away_score)
            except InvalidResultPayloadError as e:
                stats.rejected += 1
                logger.error(str(e))
                self.alerts.alert_invalid_payload(fixture_id, e.reason)
                return

            finished_at = result.updated_at or self._clock()
            try:
                await self.store.record_result(fixture_id, home, away, finished_at)
                stats.recorded += 1
            except ResultConflictError as e:
                stats.conflicts += 1
                self.alerts.alert_result_conflict(fixture_id, e.stored, e.incoming)
            except UnknownFixtureError:
                stats.errors += 1
                logger.error(f"Fixture {fixture_id} vanished from the store")
            return

        if result.status.is_permanent_failure:
            if await self.store.set_status(fixture_id, FixtureStatus.CANCELLED):
                stats.cancelled += 1
                logger.warning(f"Fixture {fixture_id} {result.status.value.lower()} by provider")
            return

        if result.status == FeedStatus.LIVE and fixture.status == FixtureStatus.SCHEDULED:
            if await self.store.set_status(fixture_id, FixtureStatus.LIVE):
                stats.live += 1
