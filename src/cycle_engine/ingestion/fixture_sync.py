"""
Fixture Sync: keeps upcoming fixtures and their opening odds in the store.

Runs every FIXTURE_SYNC_INTERVAL and once right before each selection.
Odds snapshots are appended only when prices changed since the current
snapshot, so the table grows with price moves rather than with polls.

A fixture the provider lists as Cancelled or Postponed, or with a kickoff
other than the stored one, is marked Cancelled; a cycle holding it in its
slate is then cancelled by the coordinator.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from cycle_engine.core.outcomes import FixtureStatus
from cycle_engine.errors import ImmutableKickoffError, UnknownFixtureError
from cycle_engine.monitoring.alerting import AlertManager
from cycle_engine.storage.fixture_store import FixtureStore
from cycle_engine.utils.clock import Clock, utc_now
from cycle_engine.utils.retry import RetryBudgetExhausted, RetryPolicy, retry_async

from .feed_client import FeedError, ResultsFeedClient
from .models import FeedFixture

logger = logging.getLogger(__name__)

DEFAULT_HORIZON = timedelta(hours=48)


@dataclass
class SyncStats:
    fixtures_seen: int = 0
    fixtures_upserted: int = 0
    odds_recorded: int = 0
    kickoff_violations: int = 0
    cancelled: int = 0
    failures: int = 0


class FixtureSync:
    """Pulls fixtures and 1X2 / OU2.5 odds from the provider."""

    def __init__(
        self,
        store: FixtureStore,
        feed: ResultsFeedClient,
        alerts: Optional[AlertManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        horizon: timedelta = DEFAULT_HORIZON,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.feed = feed
        self.alerts = alerts or AlertManager()
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, initial_delay=2.0)
        self.horizon = horizon
        self._clock = clock

    async def sync(self) -> SyncStats:
        stats = SyncStats()
        now = self._clock()

        try:
            listed = await retry_async(
                lambda: self.feed.list_fixtures(now, now + self.horizon),
                self.retry_policy,
                name="fixture listing",
            )
        except (RetryBudgetExhausted, FeedError) as e:
            stats.failures += 1
            logger.error(f"Fixture sync aborted: {e}")
            return stats

        for item in listed:
            stats.fixtures_seen += 1
            if item.status.is_permanent_failure:
                await self._cancel(item.fixture_id, f"{item.status.value.lower()} by provider", stats)
                continue
            if item.kickoff <= now:
                continue
            if not await self._upsert(item, stats):
                continue
            await self._sync_odds(item.fixture_id, stats)

        logger.info(
            f"Fixture sync: seen={stats.fixtures_seen} upserted={stats.fixtures_upserted} "
            f"odds={stats.odds_recorded} kickoff_violations={stats.kickoff_violations} "
            f"cancelled={stats.cancelled} failures={stats.failures}"
        )
        return stats

    async def _upsert(self, item: FeedFixture, stats: SyncStats) -> bool:
        try:
            await self.store.upsert_fixture(
                item.fixture_id, item.kickoff, item.home_team, item.away_team, item.league
            )
            stats.fixtures_upserted += 1
            return True
        except ImmutableKickoffError as e:
            stats.kickoff_violations += 1
            logger.error(str(e))
            self.alerts.alert_immutable_violation(
                item.fixture_id, f"Kickoff stored {e.stored}, provider now says {e.incoming}"
            )
            await self._cancel(item.fixture_id, f"kickoff moved to {e.incoming}", stats)
            return False

    async def _cancel(self, fixture_id: str, reason: str, stats: SyncStats) -> None:
        try:
            changed = await self.store.set_status(fixture_id, FixtureStatus.CANCELLED)
        except UnknownFixtureError:
            return
        if changed:
            stats.cancelled += 1
            logger.warning(f"Fixture {fixture_id} cancelled: {reason}")

    async def _sync_odds(self, fixture_id: str, stats: SyncStats) -> None:
        try:
            priced = await retry_async(
                lambda: self.feed.get_odds(fixture_id),
                self.retry_policy,
                name=f"odds {fixture_id}",
            )
        except (RetryBudgetExhausted, FeedError) as e:
            stats.failures += 1
            logger.warning(f"Odds unavailable for {fixture_id}: {e}")
            return

        current = await self.store.current_odds([fixture_id])
        for odds in priced:
            existing = current.get((fixture_id, odds.market))
            if existing is not None and existing.odds == odds.odds:
                continue
            await self.store.record_odds(fixture_id, odds.market, odds.captured_at, odds.odds)
            stats.odds_recorded += 1
