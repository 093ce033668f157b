"""
Test fixtures for the ingestion layer.

All provider calls are mocked; tests never reach a real results feed.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from cycle_engine.core.outcomes import FixtureStatus
from cycle_engine.storage.models import Fixture
from cycle_engine.utils.clock import FrozenClock
from cycle_engine.utils.retry import RetryPolicy

NOW = datetime(2025, 3, 15, 20, 0, tzinfo=timezone.utc)


def make_fixture(fixture_id="1003", kickoff=None, status=FixtureStatus.SCHEDULED) -> Fixture:
    return Fixture(
        fixture_id=fixture_id,
        kickoff=kickoff or NOW - timedelta(hours=2),
        home_team="Arsenal",
        away_team="Chelsea",
        league="Premier League",
        status=status,
    )


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def fast_retry():
    """Retry budget without real sleeping."""
    return RetryPolicy(max_attempts=3, initial_delay=0, max_delay=0, jitter=0)


@pytest.fixture
def fixture_factory():
    return make_fixture


@pytest.fixture
def mock_store():
    store = MagicMock()
    store.fixtures_awaiting_results = AsyncMock(return_value=[])
    store.fixtures = MagicMock()
    store.fixtures.unfinished_in_live_slates = AsyncMock(return_value=[])
    store.record_result = AsyncMock()
    store.set_status = AsyncMock(return_value=True)
    store.upsert_fixture = AsyncMock()
    store.current_odds = AsyncMock(return_value={})
    store.record_odds = AsyncMock()
    return store


@pytest.fixture
def mock_feed():
    feed = MagicMock()
    feed.get_result = AsyncMock()
    feed.list_fixtures = AsyncMock(return_value=[])
    feed.get_odds = AsyncMock(return_value=[])
    return feed


@pytest.fixture
def mock_alerts():
    return MagicMock()
