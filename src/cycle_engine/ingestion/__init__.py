"""
Ingestion: the results / fixtures feed and the jobs that read it.

    ResultsFeedClient - aiohttp client, one attempt per call, classified errors
    ResultsCollector  - drives fixtures to Finished / Cancelled
    FixtureSync       - upserts upcoming fixtures and opening odds
"""
from .collector import CollectorStats, ResultsCollector, validate_score
from .feed_client import FeedError, ResultsFeedClient
from .fixture_sync import FixtureSync, SyncStats
from .models import FeedFixture, FeedOdds, FeedResult, FeedStatus

__all__ = [
    "CollectorStats",
    "ResultsCollector",
    "validate_score",
    "FeedError",
    "ResultsFeedClient",
    "FixtureSync",
    "SyncStats",
    "FeedFixture",
    "FeedOdds",
    "FeedResult",
    "FeedStatus",
]
