"""
Storage Layer - Async PostgreSQL database, schema and repositories.

Public API:
    Database, DatabaseConfig - Connection pool management
    apply_migrations, SCHEMA_VERSION - Schema bookkeeping
    FixtureStore - Invariant-enforcing facade over fixtures, odds, results, slates

    Models (matching storage/migrations.py):
        Fixture, OddsSnapshot, FixtureResult, ResultConflict
        Slate, SlateFixture, Cycle, CycleTransition, SelectionRun
        ChainTransaction, ChainCursor
        Slip, SlipPrediction, LeaderboardEntry, UserStats, PrizeClaim
"""
from cycle_engine.storage.database import Database, DatabaseConfig
from cycle_engine.storage.fixture_store import FixtureStore
from cycle_engine.storage.migrations import SCHEMA_VERSION, apply_migrations
from cycle_engine.storage.models import (
    ChainCursor,
    ChainTransaction,
    Cycle,
    CycleTransition,
    Fixture,
    FixtureResult,
    LeaderboardEntry,
    OddsSnapshot,
    PrizeClaim,
    ResultConflict,
    SelectionRun,
    Slate,
    SlateFixture,
    Slip,
    SlipPrediction,
    UserStats,
)

__all__ = [
    "Database",
    "DatabaseConfig",
    "FixtureStore",
    "SCHEMA_VERSION",
    "apply_migrations",
    "ChainCursor",
    "ChainTransaction",
    "Cycle",
    "CycleTransition",
    "Fixture",
    "FixtureResult",
    "LeaderboardEntry",
    "OddsSnapshot",
    "PrizeClaim",
    "ResultConflict",
    "SelectionRun",
    "Slate",
    "SlateFixture",
    "Slip",
    "SlipPrediction",
    "UserStats",
]
