"""
Repository exports.
"""
from cycle_engine.storage.repositories.chain_repo import (
    ChainCursorRepository,
    ChainTransactionRepository,
    ProcessedEventRepository,
)
from cycle_engine.storage.repositories.cycle_repo import CycleRepository
from cycle_engine.storage.repositories.fixture_repo import (
    FixtureRepository,
    OddsRepository,
    ResultConflictRepository,
    ResultRepository,
)
from cycle_engine.storage.repositories.slate_repo import SelectionRunRepository, SlateRepository
from cycle_engine.storage.repositories.slip_repo import (
    LeaderboardRepository,
    PrizeClaimRepository,
    SlipRepository,
    UserStatsRepository,
)

__all__ = [
    # Fixtures
    "FixtureRepository",
    "OddsRepository",
    "ResultRepository",
    "ResultConflictRepository",
    # Slates & cycles
    "SlateRepository",
    "SelectionRunRepository",
    "CycleRepository",
    # Chain
    "ChainTransactionRepository",
    "ChainCursorRepository",
    "ProcessedEventRepository",
    # Analytics
    "SlipRepository",
    "LeaderboardRepository",
    "UserStatsRepository",
    "PrizeClaimRepository",
]
