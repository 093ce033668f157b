"""
Per-player statistics derived from leaderboard rows.

Given the same leaderboard rows and the same list of evaluated cycles the
result is identical, so stats can be recomputed from scratch at any time
(``cycle-engine rebuild-stats``).

    cycles_entered  evaluated cycles with at least one slip of the player
    total_wins      slips ranked first in their cycle
    lifetime_score  sum of slip scores
    current_streak  consecutive evaluated cycles, ending at the latest one,
                    in which the player had a qualifying slip
    longest_streak  longest such run ever

A cycle the player skipped, or entered without qualifying, resets the
streak.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable, Optional, Sequence

from cycle_engine.core.scoring import DEFAULT_QUALIFY
from cycle_engine.storage.database import Database
from cycle_engine.storage.models import LeaderboardEntry, UserStats
from cycle_engine.storage.repositories import (
    CycleRepository,
    LeaderboardRepository,
    UserStatsRepository,
)

logger = logging.getLogger(__name__)


def compute_user_stats(
    player: str,
    entries: Iterable[LeaderboardEntry],
    evaluated_cycle_ids: Sequence[int],
    qualify_threshold: int = DEFAULT_QUALIFY,
) -> UserStats:
    """Pure stats computation for one player."""
    by_cycle: dict[int, list[LeaderboardEntry]] = defaultdict(list)
    for entry in entries:
        if entry.player == player:
            by_cycle[entry.cycle_id].append(entry)

    wins = 0
    lifetime = 0
    qualified_cycles = set()
    for cycle_id, rows in by_cycle.items():
        for row in rows:
            lifetime += row.score
            if row.rank == 1:
                wins += 1
            if row.correct_count >= qualify_threshold:
                qualified_cycles.add(cycle_id)

    current = 0
    longest = 0
    for cycle_id in sorted(evaluated_cycle_ids):
        if cycle_id in qualified_cycles:
            current += 1
            longest = max(longest, current)
        else:
            current = 0

    return UserStats(
        player=player,
        cycles_entered=len(by_cycle),
        total_wins=wins,
        lifetime_score=lifetime,
        current_streak=current,
        longest_streak=longest,
        last_cycle_id=max(by_cycle) if by_cycle else None,
    )


class StatsProjector:
    """Recomputes user_stats rows from the leaderboard."""

    def __init__(self, db: Database, qualify_threshold: int = DEFAULT_QUALIFY):
        self.db = db
        self.qualify_threshold = qualify_threshold
        self.cycles = CycleRepository(db)
        self.leaderboard = LeaderboardRepository(db)
        self.stats = UserStatsRepository(db)

    async def refresh_players(self, players: Iterable[str], conn) -> list[UserStats]:
        """Recompute stats of ``players`` inside the caller's transaction."""
        players = sorted(set(players))
        if not players:
            return []
        evaluated = await self.cycles.evaluated_ids(conn=conn)
        entries = await self.leaderboard.for_players(players, conn=conn)
        rows = [
            compute_user_stats(p, entries, evaluated, self.qualify_threshold)
            for p in players
        ]
        await self.stats.upsert_many(rows, conn)
        return rows

    async def refresh_after_evaluation(self, cycle_id: int, conn) -> list[UserStats]:
        """
        Players of the evaluated cycle plus everyone on a streak (a skipped
        cycle ends their streak).
        """
        players = set(await self.leaderboard.players_in_cycle(cycle_id, conn=conn))
        players.update(await self.stats.players_on_streak(conn=conn))
        return await self.refresh_players(players, conn)

    async def rebuild(self) -> int:
        """Drop and recompute every user_stats row in one transaction."""
        async with self.db.transaction() as conn:
            await self.stats.delete_all(conn)
            players = await self.leaderboard.all_players(conn=conn)
            rows = await self.refresh_players(players, conn)
        logger.info(f"Rebuilt stats for {len(rows)} player(s)")
        return len(rows)

    async def get(self, player: str) -> Optional[UserStats]:
        return await self.stats.get(player)
