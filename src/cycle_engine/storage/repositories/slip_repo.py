"""
Slip and analytics repositories.

Handles:
- slips / slip_predictions: projection of SlipPlaced events
- leaderboard_entries: ranks materialized on evaluation
- user_stats: per-player roll-ups derived from leaderboard rows
- prize_claims: projection of PrizeClaimed events
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from cycle_engine.core.scoring import SlipScore
from cycle_engine.storage.models import (
    LeaderboardEntry,
    PrizeClaim,
    Slip,
    SlipPrediction,
    UserStats,
)
from cycle_engine.storage.repositories.base import BaseRepository


class SlipRepository(BaseRepository[Slip]):
    """Repository for projected slips."""

    table_name = "slips"
    model_class = Slip

    async def insert(self, slip: Slip, conn) -> bool:
        """
        Insert a slip and its ten predictions.

        Returns False if the slip id was already projected.
        """
        record = await conn.fetchrow(
            """
            INSERT INTO slips (slip_id, cycle_id, player, placed_at, tx_hash, log_index)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (slip_id) DO NOTHING
            RETURNING slip_id
            """,
            slip.slip_id,
            slip.cycle_id,
            slip.player,
            slip.placed_at,
            slip.tx_hash,
            slip.log_index,
        )
        if record is None:
            return False
        await conn.executemany(
            """
            INSERT INTO slip_predictions
            (slip_id, position, fixture_id, market, selection, selected_odd)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (slip_id, position) DO NOTHING
            """,
            [
                (p.slip_id, p.position, p.fixture_id, p.market.value, p.selection, p.selected_odd)
                for p in slip.predictions
            ],
        )
        return True

    async def for_cycle(self, cycle_id: int) -> list[Slip]:
        """Slips of a cycle with predictions in slate order."""
        slip_rows = await self.db.fetch(
            "SELECT * FROM slips WHERE cycle_id = $1 ORDER BY slip_id", cycle_id
        )
        prediction_rows = await self.db.fetch(
            """
            SELECT p.* FROM slip_predictions p
            JOIN slips s ON s.slip_id = p.slip_id
            WHERE s.cycle_id = $1
            ORDER BY p.slip_id, p.position
            """,
            cycle_id,
        )
        by_slip: dict[int, list[SlipPrediction]] = {}
        for row in prediction_rows:
            by_slip.setdefault(row["slip_id"], []).append(SlipPrediction(**dict(row)))
        return [
            Slip(**dict(row), predictions=by_slip.get(row["slip_id"], []))
            for row in slip_rows
        ]

    async def get(self, slip_id: int) -> Optional[Slip]:
        return await self.get_by_id(slip_id, id_column="slip_id")

    async def count_for_cycle(self, cycle_id: int) -> int:
        return await self.db.fetchval("SELECT COUNT(*) FROM slips WHERE cycle_id = $1", cycle_id)

    async def record_evaluation(
        self, cycle_id: int, scores: Sequence[SlipScore], evaluated_at: datetime, conn
    ) -> None:
        """Write per-slip results and per-position hits. Overwrites earlier evaluations."""
        await conn.executemany(
            """
            UPDATE slips
            SET is_evaluated = TRUE, correct_count = $3, score = $4, rank = $5, evaluated_at = $6
            WHERE slip_id = $1 AND cycle_id = $2
            """,
            [
                (s.slip_id, cycle_id, s.correct_count, Decimal(s.score), s.rank, evaluated_at)
                for s in scores
            ],
        )
        await conn.executemany(
            "UPDATE slip_predictions SET is_hit = $3 WHERE slip_id = $1 AND position = $2",
            [
                (s.slip_id, position, hit)
                for s in scores
                for position, hit in enumerate(s.hits)
            ],
        )

    async def flag_refund_eligible(self, cycle_id: int, conn=None) -> int:
        status = await self._executor(conn).execute(
            "UPDATE slips SET refund_eligible = TRUE WHERE cycle_id = $1 AND refund_eligible = FALSE",
            cycle_id,
        )
        return int(status.split()[-1])


class LeaderboardRepository(BaseRepository[LeaderboardEntry]):
    """Ranked rows of evaluated cycles."""

    table_name = "leaderboard_entries"
    model_class = LeaderboardEntry

    async def replace_for_cycle(self, cycle_id: int, scores: Sequence[SlipScore], conn) -> None:
        """
        Upsert the ranked rows of a cycle.

        The (cycle_id, rank) constraint is deferred, so ranks may swap
        between slips within one transaction.
        """
        await conn.executemany(
            """
            INSERT INTO leaderboard_entries
            (cycle_id, slip_id, player, score, correct_count, placed_at, rank)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (cycle_id, slip_id) DO UPDATE
            SET player = $3, score = $4, correct_count = $5, placed_at = $6, rank = $7
            """,
            [
                (cycle_id, s.slip_id, s.player, Decimal(s.score), s.correct_count, s.placed_at, s.rank)
                for s in scores
            ],
        )

    async def for_cycle(self, cycle_id: int) -> list[LeaderboardEntry]:
        records = await self.db.fetch(
            "SELECT * FROM leaderboard_entries WHERE cycle_id = $1 ORDER BY rank", cycle_id
        )
        return self._records_to_models(records)

    async def for_players(self, players: Iterable[str], conn=None) -> list[LeaderboardEntry]:
        """Every row of the given players over evaluated cycles."""
        records = await self._executor(conn).fetch(
            """
            SELECT l.* FROM leaderboard_entries l
            JOIN cycles c ON c.cycle_id = l.cycle_id
            WHERE c.state = 'evaluated' AND l.player = ANY($1::text[])
            ORDER BY l.cycle_id, l.rank
            """,
            list(players),
        )
        return self._records_to_models(records)

    async def players_in_cycle(self, cycle_id: int, conn=None) -> list[str]:
        records = await self._executor(conn).fetch(
            "SELECT DISTINCT player FROM leaderboard_entries WHERE cycle_id = $1", cycle_id
        )
        return [r["player"] for r in records]

    async def all_players(self, conn=None) -> list[str]:
        records = await self._executor(conn).fetch(
            "SELECT DISTINCT player FROM leaderboard_entries ORDER BY player"
        )
        return [r["player"] for r in records]


class UserStatsRepository(BaseRepository[UserStats]):
    """Per-player aggregates."""

    table_name = "user_stats"
    model_class = UserStats

    async def get(self, player: str) -> Optional[UserStats]:
        return await self.get_by_id(player, id_column="player")

    async def upsert_many(self, stats: Sequence[UserStats], conn) -> None:
        await conn.executemany(
            """
            INSERT INTO user_stats
            (player, cycles_entered, total_wins, lifetime_score, current_streak,
             longest_streak, last_cycle_id, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, NOW())
            ON CONFLICT (player) DO UPDATE
            SET cycles_entered = $2, total_wins = $3, lifetime_score = $4,
                current_streak = $5, longest_streak = $6, last_cycle_id = $7,
                updated_at = NOW()
            """,
            [
                (
                    s.player,
                    s.cycles_entered,
                    s.total_wins,
                    Decimal(s.lifetime_score),
                    s.current_streak,
                    s.longest_streak,
                    s.last_cycle_id,
                )
                for s in stats
            ],
        )

    async def players_on_streak(self, conn=None) -> list[str]:
        records = await self._executor(conn).fetch(
            "SELECT player FROM user_stats WHERE current_streak > 0"
        )
        return [r["player"] for r in records]

    async def delete_all(self, conn) -> None:
        await conn.execute("DELETE FROM user_stats")


class PrizeClaimRepository(BaseRepository[PrizeClaim]):
    """Projected prize claims."""

    table_name = "prize_claims"
    model_class = PrizeClaim

    async def record(self, claim: PrizeClaim, conn) -> None:
        await conn.execute(
            """
            INSERT INTO prize_claims (cycle_id, player, rank, amount, tx_hash, log_index, claimed_at)
            VALUES ($1, $2, $3, $4, $5, $6, COALESCE($7, NOW()))
            ON CONFLICT (tx_hash, log_index) DO NOTHING
            """,
            claim.cycle_id,
            claim.player,
            claim.rank,
            claim.amount,
            claim.tx_hash,
            claim.log_index,
            claim.claimed_at,
        )

    async def for_cycle(self, cycle_id: int) -> list[PrizeClaim]:
        records = await self.db.fetch(
            "SELECT * FROM prize_claims WHERE cycle_id = $1 ORDER BY rank", cycle_id
        )
        return self._records_to_models(records)
