"""
Slate repository.

A slate is one ``slates`` row plus ten ``slate_fixtures`` rows. Both are
written once in a single transaction and never updated.
"""
from __future__ import annotations

from typing import Optional

from cycle_engine.storage.models import SelectionRun, Slate, SlateFixture
from cycle_engine.storage.repositories.base import BaseRepository


class SlateRepository(BaseRepository[Slate]):
    """Repository for frozen slates."""

    table_name = "slates"
    model_class = Slate

    async def exists(self, cycle_id: int, conn=None) -> bool:
        result = await self._executor(conn).fetchval(
            "SELECT 1 FROM slates WHERE cycle_id = $1", cycle_id
        )
        return result is not None

    async def get(self, cycle_id: int, conn=None) -> Optional[Slate]:
        executor = self._executor(conn)
        header = await executor.fetchrow("SELECT * FROM slates WHERE cycle_id = $1", cycle_id)
        if header is None:
            return None
        rows = await executor.fetch(
            "SELECT * FROM slate_fixtures WHERE cycle_id = $1 ORDER BY position", cycle_id
        )
        return Slate(
            cycle_id=header["cycle_id"],
            slate_hash=header["slate_hash"],
            created_at=header["created_at"],
            fixtures=[SlateFixture(**dict(r)) for r in rows],
        )

    async def insert(self, slate: Slate, conn) -> None:
        """Write header and detail rows. Must run inside the caller's transaction."""
        await conn.execute(
            "INSERT INTO slates (cycle_id, slate_hash, created_at) VALUES ($1, $2, $3)",
            slate.cycle_id,
            slate.slate_hash,
            slate.created_at,
        )
        await conn.executemany(
            """
            INSERT INTO slate_fixtures
            (cycle_id, position, fixture_id, kickoff, home_odds, draw_odds, away_odds,
             over_odds, under_odds, odds_captured_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            [
                (
                    f.cycle_id,
                    f.position,
                    f.fixture_id,
                    f.kickoff,
                    f.home_odds,
                    f.draw_odds,
                    f.away_odds,
                    f.over_odds,
                    f.under_odds,
                    f.odds_captured_at,
                )
                for f in slate.fixtures
            ],
        )


class SelectionRunRepository(BaseRepository[SelectionRun]):
    """Audit of selection attempts, one row per attempt."""

    table_name = "selection_runs"
    model_class = SelectionRun

    async def record(self, run: SelectionRun) -> SelectionRun:
        query = """
            INSERT INTO selection_runs (cycle_id, run_at, outcome, candidates, detail)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
        """
        record = await self.db.fetchrow(
            query, run.cycle_id, run.run_at, run.outcome, run.candidates, run.detail
        )
        return self._record_to_model(record)

    async def latest(self, limit: int = 10) -> list[SelectionRun]:
        records = await self.db.fetch(
            "SELECT * FROM selection_runs ORDER BY run_at DESC, id DESC LIMIT $1", limit
        )
        return self._records_to_models(records)
