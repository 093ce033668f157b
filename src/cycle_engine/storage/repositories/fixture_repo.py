"""
Fixture, odds and result repositories.

Handles:
- fixtures: kickoff, teams, league, status
- odds_snapshots: append-only provider prices per (fixture, market)
- fixture_results: immutable final scores
- result_conflicts: rejected re-submissions awaiting an operator
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Iterable, Optional

from cycle_engine.core.outcomes import FixtureStatus, Market
from cycle_engine.storage.models import (
    Fixture,
    FixtureResult,
    OddsSnapshot,
    ResultConflict,
)
from cycle_engine.storage.repositories.base import BaseRepository


class FixtureRepository(BaseRepository[Fixture]):
    """Repository for fixtures."""

    table_name = "fixtures"
    model_class = Fixture

    async def get(self, fixture_id: str, conn=None, for_update: bool = False) -> Optional[Fixture]:
        query = "SELECT * FROM fixtures WHERE fixture_id = $1"
        if for_update:
            query += " FOR UPDATE"
        record = await self._executor(conn).fetchrow(query, fixture_id)
        return self._record_to_model(record)

    async def get_many(self, fixture_ids: Iterable[str], conn=None) -> dict[str, Fixture]:
        records = await self._executor(conn).fetch(
            "SELECT * FROM fixtures WHERE fixture_id = ANY($1::text[])", list(fixture_ids)
        )
        return {r["fixture_id"]: self._record_to_model(r) for r in records}

    async def insert(self, fixture: Fixture, conn=None) -> Fixture:
        query = """
            INSERT INTO fixtures (fixture_id, kickoff, home_team, away_team, league, status)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (fixture_id) DO NOTHING
            RETURNING *
        """
        record = await self._executor(conn).fetchrow(
            query,
            fixture.fixture_id,
            fixture.kickoff,
            fixture.home_team,
            fixture.away_team,
            fixture.league,
            fixture.status.value,
        )
        return self._record_to_model(record) if record else fixture

    async def update_details(
        self, fixture_id: str, home_team: str, away_team: str, league: str, conn=None
    ) -> Optional[Fixture]:
        """Refresh mutable descriptive fields. Kickoff is never touched here."""
        query = """
            UPDATE fixtures
            SET home_team = $2, away_team = $3, league = $4, updated_at = NOW()
            WHERE fixture_id = $1
              AND (home_team, away_team, league) IS DISTINCT FROM ($2, $3, $4)
            RETURNING *
        """
        record = await self._executor(conn).fetchrow(query, fixture_id, home_team, away_team, league)
        return self._record_to_model(record)

    async def set_status(self, fixture_id: str, status: FixtureStatus, conn=None) -> None:
        await self._executor(conn).execute(
            "UPDATE fixtures SET status = $2, updated_at = NOW() WHERE fixture_id = $1",
            fixture_id,
            status.value,
        )

    async def set_conflict_flag(self, fixture_id: str, flagged: bool, conn=None) -> None:
        await self._executor(conn).execute(
            "UPDATE fixtures SET result_conflict = $2, updated_at = NOW() WHERE fixture_id = $1",
            fixture_id,
            flagged,
        )

    async def awaiting_results(self, window_start: datetime, window_end: datetime) -> list[Fixture]:
        """Fixtures that kicked off inside the window and are not final yet."""
        query = """
            SELECT * FROM fixtures
            WHERE kickoff BETWEEN $1 AND $2
              AND status NOT IN ('finished', 'cancelled')
            ORDER BY kickoff, fixture_id
        """
        records = await self.db.fetch(query, window_start, window_end)
        return self._records_to_models(records)

    async def unfinished_in_live_slates(self) -> list[Fixture]:
        """Slate fixtures of live cycles that are not final, before or after kickoff."""
        query = """
            SELECT DISTINCT f.* FROM fixtures f
            JOIN slate_fixtures sf ON sf.fixture_id = f.fixture_id
            JOIN cycles c ON c.cycle_id = sf.cycle_id
            WHERE c.state IN ('open', 'closed', 'awaiting_results')
              AND f.status NOT IN ('finished', 'cancelled')
            ORDER BY f.kickoff, f.fixture_id
        """
        records = await self.db.fetch(query)
        return self._records_to_models(records)

    async def candidates(self, after: datetime, before: datetime) -> list[Fixture]:
        """
        Scheduled fixtures with kickoff strictly inside (after, before) and
        at least one snapshot for every required market.
        """
        query = """
            SELECT f.* FROM fixtures f
            WHERE f.kickoff > $1 AND f.kickoff < $2
              AND f.status = 'scheduled'
              AND f.result_conflict = FALSE
              AND (
                  SELECT COUNT(DISTINCT o.market) FROM odds_snapshots o
                  WHERE o.fixture_id = f.fixture_id AND o.market = ANY($3::text[])
              ) = $4
            ORDER BY f.kickoff, f.fixture_id
        """
        markets = [m.value for m in Market]
        records = await self.db.fetch(query, after, before, markets, len(markets))
        return self._records_to_models(records)


class OddsRepository(BaseRepository[OddsSnapshot]):
    """Append-only odds snapshots. The latest per (fixture, market) is current."""

    table_name = "odds_snapshots"
    model_class = OddsSnapshot

    async def record(self, snapshot: OddsSnapshot, conn=None) -> OddsSnapshot:
        query = """
            INSERT INTO odds_snapshots (fixture_id, market, captured_at, odds)
            VALUES ($1, $2, $3, $4::jsonb)
            RETURNING *
        """
        payload = {k: str(v) for k, v in snapshot.odds.items()}
        record = await self._executor(conn).fetchrow(
            query,
            snapshot.fixture_id,
            snapshot.market.value,
            snapshot.captured_at,
            json.dumps(payload),
        )
        return self._record_to_model(record)

    async def current(
        self,
        fixture_ids: Iterable[str],
        as_of: Optional[datetime] = None,
        conn=None,
    ) -> dict[tuple[str, Market], OddsSnapshot]:
        """Latest snapshot per (fixture, market), optionally captured at or before ``as_of``."""
        query = """
            SELECT DISTINCT ON (fixture_id, market) *
            FROM odds_snapshots
            WHERE fixture_id = ANY($1::text[])
              AND ($2::timestamptz IS NULL OR captured_at <= $2)
            ORDER BY fixture_id, market, captured_at DESC, id DESC
        """
        records = await self._executor(conn).fetch(query, list(fixture_ids), as_of)
        snapshots = self._records_to_models(records)
        return {(s.fixture_id, s.market): s for s in snapshots}


class ResultRepository(BaseRepository[FixtureResult]):
    """Final scores. Rows are written once; only an operator override replaces them."""

    table_name = "fixture_results"
    model_class = FixtureResult

    async def get(self, fixture_id: str, conn=None) -> Optional[FixtureResult]:
        record = await self._executor(conn).fetchrow(
            "SELECT * FROM fixture_results WHERE fixture_id = $1", fixture_id
        )
        return self._record_to_model(record)

    async def get_many(self, fixture_ids: Iterable[str], conn=None) -> dict[str, FixtureResult]:
        records = await self._executor(conn).fetch(
            "SELECT * FROM fixture_results WHERE fixture_id = ANY($1::text[])", list(fixture_ids)
        )
        return {r["fixture_id"]: self._record_to_model(r) for r in records}

    async def insert(self, result: FixtureResult, conn=None) -> FixtureResult:
        query = """
            INSERT INTO fixture_results
            (fixture_id, home_score, away_score, outcome_1x2, outcome_ou25, finished_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (fixture_id) DO NOTHING
            RETURNING *
        """
        record = await self._executor(conn).fetchrow(
            query,
            result.fixture_id,
            result.home_score,
            result.away_score,
            result.outcome_1x2.value,
            result.outcome_ou25.value,
            result.finished_at,
        )
        return self._record_to_model(record) if record else result

    async def replace(self, result: FixtureResult, conn=None) -> FixtureResult:
        """Operator override of a stored result."""
        query = """
            INSERT INTO fixture_results
            (fixture_id, home_score, away_score, outcome_1x2, outcome_ou25, finished_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (fixture_id) DO UPDATE
            SET home_score = $2, away_score = $3, outcome_1x2 = $4, outcome_ou25 = $5,
                finished_at = $6, recorded_at = NOW()
            RETURNING *
        """
        record = await self._executor(conn).fetchrow(
            query,
            result.fixture_id,
            result.home_score,
            result.away_score,
            result.outcome_1x2.value,
            result.outcome_ou25.value,
            result.finished_at,
        )
        return self._record_to_model(record)


class ResultConflictRepository(BaseRepository[ResultConflict]):
    """Conflicting result submissions awaiting operator resolution."""

    table_name = "result_conflicts"
    model_class = ResultConflict

    async def record(
        self,
        fixture_id: str,
        stored: tuple[int, int],
        incoming: tuple[int, int],
        conn=None,
    ) -> ResultConflict:
        """Insert an open conflict unless the same incoming score is already open."""
        executor = self._executor(conn)
        existing = await executor.fetchrow(
            """
            SELECT * FROM result_conflicts
            WHERE fixture_id = $1 AND resolved_at IS NULL
              AND incoming_home = $2 AND incoming_away = $3
            """,
            fixture_id,
            incoming[0],
            incoming[1],
        )
        if existing:
            return self._record_to_model(existing)
        record = await executor.fetchrow(
            """
            INSERT INTO result_conflicts
            (fixture_id, stored_home, stored_away, incoming_home, incoming_away)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
            """,
            fixture_id,
            stored[0],
            stored[1],
            incoming[0],
            incoming[1],
        )
        return self._record_to_model(record)

    async def open_for(self, fixture_ids: Iterable[str]) -> list[ResultConflict]:
        records = await self.db.fetch(
            """
            SELECT * FROM result_conflicts
            WHERE fixture_id = ANY($1::text[]) AND resolved_at IS NULL
            ORDER BY detected_at
            """,
            list(fixture_ids),
        )
        return self._records_to_models(records)

    async def open_all(self) -> list[ResultConflict]:
        records = await self.db.fetch(
            "SELECT * FROM result_conflicts WHERE resolved_at IS NULL ORDER BY detected_at"
        )
        return self._records_to_models(records)

    async def resolve_all(self, fixture_id: str, note: str, conn=None) -> int:
        status = await self._executor(conn).execute(
            """
            UPDATE result_conflicts
            SET resolved_at = NOW(), resolution_note = $2
            WHERE fixture_id = $1 AND resolved_at IS NULL
            """,
            fixture_id,
            note,
        )
        return int(status.split()[-1])
