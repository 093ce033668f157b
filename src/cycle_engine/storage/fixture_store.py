"""
Fixture Store: typed, durable storage for fixtures, odds, results and slates.

The repositories hold the SQL; this class enforces the invariants that
span rows or tables:

- kickoff is immutable after first insert (ImmutableKickoffError)
- a result is written once; an identical re-submission is a no-op and a
  different score raises ResultConflictError after recording the conflict
- a slate is frozen once, in one transaction, with odds COPIED from the
  current snapshots so later odds changes never reach it
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from cycle_engine.chain.encoding import ChainMatch, slate_hash, to_fixed
from cycle_engine.core.outcomes import FixtureStatus, Market, Outcome1X2, OutcomeOU25, status_can_advance
from cycle_engine.core.scoring import DEFAULT_ODDS_DECIMALS, SLATE_SIZE
from cycle_engine.errors import (
    ImmutableKickoffError,
    InsufficientOddsError,
    ResultConflictError,
    SlateAlreadyFrozenError,
    UnknownFixtureError,
)
from cycle_engine.storage.database import Database
from cycle_engine.storage.models import (
    Fixture,
    FixtureResult,
    OddsSnapshot,
    ResultConflict,
    Slate,
    SlateFixture,
)
from cycle_engine.storage.repositories import (
    FixtureRepository,
    OddsRepository,
    ResultConflictRepository,
    ResultRepository,
    SlateRepository,
)
from cycle_engine.utils.clock import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)


class FixtureStore:
    """Single writer for fixtures, odds snapshots, results and slates."""

    def __init__(
        self,
        db: Database,
        odds_decimals: int = DEFAULT_ODDS_DECIMALS,
        clock: Clock = utc_now,
    ) -> None:
        self.db = db
        self.odds_decimals = odds_decimals
        self._clock = clock
        self.fixtures = FixtureRepository(db)
        self.odds = OddsRepository(db)
        self.results = ResultRepository(db)
        self.conflicts = ResultConflictRepository(db)
        self.slates = SlateRepository(db)

    # ------------------------------------------------------------------ fixtures

    async def upsert_fixture(
        self,
        fixture_id: str,
        kickoff: datetime,
        home_team: str,
        away_team: str,
        league: str,
    ) -> Fixture:
        """
        Insert a fixture or refresh its descriptive fields.

        Raises:
            ImmutableKickoffError: the stored kickoff differs from ``kickoff``.
        """
        kickoff = ensure_utc(kickoff)
        async with self.db.transaction() as conn:
            existing = await self.fixtures.get(fixture_id, conn=conn, for_update=True)
            if existing is None:
                fixture = Fixture(
                    fixture_id=fixture_id,
                    kickoff=kickoff,
                    home_team=home_team,
                    away_team=away_team,
                    league=league,
                )
                return await self.fixtures.insert(fixture, conn=conn)

            if ensure_utc(existing.kickoff) != kickoff:
                raise ImmutableKickoffError(fixture_id, existing.kickoff, kickoff)

            updated = await self.fixtures.update_details(
                fixture_id, home_team, away_team, league, conn=conn
            )
            return updated or existing

    async def set_status(self, fixture_id: str, status: FixtureStatus) -> bool:
        """
        Advance a fixture's status. Returns False when the move is not forward.

        Scheduled -> Live -> Finished, any non-final -> Cancelled.
        """
        async with self.db.transaction() as conn:
            fixture = await self.fixtures.get(fixture_id, conn=conn, for_update=True)
            if fixture is None:
                raise UnknownFixtureError(fixture_id)
            if not status_can_advance(fixture.status, status):
                return False
            await self.fixtures.set_status(fixture_id, status, conn=conn)
        logger.info(f"Fixture {fixture_id}: {fixture.status.value} -> {status.value}")
        return True

    async def get_fixture(self, fixture_id: str) -> Optional[Fixture]:
        return await self.fixtures.get(fixture_id)

    async def fixtures_awaiting_results(
        self, window_start: datetime, window_end: datetime
    ) -> list[Fixture]:
        return await self.fixtures.awaiting_results(window_start, window_end)

    async def candidates(self, after: datetime, before: datetime) -> list[Fixture]:
        return await self.fixtures.candidates(after, before)

    # ---------------------------------------------------------------------- odds

    async def record_odds(
        self,
        fixture_id: str,
        market: Market,
        captured_at: datetime,
        odds: dict,
    ) -> OddsSnapshot:
        """Append a snapshot. The newest snapshot per (fixture, market) is current."""
        snapshot = OddsSnapshot(
            fixture_id=fixture_id,
            market=market,
            captured_at=ensure_utc(captured_at),
            odds=odds,
        )
        return await self.odds.record(snapshot)

    async def current_odds(self, fixture_ids: Sequence[str]) -> dict:
        return await self.odds.current(fixture_ids)

    # ------------------------------------------------------------------- results

    async def record_result(
        self,
        fixture_id: str,
        home: int,
        away: int,
        finished_at: datetime,
    ) -> FixtureResult:
        """
        Write a final result once and mark the fixture Finished.

        Raises:
            UnknownFixtureError: the fixture is not in the store.
            ResultConflictError: a different score is already stored. The
                conflict is persisted and the fixture flagged before raising.
        """
        incoming = FixtureResult.from_score(fixture_id, home, away, ensure_utc(finished_at))
        conflict_with: Optional[FixtureResult] = None

        async with self.db.transaction() as conn:
            fixture = await self.fixtures.get(fixture_id, conn=conn, for_update=True)
            if fixture is None:
                raise UnknownFixtureError(fixture_id)

            stored = await self.results.get(fixture_id, conn=conn)
            if stored is None:
                stored = await self.results.insert(incoming, conn=conn)
                if fixture.status != FixtureStatus.FINISHED:
                    await self.fixtures.set_status(fixture_id, FixtureStatus.FINISHED, conn=conn)
                logger.info(f"Result recorded for {fixture_id}: {home}-{away}")
                return stored

            if stored.score == incoming.score:
                return stored
            conflict_with = stored

        await self._record_conflict(fixture_id, conflict_with.score, incoming.score)
        raise ResultConflictError(fixture_id, conflict_with.score, incoming.score)

    async def _record_conflict(
        self, fixture_id: str, stored: tuple[int, int], incoming: tuple[int, int]
    ) -> ResultConflict:
        async with self.db.transaction() as conn:
            conflict = await self.conflicts.record(fixture_id, stored, incoming, conn=conn)
            await self.fixtures.set_conflict_flag(fixture_id, True, conn=conn)
        logger.error(
            f"Result conflict for {fixture_id}: stored {stored[0]}-{stored[1]}, "
            f"incoming {incoming[0]}-{incoming[1]}"
        )
        return conflict

    async def override_result(
        self, fixture_id: str, home: int, away: int, note: str
    ) -> FixtureResult:
        """
        Operator resolution of a result conflict.

        Replaces the stored result, closes every open conflict of the
        fixture and clears its flag. Automated code never calls this.
        """
        result = FixtureResult.from_score(fixture_id, home, away, self._clock())
        async with self.db.transaction() as conn:
            fixture = await self.fixtures.get(fixture_id, conn=conn, for_update=True)
            if fixture is None:
                raise UnknownFixtureError(fixture_id)
            stored = await self.results.get(fixture_id, conn=conn)
            if stored is not None:
                result = result.model_copy(update={"finished_at": stored.finished_at})
            saved = await self.results.replace(result, conn=conn)
            closed = await self.conflicts.resolve_all(fixture_id, note, conn=conn)
            await self.fixtures.set_conflict_flag(fixture_id, False, conn=conn)
            if fixture.status != FixtureStatus.FINISHED and not fixture.status.is_final:
                await self.fixtures.set_status(fixture_id, FixtureStatus.FINISHED, conn=conn)
        logger.warning(
            f"Operator override for {fixture_id}: {home}-{away} "
            f"({closed} conflict(s) closed, note={note!r})"
        )
        return saved

    async def results_for(self, fixture_ids: Sequence[str]) -> dict[str, FixtureResult]:
        return await self.results.get_many(fixture_ids)

    async def open_conflicts(self, fixture_ids: Optional[Sequence[str]] = None) -> list[ResultConflict]:
        if fixture_ids is None:
            return await self.conflicts.open_all()
        return await self.conflicts.open_for(fixture_ids)

    # -------------------------------------------------------------------- slates

    async def freeze_slate(self, cycle_id: int, fixture_ids: Sequence[str]) -> Slate:
        """
        Freeze ten fixtures and their current odds into the cycle's slate.

        The slate is ordered by kickoff then fixture id. Every position
        takes its odds from the latest snapshot captured at or before the
        freeze instant, for both markets.

        Raises:
            ValueError: not exactly ten distinct known fixtures.
            SlateAlreadyFrozenError: the cycle already has a slate.
            InsufficientOddsError: a fixture lacks a snapshot for a market.
        """
        ids = list(fixture_ids)
        if len(ids) != SLATE_SIZE or len(set(ids)) != SLATE_SIZE:
            raise ValueError(f"A slate needs {SLATE_SIZE} distinct fixtures, got {ids}")

        frozen_at = self._clock()
        async with self.db.transaction() as conn:
            if await self.slates.exists(cycle_id, conn=conn):
                raise SlateAlreadyFrozenError(cycle_id)

            fixtures = await self.fixtures.get_many(ids, conn=conn)
            missing = [fid for fid in ids if fid not in fixtures]
            if missing:
                raise UnknownFixtureError(missing[0])

            snapshots = await self.odds.current(ids, as_of=frozen_at, conn=conn)
            ordered = sorted(
                (fixtures[fid] for fid in ids),
                key=lambda f: (ensure_utc(f.kickoff), f.fixture_id),
            )

            rows: list[SlateFixture] = []
            for position, fixture in enumerate(ordered):
                rows.append(self._slate_row(cycle_id, position, fixture, snapshots))

            matches = [
                ChainMatch.build(
                    r.fixture_id, r.kickoff, r.home_odds, r.draw_odds, r.away_odds,
                    r.over_odds, r.under_odds,
                )
                for r in rows
            ]
            slate = Slate(
                cycle_id=cycle_id,
                slate_hash=slate_hash(matches),
                created_at=frozen_at,
                fixtures=rows,
            )
            await self.slates.insert(slate, conn)

        logger.info(f"Slate frozen for cycle {cycle_id}: hash={slate.slate_hash}")
        return slate

    def _slate_row(
        self, cycle_id: int, position: int, fixture: Fixture, snapshots: dict
    ) -> SlateFixture:
        one_x_two = snapshots.get((fixture.fixture_id, Market.ONE_X_TWO))
        over_under = snapshots.get((fixture.fixture_id, Market.OVER_UNDER_25))
        if one_x_two is None:
            raise InsufficientOddsError(fixture.fixture_id, Market.ONE_X_TWO.value)
        if over_under is None:
            raise InsufficientOddsError(fixture.fixture_id, Market.OVER_UNDER_25.value)

        d = self.odds_decimals
        return SlateFixture(
            cycle_id=cycle_id,
            position=position,
            fixture_id=fixture.fixture_id,
            kickoff=fixture.kickoff,
            home_odds=to_fixed(one_x_two.odds[Outcome1X2.HOME.value], d),
            draw_odds=to_fixed(one_x_two.odds[Outcome1X2.DRAW.value], d),
            away_odds=to_fixed(one_x_two.odds[Outcome1X2.AWAY.value], d),
            over_odds=to_fixed(over_under.odds[OutcomeOU25.OVER.value], d),
            under_odds=to_fixed(over_under.odds[OutcomeOU25.UNDER.value], d),
            odds_captured_at=min(one_x_two.captured_at, over_under.captured_at),
        )

    async def get_slate(self, cycle_id: int) -> Optional[Slate]:
        return await self.slates.get(cycle_id)
