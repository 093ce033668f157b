"""
Tests for FixtureStore invariants: immutable kickoff, write-once results
and slate freezing.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cycle_engine.core.outcomes import FixtureStatus, Market
from cycle_engine.errors import (
    ImmutableKickoffError,
    InsufficientOddsError,
    ResultConflictError,
    SlateAlreadyFrozenError,
    UnknownFixtureError,
)
from cycle_engine.storage.models import Fixture, FixtureResult, OddsSnapshot

KICKOFF = datetime(2025, 3, 14, 15, 0, tzinfo=timezone.utc)
FINISHED = datetime(2025, 3, 14, 17, 0, tzinfo=timezone.utc)


def fixture(fixture_id="501", kickoff=KICKOFF, status=FixtureStatus.SCHEDULED):
    return Fixture(
        fixture_id=fixture_id,
        kickoff=kickoff,
        home_team="Ajax",
        away_team="PSV",
        league="Eredivisie",
        status=status,
    )


def snapshots_for(fixture_ids, captured_at):
    odds = {}
    for fid in fixture_ids:
        odds[(fid, Market.ONE_X_TWO)] = OddsSnapshot(
            fixture_id=fid,
            market=Market.ONE_X_TWO,
            captured_at=captured_at,
            odds={"1": Decimal("2.105"), "X": Decimal("3.30"), "2": Decimal("3.60")},
        )
        odds[(fid, Market.OVER_UNDER_25)] = OddsSnapshot(
            fixture_id=fid,
            market=Market.OVER_UNDER_25,
            captured_at=captured_at,
            odds={"Over": Decimal("1.90"), "Under": Decimal("1.95")},
        )
    return odds


class TestUpsertFixture:
    @pytest.mark.asyncio
    async def test_new_fixture_is_inserted(self, store, conn):
        store.fixtures.get.return_value = None
        store.fixtures.insert.side_effect = lambda f, conn=None: f

        saved = await store.upsert_fixture("501", KICKOFF, "Ajax", "PSV", "Eredivisie")

        assert saved.status == FixtureStatus.SCHEDULED
        store.fixtures.get.assert_awaited_once_with("501", conn=conn, for_update=True)

    @pytest.mark.asyncio
    async def test_same_kickoff_refreshes_details(self, store):
        store.fixtures.get.return_value = fixture()
        store.fixtures.update_details.return_value = None

        saved = await store.upsert_fixture("501", KICKOFF, "Ajax Amsterdam", "PSV", "Eredivisie")

        assert saved.fixture_id == "501"
        store.fixtures.insert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_naive_kickoff_is_treated_as_utc(self, store):
        store.fixtures.get.return_value = fixture()

        await store.upsert_fixture("501", KICKOFF.replace(tzinfo=None), "Ajax", "PSV", "Eredivisie")

        store.fixtures.update_details.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_changed_kickoff_is_rejected(self, store):
        store.fixtures.get.return_value = fixture()

        with pytest.raises(ImmutableKickoffError):
            await store.upsert_fixture("501", KICKOFF + timedelta(hours=1), "Ajax", "PSV", "Eredivisie")

        store.fixtures.update_details.assert_not_awaited()


class TestRecordResult:
    @pytest.mark.asyncio
    async def test_first_result_is_written_and_fixture_finished(self, store, conn):
        store.fixtures.get.return_value = fixture(status=FixtureStatus.LIVE)
        store.results.get.return_value = None
        store.results.insert.side_effect = lambda r, conn=None: r

        result = await store.record_result("501", 2, 1, FINISHED)

        assert result.outcome.to_json() == {"1X2": "1", "OU25": "Over"}
        store.fixtures.set_status.assert_awaited_once_with("501", FixtureStatus.FINISHED, conn=conn)

    @pytest.mark.asyncio
    async def test_identical_resubmission_is_noop(self, store):
        stored = FixtureResult.from_score("501", 2, 1, FINISHED)
        store.fixtures.get.return_value = fixture(status=FixtureStatus.FINISHED)
        store.results.get.return_value = stored

        assert await store.record_result("501", 2, 1, FINISHED + timedelta(minutes=5)) is stored

        store.results.insert.assert_not_awaited()
        store.conflicts.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_different_score_records_conflict(self, store, conn):
        """2-1 stored, 1-2 arrives: stored result kept, conflict persisted, fixture flagged."""
        store.fixtures.get.return_value = fixture(status=FixtureStatus.FINISHED)
        store.results.get.return_value = FixtureResult.from_score("501", 2, 1, FINISHED)

        with pytest.raises(ResultConflictError) as exc:
            await store.record_result("501", 1, 2, FINISHED)

        assert exc.value.stored == (2, 1)
        assert exc.value.incoming == (1, 2)
        store.results.insert.assert_not_awaited()
        store.results.replace.assert_not_awaited()
        store.conflicts.record.assert_awaited_once_with("501", (2, 1), (1, 2), conn=conn)
        store.fixtures.set_conflict_flag.assert_awaited_once_with("501", True, conn=conn)

    @pytest.mark.asyncio
    async def test_unknown_fixture(self, store):
        store.fixtures.get.return_value = None

        with pytest.raises(UnknownFixtureError):
            await store.record_result("404", 0, 0, FINISHED)

    @pytest.mark.asyncio
    async def test_negative_score_is_invalid(self, store):
        with pytest.raises(ValueError):
            await store.record_result("501", -1, 0, FINISHED)


class TestOverrideResult:
    @pytest.mark.asyncio
    async def test_override_replaces_and_clears_flag(self, store, conn):
        store.fixtures.get.return_value = fixture(status=FixtureStatus.FINISHED)
        store.results.get.return_value = FixtureResult.from_score("501", 2, 1, FINISHED)
        store.results.replace.side_effect = lambda r, conn=None: r
        store.conflicts.resolve_all.return_value = 1

        saved = await store.override_result("501", 1, 2, "feed corrected")

        assert saved.score == (1, 2)
        assert saved.finished_at == FINISHED
        store.conflicts.resolve_all.assert_awaited_once_with("501", "feed corrected", conn=conn)
        store.fixtures.set_conflict_flag.assert_awaited_once_with("501", False, conn=conn)


class TestSetStatus:
    @pytest.mark.asyncio
    async def test_forward_move(self, store):
        store.fixtures.get.return_value = fixture(status=FixtureStatus.SCHEDULED)

        assert await store.set_status("501", FixtureStatus.LIVE) is True

    @pytest.mark.asyncio
    async def test_backward_move_is_refused(self, store):
        store.fixtures.get.return_value = fixture(status=FixtureStatus.FINISHED)

        assert await store.set_status("501", FixtureStatus.LIVE) is False
        store.fixtures.set_status.assert_not_awaited()


class TestFreezeSlate:
    @pytest.fixture
    def ten(self):
        # reverse id order, kickoffs ascending with id
        return {
            str(600 + i): fixture(str(600 + i), KICKOFF + timedelta(minutes=30 * i))
            for i in reversed(range(10))
        }

    @pytest.mark.asyncio
    async def test_freeze_copies_odds_in_kickoff_order(self, store, store_clock, conn, ten):
        store.fixtures.get_many.return_value = ten
        store.odds.current.return_value = snapshots_for(ten, store_clock() - timedelta(hours=1))

        slate = await store.freeze_slate(7, list(ten))

        assert slate.fixture_ids == [str(600 + i) for i in range(10)]
        first = slate.fixtures[0]
        assert (first.home_odds, first.draw_odds, first.away_odds) == (210, 330, 360)
        assert (first.over_odds, first.under_odds) == (190, 195)
        assert slate.slate_hash.startswith("0x") and len(slate.slate_hash) == 66
        assert slate.created_at == store_clock()
        store.odds.current.assert_awaited_once_with(list(ten), as_of=store_clock(), conn=conn)
        store.slates.insert.assert_awaited_once_with(slate, conn)

    @pytest.mark.asyncio
    async def test_freeze_is_single_shot(self, store, ten):
        store.slates.exists.return_value = True

        with pytest.raises(SlateAlreadyFrozenError):
            await store.freeze_slate(7, list(ten))

        store.slates.insert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_market_fails(self, store, store_clock, ten):
        store.fixtures.get_many.return_value = ten
        odds = snapshots_for(ten, store_clock())
        del odds[("605", Market.OVER_UNDER_25)]
        store.odds.current.return_value = odds

        with pytest.raises(InsufficientOddsError):
            await store.freeze_slate(7, list(ten))

        store.slates.insert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_needs_ten_distinct(self, store):
        with pytest.raises(ValueError):
            await store.freeze_slate(7, ["1"] * 10)
        with pytest.raises(ValueError):
            await store.freeze_slate(7, [str(i) for i in range(9)])

    @pytest.mark.asyncio
    async def test_unknown_fixture(self, store, ten):
        ten.pop("603")
        store.fixtures.get_many.return_value = ten

        with pytest.raises(UnknownFixtureError):
            await store.freeze_slate(7, list(ten) + ["603"])
