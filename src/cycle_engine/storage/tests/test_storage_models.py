"""
Tests for storage model validation.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from cycle_engine.core.outcomes import FixtureOutcome, Market, Outcome1X2, OutcomeOU25
from cycle_engine.core.states import CycleState
from cycle_engine.storage.models import (
    ChainTransaction,
    Cycle,
    FixtureResult,
    OddsSnapshot,
    Slate,
    SlateFixture,
)

T0 = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)


def slate_fixture(position, fixture_id=None):
    return SlateFixture(
        cycle_id=1,
        position=position,
        fixture_id=fixture_id or str(100 + position),
        kickoff=T0 + timedelta(minutes=position),
        home_odds=200,
        draw_odds=300,
        away_odds=400,
        over_odds=190,
        under_odds=190,
        odds_captured_at=T0,
    )


class TestSlate:
    def test_ten_positions(self):
        slate = Slate(cycle_id=1, slate_hash="0x00", created_at=T0, fixtures=[slate_fixture(i) for i in range(10)])

        assert slate.earliest_kickoff == T0
        assert slate.position_odds[3].away == 400

    def test_nine_positions_rejected(self):
        with pytest.raises(ValidationError):
            Slate(cycle_id=1, slate_hash="0x00", created_at=T0, fixtures=[slate_fixture(i) for i in range(9)])

    def test_duplicate_fixture_rejected(self):
        fixtures = [slate_fixture(i) for i in range(9)] + [slate_fixture(9, fixture_id="100")]

        with pytest.raises(ValidationError):
            Slate(cycle_id=1, slate_hash="0x00", created_at=T0, fixtures=fixtures)

    def test_positions_must_be_ordered(self):
        fixtures = [slate_fixture(i) for i in range(10)]
        fixtures[0], fixtures[1] = fixtures[1], fixtures[0]

        with pytest.raises(ValidationError):
            Slate(cycle_id=1, slate_hash="0x00", created_at=T0, fixtures=fixtures)


class TestFixtureResult:
    def test_outcomes_derived(self):
        result = FixtureResult.from_score("1", 1, 1, T0)

        assert result.outcome_1x2 == Outcome1X2.DRAW
        assert result.outcome_ou25 == OutcomeOU25.UNDER

    def test_inconsistent_outcomes_rejected(self):
        with pytest.raises(ValidationError):
            FixtureResult(
                fixture_id="1",
                home_score=3,
                away_score=0,
                outcome_1x2=Outcome1X2.AWAY,
                outcome_ou25=OutcomeOU25.OVER,
                finished_at=T0,
            )


class TestOddsSnapshot:
    def test_json_text_is_parsed(self):
        snap = OddsSnapshot(
            fixture_id="1",
            market=Market.OVER_UNDER_25,
            captured_at=T0,
            odds='{"Over": "1.85", "Under": "2.00"}',
        )

        assert snap.odds["Over"] == Decimal("1.85")

    def test_missing_selection_rejected(self):
        with pytest.raises(ValidationError):
            OddsSnapshot(fixture_id="1", market=Market.ONE_X_TWO, captured_at=T0, odds={"1": "2.0", "2": "3.0"})


class TestCycle:
    def test_outcomes_from_json_column(self):
        cycle = Cycle(
            cycle_id=3,
            state=CycleState.RESOLVED,
            result_vector='[{"1X2": "2", "OU25": "Over"}]',
        )

        assert cycle.outcomes == [FixtureOutcome(Outcome1X2.AWAY, OutcomeOU25.OVER)]

    def test_no_results_yet(self):
        cycle = Cycle(cycle_id=3, state=CycleState.OPEN)

        assert cycle.outcomes is None
        assert not cycle.is_halted


class TestChainTransaction:
    @pytest.mark.parametrize("status,final", [
        ("submitted", False),
        ("pending", False),
        ("confirmed", True),
        ("reverted", True),
        ("replaced", True),
        ("dropped", True),
    ])
    def test_is_final(self, status, final):
        tx = ChainTransaction(tx_hash="0x1", cycle_id=1, kind="start", nonce=0, status=status, submitted_at=T0)

        assert tx.is_final is final
