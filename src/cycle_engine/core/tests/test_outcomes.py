"""
Tests for outcome derivation and chain encodings.
"""
import pytest

from cycle_engine.core.outcomes import (
    FixtureOutcome,
    FixtureStatus,
    Market,
    Outcome1X2,
    OutcomeOU25,
    derive_1x2,
    derive_ou25,
    selection_from_chain,
    selection_to_chain,
    status_can_advance,
)


class TestDerivation:
    @pytest.mark.parametrize(
        "home,away,expected",
        [(2, 1, Outcome1X2.HOME), (1, 1, Outcome1X2.DRAW), (0, 3, Outcome1X2.AWAY), (0, 0, Outcome1X2.DRAW)],
    )
    def test_1x2(self, home, away, expected):
        assert derive_1x2(home, away) == expected

    @pytest.mark.parametrize(
        "home,away,expected",
        [(2, 0, OutcomeOU25.UNDER), (2, 1, OutcomeOU25.OVER), (0, 0, OutcomeOU25.UNDER), (5, 4, OutcomeOU25.OVER)],
    )
    def test_over_under(self, home, away, expected):
        assert derive_ou25(home, away) == expected

    def test_fixture_outcome_from_score(self):
        outcome = FixtureOutcome.from_score(1, 2)

        assert outcome.for_market(Market.ONE_X_TWO) == "2"
        assert outcome.for_market(Market.OVER_UNDER_25) == "Over"
        assert outcome.to_chain() == (3, 1)


class TestEncodings:
    def test_json_shape(self):
        outcome = FixtureOutcome.from_score(0, 0)

        assert outcome.to_json() == {"1X2": "X", "OU25": "Under"}
        assert FixtureOutcome.from_json(outcome.to_json()) == outcome

    def test_market_codes(self):
        assert Market.ONE_X_TWO.chain_code == 0
        assert Market.from_chain(1) == Market.OVER_UNDER_25
        with pytest.raises(ValueError):
            Market.from_chain(2)

    def test_selection_codes(self):
        assert selection_to_chain(Market.ONE_X_TWO, "X") == 2
        assert selection_from_chain(Market.ONE_X_TWO, 3) == "2"
        assert selection_to_chain(Market.OVER_UNDER_25, "Under") == 2
        assert selection_from_chain(Market.OVER_UNDER_25, 1) == "Over"

    def test_not_set_is_rejected(self):
        with pytest.raises(ValueError):
            selection_from_chain(Market.ONE_X_TWO, 0)


class TestFixtureStatus:
    def test_forward_progression(self):
        assert status_can_advance(FixtureStatus.SCHEDULED, FixtureStatus.LIVE)
        assert status_can_advance(FixtureStatus.LIVE, FixtureStatus.FINISHED)
        assert status_can_advance(FixtureStatus.SCHEDULED, FixtureStatus.CANCELLED)

    def test_final_states_are_frozen(self):
        assert not status_can_advance(FixtureStatus.FINISHED, FixtureStatus.CANCELLED)
        assert not status_can_advance(FixtureStatus.CANCELLED, FixtureStatus.LIVE)

    def test_no_regression(self):
        assert not status_can_advance(FixtureStatus.LIVE, FixtureStatus.SCHEDULED)
        assert not status_can_advance(FixtureStatus.LIVE, FixtureStatus.LIVE)
