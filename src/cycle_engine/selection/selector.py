"""
Match Selector.

Chooses the ten fixtures of a cycle from the store's candidates:

    candidates = kickoff in (T_sel + grace, T_sel + 24h), both markets priced

    policy(f) = w_league   * leaguePriority(f)
              + w_spread   * kickoffSpread(f | already chosen)
              + w_interest * oddsInterest(f)

Selection is greedy: each round rescores the remaining candidates against
what is already chosen (only the spread term changes) and takes the best,
skipping leagues that already hold ``max_per_league`` fixtures. Ties break
on (kickoff, fixture_id). There is no random component.

Fewer than ten qualifying fixtures raises InsufficientFixturesError; the
slate is never padded.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from cycle_engine.core.outcomes import Market
from cycle_engine.core.scoring import SLATE_SIZE
from cycle_engine.errors import InsufficientFixturesError
from cycle_engine.storage.fixture_store import FixtureStore
from cycle_engine.storage.models import Fixture, OddsSnapshot
from cycle_engine.utils.clock import ensure_utc

logger = logging.getLogger(__name__)

# Higher is better. Unknown leagues fall back to "default".
DEFAULT_LEAGUE_PRIORITIES: dict[str, int] = {
    "Champions League": 110,
    "Europa League": 105,
    "Premier League": 100,
    "La Liga": 100,
    "Bundesliga": 100,
    "Serie A": 100,
    "Europa Conference League": 100,
    "Ligue 1": 95,
    "Eredivisie": 85,
    "Primeira Liga": 80,
    "Pro League": 80,
    "Super Lig": 75,
    "Championship": 70,
    "Serie B": 65,
    "La Liga 2": 65,
    "Ligue 2": 65,
    "2. Bundesliga": 65,
    "Eerste Divisie": 60,
    "Ekstraklasa": 50,
    "Superliga": 50,
    "Allsvenskan": 45,
    "Eliteserien": 45,
    "Major League Soccer": 30,
    "Copa Libertadores": 30,
    "default": 30,
}


@dataclass
class SelectionConfig:
    """Weights and limits of the selection policy."""

    league_priorities: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_LEAGUE_PRIORITIES)
    )
    weight_league: float = 1.0
    weight_spread: float = 0.5
    weight_interest: float = 0.5
    max_per_league: int = 2
    grace: timedelta = timedelta(minutes=60)
    horizon: timedelta = timedelta(hours=24)
    min_odds: Decimal = Decimal("1.05")
    max_odds: Decimal = Decimal("15.0")

    def priority(self, league: str) -> int:
        default = self.league_priorities.get("default", 0)
        return self.league_priorities.get(league, default)

    @property
    def max_priority(self) -> int:
        return max(self.league_priorities.values(), default=1) or 1


@dataclass
class Selection:
    """Outcome of a successful selection, in evaluation order."""

    selection_time: datetime
    fixtures: list[Fixture]
    scores: dict[str, float]
    candidate_count: int = 0

    @property
    def fixture_ids(self) -> list[str]:
        return [f.fixture_id for f in self.fixtures]

    @property
    def earliest_kickoff(self) -> datetime:
        return min(ensure_utc(f.kickoff) for f in self.fixtures)


def odds_interest(
    one_x_two: OddsSnapshot, over_under: OddsSnapshot, config: SelectionConfig
) -> float:
    """
    Balance of the 1X2 prices (min / max, 1.0 = perfectly even) with a full
    point subtracted when any price of either market is outside the band.
    """
    prices = list(one_x_two.odds.values())
    balance = float(min(prices) / max(prices))
    every_price = prices + list(over_under.odds.values())
    if any(p < config.min_odds or p > config.max_odds for p in every_price):
        balance -= 1.0
    return balance


def kickoff_spread(fixture: Fixture, chosen: list[Fixture]) -> float:
    """1.0 for an unused kickoff hour, shrinking as the hour fills up."""
    hour = ensure_utc(fixture.kickoff).hour
    taken = sum(1 for c in chosen if ensure_utc(c.kickoff).hour == hour)
    return 1.0 / (1 + taken)


class MatchSelector:
    """Deterministic greedy selector over the Fixture Store."""

    def __init__(self, store: FixtureStore, config: Optional[SelectionConfig] = None):
        self.store = store
        self.config = config or SelectionConfig()

    async def select(self, selection_time: datetime) -> Selection:
        """
        Select ten fixtures for a cycle selected at ``selection_time``.

        Raises:
            InsufficientFixturesError: fewer than ten fixtures qualify.
        """
        t_sel = ensure_utc(selection_time)
        candidates = await self.store.candidates(
            t_sel + self.config.grace, t_sel + self.config.horizon
        )
        odds = await self.store.current_odds([f.fixture_id for f in candidates])

        priced = [
            f for f in candidates
            if (f.fixture_id, Market.ONE_X_TWO) in odds
            and (f.fixture_id, Market.OVER_UNDER_25) in odds
        ]
        chosen, scores = self.choose(priced, odds)

        if len(chosen) < SLATE_SIZE:
            logger.warning(
                f"Selection at {t_sel.isoformat()}: only {len(chosen)} of "
                f"{len(candidates)} candidates qualify"
            )
            raise InsufficientFixturesError(len(chosen), SLATE_SIZE)

        ordered = sorted(chosen, key=lambda f: (ensure_utc(f.kickoff), f.fixture_id))
        logger.info(
            f"Selected {SLATE_SIZE} fixtures from {len(candidates)} candidates: "
            f"{[f.fixture_id for f in ordered]}"
        )
        return Selection(
            selection_time=t_sel,
            fixtures=ordered,
            scores=scores,
            candidate_count=len(candidates),
        )

    def choose(self, candidates: list[Fixture], odds: dict) -> tuple[list[Fixture], dict[str, float]]:
        """Greedy pick of up to ten fixtures. Pure; exposed for tests."""
        cfg = self.config
        static: dict[str, float] = {}
        for f in candidates:
            league = cfg.priority(f.league) / cfg.max_priority
            interest = odds_interest(
                odds[(f.fixture_id, Market.ONE_X_TWO)],
                odds[(f.fixture_id, Market.OVER_UNDER_25)],
                cfg,
            )
            static[f.fixture_id] = cfg.weight_league * league + cfg.weight_interest * interest

        remaining = sorted(candidates, key=lambda f: (ensure_utc(f.kickoff), f.fixture_id))
        chosen: list[Fixture] = []
        scores: dict[str, float] = {}
        per_league: Counter = Counter()

        while remaining and len(chosen) < SLATE_SIZE:
            eligible = [f for f in remaining if per_league[f.league] < cfg.max_per_league]
            if not eligible:
                break

            best: Optional[Fixture] = None
            best_score = 0.0
            for f in eligible:
                score = static[f.fixture_id] + cfg.weight_spread * kickoff_spread(f, chosen)
                # strict ">" keeps the earliest (kickoff, id) on ties
                if best is None or score > best_score:
                    best, best_score = f, score

            chosen.append(best)
            scores[best.fixture_id] = best_score
            per_league[best.league] += 1
            remaining.remove(best)

        return chosen, scores
