"""
Slip scoring and leaderboard ranking.

For a slip placed under a frozen slate and the resolved result vector R[0..9]:

    1. position i is a hit iff the slip's (market, selection) equals the
       resolved outcome of fixture i for that market
    2. C = number of hits
    3. C >= QUALIFY:  score = prod(frozen odds of hit positions) * 10^decimals,
                      rounded half-even to an integer
       C <  QUALIFY:  score = 0
    4. rank: higher score, then higher C, then earlier placed_at, then
       smaller slip id; ranks are dense (1, 2, 3, ...)

All arithmetic is exact Decimal at a precision wide enough for ten maximal
uint32 odds, so nothing overflows or rounds before the final step.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal, localcontext
from typing import Optional, Sequence

from .outcomes import FixtureOutcome, Market, Outcome1X2, OutcomeOU25

SLATE_SIZE = 10
DEFAULT_QUALIFY = 5
DEFAULT_ODDS_DECIMALS = 2

# uint32 max has 10 digits; ten of them plus scaling stays far below this.
_SCORE_PRECISION = 200


@dataclass(frozen=True)
class PositionOdds:
    """Frozen fixed-point odds of one slate position (e.g. 250 = 2.50x)."""

    home: int
    draw: int
    away: int
    over: int
    under: int

    def for_selection(self, market: Market, selection: str) -> int:
        if market == Market.ONE_X_TWO:
            return {
                Outcome1X2.HOME.value: self.home,
                Outcome1X2.DRAW.value: self.draw,
                Outcome1X2.AWAY.value: self.away,
            }[selection]
        return {
            OutcomeOU25.OVER.value: self.over,
            OutcomeOU25.UNDER.value: self.under,
        }[selection]


@dataclass(frozen=True)
class Prediction:
    """One of the ten predictions on a slip."""

    market: Market
    selection: str

    def __post_init__(self):
        if self.selection not in self.market.selections:
            raise ValueError(f"Invalid selection {self.selection!r} for market {self.market.value}")


@dataclass(frozen=True)
class SlipInput:
    """A projected slip ready for evaluation."""

    slip_id: int
    player: str
    placed_at: datetime
    predictions: tuple[Prediction, ...]


@dataclass(frozen=True)
class SlipScore:
    """Evaluation output for one slip."""

    slip_id: int
    player: str
    placed_at: datetime
    hits: tuple[bool, ...]
    correct_count: int
    score: int
    rank: Optional[int] = None

    @property
    def qualifies(self) -> bool:
        return self.score > 0


@dataclass
class ScoringConfig:
    qualify_threshold: int = DEFAULT_QUALIFY
    odds_decimals: int = DEFAULT_ODDS_DECIMALS
    score_decimals: int = DEFAULT_ODDS_DECIMALS


def compute_score(hit_odds: Sequence[int], config: ScoringConfig) -> int:
    """
    Product of fixed-point odds, rescaled to ``score_decimals``, half-even.

    ``hit_odds`` are fixed-point with ``odds_decimals`` implicit decimals.
    """
    with localcontext() as ctx:
        ctx.prec = _SCORE_PRECISION
        odds_scale = Decimal(10) ** config.odds_decimals
        product = Decimal(1)
        for odd in hit_odds:
            product *= Decimal(odd) / odds_scale
        scaled = product * (Decimal(10) ** config.score_decimals)
        return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_EVEN))


def evaluate_slip(
    slip: SlipInput,
    results: Sequence[FixtureOutcome],
    odds: Sequence[PositionOdds],
    config: Optional[ScoringConfig] = None,
) -> SlipScore:
    """Score one slip against a resolved slate."""
    config = config or ScoringConfig()
    if len(slip.predictions) != SLATE_SIZE:
        raise ValueError(f"Slip {slip.slip_id} has {len(slip.predictions)} predictions")
    if len(results) != SLATE_SIZE or len(odds) != SLATE_SIZE:
        raise ValueError("Result vector and odds must cover all ten positions")

    hits: list[bool] = []
    hit_odds: list[int] = []
    for prediction, outcome, position_odds in zip(slip.predictions, results, odds):
        hit = outcome.for_market(prediction.market) == prediction.selection
        hits.append(hit)
        if hit:
            hit_odds.append(position_odds.for_selection(prediction.market, prediction.selection))

    correct = sum(hits)
    score = compute_score(hit_odds, config) if correct >= config.qualify_threshold else 0

    return SlipScore(
        slip_id=slip.slip_id,
        player=slip.player,
        placed_at=slip.placed_at,
        hits=tuple(hits),
        correct_count=correct,
        score=score,
    )


def rank_key(s: SlipScore):
    return (-s.score, -s.correct_count, s.placed_at, s.slip_id)


def rank_slips(scores: Sequence[SlipScore]) -> list[SlipScore]:
    """Order slips by the leaderboard rule and attach dense ranks."""
    ordered = sorted(scores, key=rank_key)
    return [replace(s, rank=i) for i, s in enumerate(ordered, start=1)]


def evaluate_cycle(
    slips: Sequence[SlipInput],
    results: Sequence[FixtureOutcome],
    odds: Sequence[PositionOdds],
    config: Optional[ScoringConfig] = None,
) -> list[SlipScore]:
    """Score and rank every slip of a cycle. Deterministic for fixed inputs."""
    return rank_slips([evaluate_slip(s, results, odds, config) for s in slips])

