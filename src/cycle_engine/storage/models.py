"""
Pydantic models matching the PostgreSQL schema in storage/migrations.py.

Table names and field names match the database columns so records can be
built with ``Model(**dict(record))``.

IMPORTANT: provider odds are Decimal; frozen slate odds are fixed-point
integers (ODDS_DECIMALS implicit decimals) exactly as sent on-chain. Slip
scores are integers in minor units and can exceed 64 bits, so the columns
are NUMERIC.
"""
from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cycle_engine.core.outcomes import (
    FixtureOutcome,
    FixtureStatus,
    Market,
    Outcome1X2,
    OutcomeOU25,
    derive_1x2,
    derive_ou25,
)
from cycle_engine.core.scoring import PositionOdds
from cycle_engine.core.states import CycleState


def _load_json(value: Any) -> Any:
    """asyncpg returns json/jsonb columns as text unless a codec is set."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def _numeric_to_int(value: Any) -> Any:
    """NUMERIC columns arrive as Decimal; scores are whole minor units."""
    if isinstance(value, Decimal):
        return int(value)
    return value


# =============================================================================
# FIXTURES
# =============================================================================


class Fixture(BaseModel):
    """A sporting fixture known to the store."""

    fixture_id: str
    kickoff: datetime
    home_team: str
    away_team: str
    league: str
    status: FixtureStatus = FixtureStatus.SCHEDULED
    result_conflict: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OddsSnapshot(BaseModel):
    """Provider odds for one market at one instant. Append-only."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: Optional[int] = None
    fixture_id: str
    market: Market
    captured_at: datetime
    odds: dict[str, Decimal]

    @field_validator("odds", mode="before")
    @classmethod
    def _parse_odds(cls, value):
        return _load_json(value)

    @model_validator(mode="after")
    def _check_selections(self) -> "OddsSnapshot":
        missing = set(self.market.selections) - set(self.odds)
        if missing:
            raise ValueError(f"{self.market.value} odds missing selections {sorted(missing)}")
        for selection, price in self.odds.items():
            if price <= 1:
                raise ValueError(f"Decimal odds must exceed 1.0, got {price} for {selection}")
        return self


class FixtureResult(BaseModel):
    """Final score and derived outcomes. Immutable once written."""

    fixture_id: str
    home_score: int = Field(ge=0)
    away_score: int = Field(ge=0)
    outcome_1x2: Outcome1X2
    outcome_ou25: OutcomeOU25
    finished_at: datetime
    recorded_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _outcomes_match_score(self) -> "FixtureResult":
        if self.outcome_1x2 != derive_1x2(self.home_score, self.away_score):
            raise ValueError("outcome_1x2 does not match score")
        if self.outcome_ou25 != derive_ou25(self.home_score, self.away_score):
            raise ValueError("outcome_ou25 does not match score")
        return self

    @classmethod
    def from_score(
        cls, fixture_id: str, home: int, away: int, finished_at: datetime
    ) -> "FixtureResult":
        return cls(
            fixture_id=fixture_id,
            home_score=home,
            away_score=away,
            outcome_1x2=derive_1x2(home, away),
            outcome_ou25=derive_ou25(home, away),
            finished_at=finished_at,
        )

    @property
    def outcome(self) -> FixtureOutcome:
        return FixtureOutcome(self.outcome_1x2, self.outcome_ou25)

    @property
    def score(self) -> tuple[int, int]:
        return (self.home_score, self.away_score)


class ResultConflict(BaseModel):
    """A rejected result re-submission awaiting operator decision."""

    id: Optional[int] = None
    fixture_id: str
    stored_home: int
    stored_away: int
    incoming_home: int
    incoming_away: int
    detected_at: datetime
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None


# =============================================================================
# SLATES & CYCLES
# =============================================================================


class SlateFixture(BaseModel):
    """One of the ten slate positions with odds copied at freeze time."""

    cycle_id: int
    position: int = Field(ge=0, le=9)
    fixture_id: str
    kickoff: datetime
    home_odds: int
    draw_odds: int
    away_odds: int
    over_odds: int
    under_odds: int
    odds_captured_at: datetime

    @property
    def odds(self) -> PositionOdds:
        return PositionOdds(
            home=self.home_odds,
            draw=self.draw_odds,
            away=self.away_odds,
            over=self.over_odds,
            under=self.under_odds,
        )


class Slate(BaseModel):
    """Frozen, ordered list of exactly ten fixtures bound to a cycle."""

    cycle_id: int
    slate_hash: str
    created_at: datetime
    fixtures: list[SlateFixture]

    @model_validator(mode="after")
    def _check_shape(self) -> "Slate":
        if len(self.fixtures) != 10:
            raise ValueError(f"Slate must have 10 fixtures, got {len(self.fixtures)}")
        ids = [f.fixture_id for f in self.fixtures]
        if len(set(ids)) != 10:
            raise ValueError("Slate fixtures must be distinct")
        if [f.position for f in self.fixtures] != list(range(10)):
            raise ValueError("Slate positions must be 0..9 in order")
        return self

    @property
    def fixture_ids(self) -> list[str]:
        return [f.fixture_id for f in self.fixtures]

    @property
    def earliest_kickoff(self) -> datetime:
        return min(f.kickoff for f in self.fixtures)

    @property
    def position_odds(self) -> list[PositionOdds]:
        return [f.odds for f in self.fixtures]


class Cycle(BaseModel):
    """Persisted state of one contest cycle."""

    cycle_id: int
    state: CycleState
    selection_date: Optional[date] = None
    open_time: Optional[datetime] = None
    close_time: Optional[datetime] = None
    resolve_deadline: Optional[datetime] = None
    slate_hash: Optional[str] = None
    result_vector: Optional[list[dict[str, str]]] = None
    submitted_result_vector: Optional[list[dict[str, str]]] = None
    start_tx_hash: Optional[str] = None
    resolve_tx_hash: Optional[str] = None
    halted_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("result_vector", "submitted_result_vector", mode="before")
    @classmethod
    def _parse_results(cls, value):
        return _load_json(value)

    @property
    def is_halted(self) -> bool:
        return self.halted_reason is not None

    @property
    def outcomes(self) -> Optional[list[FixtureOutcome]]:
        if self.result_vector is None:
            return None
        return [FixtureOutcome.from_json(r) for r in self.result_vector]

    @property
    def submitted_outcomes(self) -> Optional[list[FixtureOutcome]]:
        """The vector sent with resolveCycle, kept while the cycle is Resolving."""
        if self.submitted_result_vector is None:
            return None
        return [FixtureOutcome.from_json(r) for r in self.submitted_result_vector]


class CycleTransition(BaseModel):
    """Append-only audit row for one state change."""

    id: Optional[int] = None
    cycle_id: int
    from_state: Optional[CycleState] = None
    to_state: CycleState
    trigger: str
    tx_hash: Optional[str] = None
    detail: Optional[str] = None
    occurred_at: datetime


class SelectionRun(BaseModel):
    """Outcome of one selection attempt for a cycle."""

    id: Optional[int] = None
    cycle_id: int
    run_at: datetime
    outcome: str  # 'selected', 'insufficient_fixtures', 'failed'
    candidates: int = 0
    detail: Optional[str] = None


# =============================================================================
# CHAIN
# =============================================================================


class ChainTransaction(BaseModel):
    """A signed mutating transaction tracked until final."""

    tx_hash: str
    cycle_id: int
    kind: str  # 'start' | 'resolve'
    nonce: int
    raw_tx: Optional[bytes] = None
    status: str  # submitted, pending, confirmed, reverted, replaced, dropped
    max_priority_fee: Optional[int] = None
    max_fee: Optional[int] = None
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    error: Optional[str] = None
    submitted_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def is_final(self) -> bool:
        return self.status in ("confirmed", "reverted", "replaced", "dropped")


class ChainCursor(BaseModel):
    """Last block fully processed by an event consumer."""

    consumer: str
    last_block: int
    updated_at: datetime


# =============================================================================
# SLIPS & ANALYTICS
# =============================================================================


class SlipPrediction(BaseModel):
    slip_id: int
    position: int = Field(ge=0, le=9)
    fixture_id: str
    market: Market
    selection: str
    selected_odd: int
    is_hit: Optional[bool] = None


class Slip(BaseModel):
    """Projection of an on-chain slip."""

    slip_id: int
    cycle_id: int
    player: str
    placed_at: datetime
    tx_hash: str
    log_index: int
    is_evaluated: bool = False
    correct_count: Optional[int] = None
    score: Optional[int] = None
    rank: Optional[int] = None
    refund_eligible: bool = False
    evaluated_at: Optional[datetime] = None
    predictions: list[SlipPrediction] = Field(default_factory=list)

    @field_validator("score", mode="before")
    @classmethod
    def _parse_score(cls, value):
        return _numeric_to_int(value)


class LeaderboardEntry(BaseModel):
    """Materialized rank of one slip in an evaluated cycle."""

    cycle_id: int
    slip_id: int
    player: str
    score: int
    correct_count: int
    placed_at: datetime
    rank: int

    @field_validator("score", mode="before")
    @classmethod
    def _parse_score(cls, value):
        return _numeric_to_int(value)


class UserStats(BaseModel):
    """Rolled-up per-player statistics, derived from leaderboard rows."""

    player: str
    cycles_entered: int = 0
    total_wins: int = 0
    lifetime_score: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    last_cycle_id: Optional[int] = None
    updated_at: Optional[datetime] = None

    @field_validator("lifetime_score", mode="before")
    @classmethod
    def _parse_lifetime(cls, value):
        return _numeric_to_int(value)


class PrizeClaim(BaseModel):
    cycle_id: int
    player: str
    rank: int
    amount: Decimal
    tx_hash: str
    log_index: int
    claimed_at: Optional[datetime] = None
