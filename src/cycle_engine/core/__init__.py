"""
Core domain: outcomes, the cycle state machine and slip scoring.

The coordinator, scheduler and background loops live in this package too
but are imported from their modules directly; they depend on storage and
chain, which themselves import the pure modules below.
"""
from cycle_engine.core.outcomes import (
    FixtureOutcome,
    FixtureStatus,
    Market,
    Outcome1X2,
    OutcomeOU25,
    derive_1x2,
    derive_ou25,
)
from cycle_engine.core.scoring import (
    PositionOdds,
    Prediction,
    ScoringConfig,
    SlipInput,
    SlipScore,
    evaluate_cycle,
    evaluate_slip,
    rank_slips,
)
from cycle_engine.core.states import ALLOWED_TRANSITIONS, CycleState, Trigger, can_transition

__all__ = [
    "FixtureOutcome",
    "FixtureStatus",
    "Market",
    "Outcome1X2",
    "OutcomeOU25",
    "derive_1x2",
    "derive_ou25",
    "PositionOdds",
    "Prediction",
    "ScoringConfig",
    "SlipInput",
    "SlipScore",
    "evaluate_cycle",
    "evaluate_slip",
    "rank_slips",
    "ALLOWED_TRANSITIONS",
    "CycleState",
    "Trigger",
    "can_transition",
]
