"""
Cycle state machine definition.

            opened-on-chain         all-results-ready
  Pending ------------------> Open ------------------> Awaiting-Results
    |                          |                            |
    | selection-failed         | close-time reached         |
    v                          v                            v
  Cancelled                  Closed ---------------> Resolving
                               |                         |  resolve-tx confirmed
                               |                         v
                               |                      Resolved
                               |                         |  all slips projected
                               |                         v
                               +---------------------> Evaluated

Cancelled is reachable from every non-terminal state before Resolving
(slate mismatch, cancelled fixture). Resolving and later never cancel: the
chain has accepted results by then.
"""
from __future__ import annotations

from enum import Enum


class CycleState(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"
    AWAITING_RESULTS = "awaiting_results"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    EVALUATED = "evaluated"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (CycleState.EVALUATED, CycleState.CANCELLED)

    @property
    def has_result_vector(self) -> bool:
        return self in (CycleState.RESOLVED, CycleState.EVALUATED)


# Rank in the partial order. Cancelled sits outside it.
STATE_RANK = {
    CycleState.PENDING: 0,
    CycleState.OPEN: 1,
    CycleState.CLOSED: 2,
    CycleState.AWAITING_RESULTS: 3,
    CycleState.RESOLVING: 4,
    CycleState.RESOLVED: 5,
    CycleState.EVALUATED: 6,
}

ALLOWED_TRANSITIONS: dict[CycleState, frozenset[CycleState]] = {
    CycleState.PENDING: frozenset({CycleState.OPEN, CycleState.CANCELLED}),
    CycleState.OPEN: frozenset({CycleState.CLOSED, CycleState.CANCELLED}),
    CycleState.CLOSED: frozenset(
        {CycleState.AWAITING_RESULTS, CycleState.EVALUATED, CycleState.CANCELLED}
    ),
    CycleState.AWAITING_RESULTS: frozenset({CycleState.RESOLVING, CycleState.CANCELLED}),
    CycleState.RESOLVING: frozenset({CycleState.RESOLVED}),
    CycleState.RESOLVED: frozenset({CycleState.EVALUATED}),
    CycleState.EVALUATED: frozenset(),
    CycleState.CANCELLED: frozenset(),
}


def can_transition(current: CycleState, new: CycleState) -> bool:
    """Whether ``current -> new`` is an edge of the state machine."""
    return new in ALLOWED_TRANSITIONS[current]


def is_monotonic(states: list[CycleState]) -> bool:
    """
    Whether a transition log never moves backwards.

    Each consecutive pair must be an allowed edge. Used to audit the
    persisted transition log.
    """
    for prev, nxt in zip(states, states[1:]):
        if not can_transition(prev, nxt):
            return False
    return True


class Trigger(str, Enum):
    """Why a transition happened. Stored in the transition log."""

    SELECTED = "selected"
    OPENED_ON_CHAIN = "opened_on_chain"
    CLOSE_TIME_REACHED = "close_time_reached"
    AWAITING_RESULTS = "awaiting_results"
    ALL_RESULTS_READY = "all_results_ready"
    RESOLVE_CONFIRMED = "resolve_confirmed"
    SLIPS_PROJECTED = "slips_projected"
    SLATE_MISMATCH = "slate_mismatch"
    FIXTURE_CANCELLED = "fixture_cancelled"
    OPEN_WINDOW_MISSED = "open_window_missed"
