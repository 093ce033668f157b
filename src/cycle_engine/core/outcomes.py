"""
Markets, outcomes and their on-chain encodings.

The contest uses two markets per fixture:
    - 1X2: home win ("1"), draw ("X"), away win ("2")
    - OU25: total goals over or under 2.5

On-chain the result of a fixture is a pair (moneyline, overUnder) with
    moneyline  in {NotSet=0, Home=1, Draw=2, Away=3}
    overUnder  in {NotSet=0, Over=1, Under=2}
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class FixtureStatus(str, Enum):
    """Lifecycle status of a fixture in the store."""

    SCHEDULED = "scheduled"
    LIVE = "live"
    FINISHED = "finished"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in (FixtureStatus.FINISHED, FixtureStatus.CANCELLED)


# Forward-only status progression; final states accept no further change.
_STATUS_ORDER = {
    FixtureStatus.SCHEDULED: 0,
    FixtureStatus.LIVE: 1,
    FixtureStatus.FINISHED: 2,
}


def status_can_advance(current: FixtureStatus, new: FixtureStatus) -> bool:
    """Whether ``current`` may move to ``new``."""
    if current == new:
        return False
    if current.is_final:
        return False
    if new == FixtureStatus.CANCELLED:
        return True
    return _STATUS_ORDER[new] > _STATUS_ORDER[current]


class Market(str, Enum):
    """Prediction market. The value is the storage key."""

    ONE_X_TWO = "1X2"
    OVER_UNDER_25 = "OU25"

    @property
    def chain_code(self) -> int:
        """betType used in SlipPlaced predictions."""
        return 0 if self == Market.ONE_X_TWO else 1

    @classmethod
    def from_chain(cls, code: int) -> "Market":
        if code == 0:
            return cls.ONE_X_TWO
        if code == 1:
            return cls.OVER_UNDER_25
        raise ValueError(f"Unknown market code {code}")

    @property
    def selections(self) -> tuple[str, ...]:
        if self == Market.ONE_X_TWO:
            return tuple(o.value for o in Outcome1X2)
        return tuple(o.value for o in OutcomeOU25)


REQUIRED_MARKETS = (Market.ONE_X_TWO, Market.OVER_UNDER_25)


class Outcome1X2(str, Enum):
    HOME = "1"
    DRAW = "X"
    AWAY = "2"

    @property
    def chain_code(self) -> int:
        return {"1": 1, "X": 2, "2": 3}[self.value]

    @classmethod
    def from_chain(cls, code: int) -> "Outcome1X2":
        mapping = {1: cls.HOME, 2: cls.DRAW, 3: cls.AWAY}
        if code not in mapping:
            raise ValueError(f"Unknown moneyline code {code}")
        return mapping[code]


class OutcomeOU25(str, Enum):
    OVER = "Over"
    UNDER = "Under"

    @property
    def chain_code(self) -> int:
        return 1 if self == OutcomeOU25.OVER else 2

    @classmethod
    def from_chain(cls, code: int) -> "OutcomeOU25":
        if code == 1:
            return cls.OVER
        if code == 2:
            return cls.UNDER
        raise ValueError(f"Unknown over/under code {code}")


Outcome = Union[Outcome1X2, OutcomeOU25]


def derive_1x2(home: int, away: int) -> Outcome1X2:
    """outcome1X2 = sign(home - away)."""
    if home > away:
        return Outcome1X2.HOME
    if home < away:
        return Outcome1X2.AWAY
    return Outcome1X2.DRAW


def derive_ou25(home: int, away: int) -> OutcomeOU25:
    """outcomeOU25 = Over iff home + away > 2.5."""
    return OutcomeOU25.OVER if (home + away) > 2.5 else OutcomeOU25.UNDER


@dataclass(frozen=True)
class FixtureOutcome:
    """Resolved outcomes of one fixture, as placed in a result vector."""

    one_x_two: Outcome1X2
    over_under: OutcomeOU25

    @classmethod
    def from_score(cls, home: int, away: int) -> "FixtureOutcome":
        return cls(derive_1x2(home, away), derive_ou25(home, away))

    def for_market(self, market: Market) -> str:
        if market == Market.ONE_X_TWO:
            return self.one_x_two.value
        return self.over_under.value

    def to_chain(self) -> tuple[int, int]:
        """(moneyline, overUnder) tuple for resolveCycle."""
        return (self.one_x_two.chain_code, self.over_under.chain_code)

    def to_json(self) -> dict:
        return {"1X2": self.one_x_two.value, "OU25": self.over_under.value}

    @classmethod
    def from_json(cls, data: dict) -> "FixtureOutcome":
        return cls(Outcome1X2(data["1X2"]), OutcomeOU25(data["OU25"]))


def selection_to_chain(market: Market, selection: str) -> int:
    """Encode a selection string as used in SlipPlaced predictions."""
    if market == Market.ONE_X_TWO:
        return Outcome1X2(selection).chain_code
    return OutcomeOU25(selection).chain_code


def selection_from_chain(market: Market, code: int) -> str:
    if market == Market.ONE_X_TWO:
        return Outcome1X2.from_chain(code).value
    return OutcomeOU25.from_chain(code).value
