"""
Conversion between stored slate/result data and contract arguments.

Hashes are keccak256 over the ABI encoding of the ordered vectors, so they
match what the contract emits in CycleStarted / CycleResolved.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Sequence

from eth_abi import encode
from web3 import Web3

from cycle_engine.chain.abi import RESULT_HASH_TYPE, SLATE_HASH_TYPE
from cycle_engine.core.outcomes import FixtureOutcome

UINT32_MAX = 2**32 - 1
UINT64_MAX = 2**64 - 1


def to_fixed(odds: Decimal, decimals: int) -> int:
    """
    Decimal odds to fixed-point, truncating extra precision.

    2.105 with 2 decimals -> 210.
    """
    scaled = (Decimal(odds) * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    value = int(scaled)
    if value <= 0 or value > UINT32_MAX:
        raise ValueError(f"Odds {odds} out of uint32 fixed-point range")
    return value


def from_fixed(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)


def fixture_chain_id(fixture_id: str) -> int:
    """Provider fixture ids are numeric strings; on-chain they are uint64."""
    try:
        value = int(fixture_id)
    except (TypeError, ValueError):
        raise ValueError(f"Fixture id {fixture_id!r} is not numeric") from None
    if value < 0 or value > UINT64_MAX:
        raise ValueError(f"Fixture id {fixture_id!r} out of uint64 range")
    return value


@dataclass(frozen=True)
class ChainMatch:
    """One entry of the startCycle argument."""

    id: int
    kickoff: int
    home: int
    draw: int
    away: int
    over: int
    under: int

    @classmethod
    def build(cls, fixture_id: str, kickoff: datetime, home: int, draw: int, away: int, over: int, under: int):
        return cls(
            id=fixture_chain_id(fixture_id),
            kickoff=int(kickoff.astimezone(timezone.utc).timestamp()),
            home=home,
            draw=draw,
            away=away,
            over=over,
            under=under,
        )

    def as_call_arg(self) -> tuple:
        return (self.id, self.kickoff, self.home, self.draw, self.away, self.over, self.under)

    def as_hash_arg(self) -> tuple:
        return (self.id, self.home, self.draw, self.away, self.over, self.under)


def _keccak_hex(data: bytes) -> str:
    return Web3.to_hex(Web3.keccak(data))


def slate_hash(matches: Sequence[ChainMatch]) -> str:
    """0x-prefixed keccak256 of the ordered (id, odds...) vector."""
    if len(matches) != 10:
        raise ValueError(f"Slate hash needs 10 matches, got {len(matches)}")
    return _keccak_hex(encode([SLATE_HASH_TYPE], [[m.as_hash_arg() for m in matches]]))


def result_args(outcomes: Sequence[FixtureOutcome]) -> list[tuple[int, int]]:
    if len(outcomes) != 10:
        raise ValueError(f"Result vector needs 10 outcomes, got {len(outcomes)}")
    return [o.to_chain() for o in outcomes]


def result_hash(outcomes: Sequence[FixtureOutcome]) -> str:
    """0x-prefixed keccak256 of the ordered (moneyline, overUnder) vector."""
    return _keccak_hex(encode([RESULT_HASH_TYPE], [result_args(outcomes)]))


def normalize_hash(value) -> str:
    """bytes / HexBytes / str to a lowercase 0x-prefixed hex string."""
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value).lower()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text
