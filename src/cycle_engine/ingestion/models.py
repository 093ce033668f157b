"""
Data models for the results / fixtures feed.

Payloads are parsed into frozen dataclasses. Score fields are kept exactly
as received; validation happens in the collector so a bad payload can be
rejected and surfaced instead of silently coerced.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from dateutil import parser as date_parser

from cycle_engine.core.outcomes import FixtureStatus, Market
from cycle_engine.utils.clock import ensure_utc


class FeedStatus(str, Enum):
    """Fixture status as reported by the provider."""

    SCHEDULED = "Scheduled"
    LIVE = "Live"
    FINISHED = "Finished"
    CANCELLED = "Cancelled"
    POSTPONED = "Postponed"

    @classmethod
    def parse(cls, value: Any) -> "FeedStatus":
        text = str(value or "").strip().lower()
        for status in cls:
            if status.value.lower() == text:
                return status
        raise ValueError(f"Unknown feed status {value!r}")

    @property
    def is_permanent_failure(self) -> bool:
        """Cancelled and postponed fixtures never produce a result for the slate."""
        return self in (FeedStatus.CANCELLED, FeedStatus.POSTPONED)

    def to_fixture_status(self) -> FixtureStatus:
        return {
            FeedStatus.SCHEDULED: FixtureStatus.SCHEDULED,
            FeedStatus.LIVE: FixtureStatus.LIVE,
            FeedStatus.FINISHED: FixtureStatus.FINISHED,
            FeedStatus.CANCELLED: FixtureStatus.CANCELLED,
            FeedStatus.POSTPONED: FixtureStatus.CANCELLED,
        }[self]


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string or unix seconds to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return ensure_utc(date_parser.isoparse(str(value)))


@dataclass(frozen=True)
class FeedResult:
    """Per-fixture status payload: {status, homeScore, awayScore, kickoff, updatedAt}."""

    fixture_id: str
    status: FeedStatus
    home_score: Any
    away_score: Any
    kickoff: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, fixture_id: str, data: dict) -> "FeedResult":
        return cls(
            fixture_id=fixture_id,
            status=FeedStatus.parse(data.get("status")),
            home_score=data.get("homeScore"),
            away_score=data.get("awayScore"),
            kickoff=parse_timestamp(data.get("kickoff")),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )


@dataclass(frozen=True)
class FeedFixture:
    """An upcoming fixture listed by the provider."""

    fixture_id: str
    kickoff: datetime
    home_team: str
    away_team: str
    league: str
    status: FeedStatus = FeedStatus.SCHEDULED

    @classmethod
    def from_payload(cls, data: dict) -> "FeedFixture":
        kickoff = parse_timestamp(data.get("kickoff"))
        if kickoff is None:
            raise ValueError(f"Fixture {data.get('id')} has no kickoff")
        return cls(
            fixture_id=str(data["id"]),
            kickoff=kickoff,
            home_team=str(data["homeTeam"]),
            away_team=str(data["awayTeam"]),
            league=str(data.get("league") or "unknown"),
            status=FeedStatus.parse(data["status"]) if data.get("status") else FeedStatus.SCHEDULED,
        )


@dataclass(frozen=True)
class FeedOdds:
    """Decimal odds for one market of one fixture."""

    fixture_id: str
    market: Market
    captured_at: datetime
    odds: dict[str, Decimal]

    @classmethod
    def from_payload(cls, fixture_id: str, data: dict, fallback_time: datetime) -> list["FeedOdds"]:
        """
        Parse ``{"capturedAt": ..., "markets": {"1X2": {...}, "OU25": {...}}}``.

        Markets that are missing or incomplete are skipped; the selector
        only considers fixtures priced in both.
        """
        captured_at = parse_timestamp(data.get("capturedAt")) or fallback_time
        markets = data.get("markets") or {}
        parsed: list[FeedOdds] = []
        for market in Market:
            prices = markets.get(market.value)
            if not isinstance(prices, dict):
                continue
            try:
                odds = {sel: Decimal(str(prices[sel])) for sel in market.selections}
            except (KeyError, InvalidOperation):
                continue
            if any(price <= 1 for price in odds.values()):
                continue
            parsed.append(cls(fixture_id, market, captured_at, odds))
        return parsed
