"""
Projector: slips, leaderboards and prize claims in PostgreSQL.

Event handlers run inside the subscriber's per-event transaction, next to
the idempotency key, so a replayed log is a no-op. Evaluation of a cycle
is one transaction: per-slip results, leaderboard rows, the cycle's
Resolved -> Evaluated transition and the affected user stats.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from cycle_engine.core.outcomes import Market, selection_from_chain
from cycle_engine.core.scoring import (
    SLATE_SIZE,
    Prediction,
    ScoringConfig,
    SlipInput,
    SlipScore,
    evaluate_cycle,
)
from cycle_engine.core.states import CycleState, Trigger
from cycle_engine.monitoring.alerting import AlertManager
from cycle_engine.storage.database import Database
from cycle_engine.storage.fixture_store import FixtureStore
from cycle_engine.storage.models import PrizeClaim, Slate, Slip, SlipPrediction
from cycle_engine.storage.repositories import (
    CycleRepository,
    LeaderboardRepository,
    PrizeClaimRepository,
    SlipRepository,
)
from cycle_engine.utils.clock import Clock, utc_now

from .stats import StatsProjector

logger = logging.getLogger(__name__)

BlockTimestamp = Callable[[int], Awaitable[int]]


def _prediction_parts(raw: Any) -> tuple[int, int, int, int]:
    """(fixtureId, market, selection, odds) from a decoded tuple or dict."""
    if isinstance(raw, dict):
        return raw["fixtureId"], raw["market"], raw["selection"], raw["odds"]
    fixture_id, market, selection, odds = raw
    return fixture_id, market, selection, odds


class Projector:
    """Materializes chain events and cycle evaluations."""

    def __init__(
        self,
        db: Database,
        store: FixtureStore,
        block_timestamp: BlockTimestamp,
        scoring: Optional[ScoringConfig] = None,
        clock: Clock = utc_now,
        alerts: Optional[AlertManager] = None,
    ):
        self.db = db
        self.alerts = alerts or AlertManager()
        self.store = store
        self.block_timestamp = block_timestamp
        self.scoring = scoring or ScoringConfig()
        self._clock = clock
        self.cycles = CycleRepository(db)
        self.slips = SlipRepository(db)
        self.leaderboard = LeaderboardRepository(db)
        self.claims = PrizeClaimRepository(db)
        self.stats = StatsProjector(db, self.scoring.qualify_threshold)
        self._slates: dict[int, Slate] = {}

    def register(self, subscriber) -> None:
        subscriber.on("SlipPlaced", self.on_slip_placed)
        subscriber.on("PrizeClaimed", self.on_prize_claimed)

    async def _slate(self, cycle_id: int) -> Optional[Slate]:
        if cycle_id not in self._slates:
            slate = await self.store.get_slate(cycle_id)
            if slate is None:
                return None
            self._slates[cycle_id] = slate
        return self._slates[cycle_id]

    # =========================================================================
    # Event handlers
    # =========================================================================

    async def on_slip_placed(self, event, conn) -> None:
        args = event.args
        cycle_id = int(args["cycleId"])
        slip_id = int(args["slipId"])
        try:
            decoded = [_prediction_parts(raw) for raw in args["predictions"]]
            if len(decoded) != SLATE_SIZE:
                raise ValueError(f"{len(decoded)} predictions, expected {SLATE_SIZE}")
            choices = [
                (Market.from_chain(market_code), selection_code)
                for _, market_code, selection_code, _ in decoded
            ]
            selections = [selection_from_chain(market, code) for market, code in choices]
        except (KeyError, TypeError, ValueError) as e:
            # The idempotency key is already written in this transaction, so
            # returning leaves the log consumed and the cursor free to move.
            logger.error(f"Rejected SlipPlaced {event.tx_hash}:{event.log_index} (slip {slip_id}): {e}")
            self.alerts.alert_rejected_event(
                "SlipPlaced", event.tx_hash, event.log_index, f"slip {slip_id}: {e}"
            )
            return

        placed_ts = await self.block_timestamp(event.block_number)

        slate = await self._slate(cycle_id)
        predictions = []
        for position, (fixture_chain_id, _, _, odds) in enumerate(decoded):
            market = choices[position][0]
            selection = selections[position]
            fixture_id = str(fixture_chain_id)
            if slate is not None:
                expected = slate.fixtures[position]
                if expected.fixture_id != fixture_id:
                    logger.warning(
                        f"Slip {slip_id} position {position}: fixture {fixture_id} "
                        f"not the slate's {expected.fixture_id}"
                    )
                else:
                    frozen = expected.odds.for_selection(market, selection)
                    if frozen != odds:
                        logger.warning(
                            f"Slip {slip_id} position {position}: odds {odds} differ from "
                            f"frozen {frozen}; scoring uses the frozen value"
                        )
            predictions.append(SlipPrediction(
                slip_id=slip_id,
                position=position,
                fixture_id=fixture_id,
                market=market,
                selection=selection,
                selected_odd=odds,
            ))

        slip = Slip(
            slip_id=slip_id,
            cycle_id=cycle_id,
            player=str(args["player"]),
            placed_at=datetime.fromtimestamp(placed_ts, tz=timezone.utc),
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            predictions=predictions,
        )
        if await self.slips.insert(slip, conn):
            logger.info(f"Projected slip {slip_id} of {slip.player} in cycle {cycle_id}")

    async def on_prize_claimed(self, event, conn) -> None:
        args = event.args
        claim = PrizeClaim(
            cycle_id=int(args["cycleId"]),
            player=str(args["player"]),
            rank=int(args["rank"]),
            amount=Decimal(int(args["amount"])),
            tx_hash=event.tx_hash,
            log_index=event.log_index,
        )
        await self.claims.record(claim, conn)
        logger.info(f"Prize claimed: cycle {claim.cycle_id} rank {claim.rank} by {claim.player}")

    # =========================================================================
    # Evaluation
    # =========================================================================

    async def slip_count(self, cycle_id: int) -> int:
        return await self.slips.count_for_cycle(cycle_id)

    async def score_cycle(self, cycle_id: int) -> list[SlipScore]:
        """Score and rank a resolved cycle without writing anything."""
        cycle = await self.cycles.get(cycle_id)
        if cycle is None or cycle.outcomes is None:
            raise ValueError(f"Cycle {cycle_id} has no result vector")
        slate = await self._slate(cycle_id)
        if slate is None:
            raise ValueError(f"Cycle {cycle_id} has no slate")

        slips = await self.slips.for_cycle(cycle_id)
        inputs = [
            SlipInput(
                slip_id=s.slip_id,
                player=s.player,
                placed_at=s.placed_at,
                predictions=tuple(Prediction(p.market, p.selection) for p in s.predictions),
            )
            for s in slips
        ]
        return evaluate_cycle(inputs, cycle.outcomes, slate.position_odds, self.scoring)

    async def evaluate(self, cycle_id: int) -> list[SlipScore]:
        """
        Evaluate a Resolved cycle and mark it Evaluated, atomically.

        Re-running on an evaluated cycle is rejected by the transition; the
        scores themselves are deterministic so a retried evaluation after a
        rollback writes identical rows.
        """
        scores = await self.score_cycle(cycle_id)
        evaluated_at = self._clock()

        async with self.db.transaction() as conn:
            await self.slips.record_evaluation(cycle_id, scores, evaluated_at, conn)
            await self.leaderboard.replace_for_cycle(cycle_id, scores, conn)
            await self.cycles.transition(
                cycle_id,
                CycleState.RESOLVED,
                CycleState.EVALUATED,
                Trigger.SLIPS_PROJECTED,
                detail=f"{len(scores)} slips",
                conn=conn,
            )
            await self.stats.refresh_after_evaluation(cycle_id, conn)

        qualifying = sum(1 for s in scores if s.qualifies)
        logger.info(
            f"Cycle {cycle_id} evaluated: {len(scores)} slips, {qualifying} qualifying"
            + (f", top score {scores[0].score}" if scores else "")
        )
        return scores

    async def flag_refunds(self, cycle_id: int, conn=None) -> int:
        flagged = await self.slips.flag_refund_eligible(cycle_id, conn=conn)
        if flagged:
            logger.info(f"Cycle {cycle_id}: {flagged} slip(s) flagged refund-eligible")
        return flagged
