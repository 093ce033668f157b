"""
Cycle Coordinator.

Owns the cycle state machine:

    Pending -> Open -> Closed -> Awaiting-Results -> Resolving -> Resolved -> Evaluated
        \\________\\_______\\____________\\
                                        -> Cancelled

Two entry points:

    run_selection()  cron-driven; picks the next cycle id, selects and
                     freezes a slate (the cycle stays Pending on failure)
    tick()           advances every non-terminal, non-halted cycle by at
                     most one step; distinct cycles run in parallel,
                     one cycle never runs twice at the same time

The chain is the source of truth for cycle state, the database for inputs
(fixtures, odds, results). Divergence is alerted, never reconciled.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from cycle_engine.chain.encoding import ChainMatch, normalize_hash, result_hash
from cycle_engine.chain.gateway import RESOLVE_KIND, START_KIND, ChainEvent, ChainGateway
from cycle_engine.core.outcomes import FixtureOutcome, FixtureStatus
from cycle_engine.core.states import STATE_RANK, CycleState, Trigger
from cycle_engine.errors import (
    CycleEngineError,
    InsufficientFixturesError,
    InsufficientOddsError,
    InvalidTransitionError,
    TransactionRevertedError,
)
from cycle_engine.ingestion.fixture_sync import FixtureSync
from cycle_engine.monitoring.alerting import AlertManager
from cycle_engine.projection.projector import Projector
from cycle_engine.selection.selector import MatchSelector
from cycle_engine.storage.database import Database
from cycle_engine.storage.fixture_store import FixtureStore
from cycle_engine.storage.models import ChainTransaction, Cycle, SelectionRun, Slate
from cycle_engine.storage.repositories import (
    ChainTransactionRepository,
    CycleRepository,
    SelectionRunRepository,
)
from cycle_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class CoordinatorConfig:
    close_grace: timedelta = timedelta(minutes=60)
    resolve_deadline: timedelta = timedelta(hours=36)
    results_probe_interval: float = 60.0
    worker_pool_size: int = 8


class CycleCoordinator:
    """Drives cycles through their lifecycle."""

    def __init__(
        self,
        db: Database,
        store: FixtureStore,
        selector: MatchSelector,
        gateway: ChainGateway,
        projector: Projector,
        alerts: Optional[AlertManager] = None,
        config: Optional[CoordinatorConfig] = None,
        fixture_sync: Optional[FixtureSync] = None,
        subscriber=None,
        clock: Clock = utc_now,
        monotonic=time.monotonic,
    ):
        self.db = db
        self.store = store
        self.selector = selector
        self.gateway = gateway
        self.projector = projector
        self.alerts = alerts or AlertManager()
        self.config = config or CoordinatorConfig()
        self.fixture_sync = fixture_sync
        self.subscriber = subscriber
        self._clock = clock
        self._monotonic = monotonic

        self.cycles = CycleRepository(db)
        self.txs = ChainTransactionRepository(db)
        self.selection_runs = SelectionRunRepository(db)

        self._in_flight: set[int] = set()
        self._semaphore = asyncio.Semaphore(self.config.worker_pool_size)
        self._last_results_probe: dict[int, float] = {}
        self._selection_lock = asyncio.Lock()

    def register(self, subscriber) -> None:
        """Watch lifecycle events for divergence from the stored state."""
        subscriber.on("CycleStarted", self.on_cycle_started)
        subscriber.on("CycleResolved", self.on_cycle_resolved)

    # =========================================================================
    # Selection
    # =========================================================================

    async def run_selection(self) -> Optional[Cycle]:
        """
        Selection tick. Returns the Pending cycle it worked on.

        A Pending cycle left without a slate by an earlier failed selection
        is reused, so a retry never burns a cycle id.
        """
        async with self._selection_lock:
            now = self._clock()

            if self.fixture_sync is not None:
                try:
                    await self.fixture_sync.sync()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"Pre-selection fixture sync failed: {e}")

            cycle = await self.cycles.find_unselected_pending()
            if cycle is None:
                chain_id = await self.gateway.current_cycle_id()
                db_id = await self.cycles.max_id()
                cycle = await self.cycles.create_pending(max(chain_id, db_id) + 1, now.date())
                logger.info(f"Created Pending cycle {cycle.cycle_id} (chain={chain_id}, db={db_id})")
            else:
                logger.info(f"Reusing Pending cycle {cycle.cycle_id} without slate")

            cycle_id = cycle.cycle_id
            try:
                selection = await self.selector.select(now)
                slate = await self.store.freeze_slate(cycle_id, selection.fixture_ids)
            except InsufficientFixturesError as e:
                await self.selection_runs.record(SelectionRun(
                    cycle_id=cycle_id,
                    run_at=now,
                    outcome="insufficient_fixtures",
                    candidates=e.found,
                    detail=str(e),
                ))
                logger.error(f"Selection for cycle {cycle_id} failed: {e}")
                self.alerts.alert_selection_failed(cycle_id, e.found, e.required)
                return cycle
            except InsufficientOddsError as e:
                await self.selection_runs.record(SelectionRun(
                    cycle_id=cycle_id, run_at=now, outcome="failed", detail=str(e),
                ))
                logger.error(f"Slate freeze for cycle {cycle_id} failed: {e}")
                self.alerts.alert_selection_failed(cycle_id, 0)
                return cycle

            await self._schedule_from_slate(cycle, slate)
            await self.selection_runs.record(SelectionRun(
                cycle_id=cycle_id,
                run_at=now,
                outcome="selected",
                candidates=selection.candidate_count,
                detail=slate.slate_hash,
            ))
            return await self.cycles.get(cycle_id)

    async def _schedule_from_slate(self, cycle: Cycle, slate: Slate) -> None:
        now = self._clock()
        close_time = slate.earliest_kickoff - self.config.close_grace
        await self.cycles.set_schedule(
            cycle.cycle_id,
            selection_date=cycle.selection_date or now.date(),
            open_time=now,
            close_time=close_time,
            resolve_deadline=close_time + self.config.resolve_deadline,
            slate_hash=slate.slate_hash,
        )

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self) -> int:
        """Advance every active cycle once. Returns the number of cycles examined."""
        active = await self.cycles.active()
        await asyncio.gather(*(self._guarded_advance(c) for c in active))
        return len(active)

    async def _guarded_advance(self, cycle: Cycle) -> None:
        if cycle.cycle_id in self._in_flight:
            logger.debug(f"Cycle {cycle.cycle_id} already in flight; skipping")
            return
        self._in_flight.add(cycle.cycle_id)
        try:
            async with self._semaphore:
                await self.advance(cycle)
        except asyncio.CancelledError:
            raise
        except InvalidTransitionError as e:
            logger.warning(f"Cycle {cycle.cycle_id}: {e}")
        except CycleEngineError as e:
            logger.error(f"Cycle {cycle.cycle_id} step failed ({e.kind}): {e}")
        except Exception as e:
            logger.error(f"Cycle {cycle.cycle_id} step failed: {e}", exc_info=True)
        finally:
            self._in_flight.discard(cycle.cycle_id)

    async def advance(self, cycle: Cycle) -> None:
        """Take at most one step for ``cycle``."""
        if cycle.is_halted:
            logger.debug(f"Cycle {cycle.cycle_id} halted: {cycle.halted_reason}")
            return

        if cycle.state in (CycleState.OPEN, CycleState.CLOSED, CycleState.AWAITING_RESULTS):
            if await self._cancel_if_fixture_cancelled(cycle):
                return

        step = {
            CycleState.PENDING: self._step_pending,
            CycleState.OPEN: self._step_open,
            CycleState.CLOSED: self._step_closed,
            CycleState.AWAITING_RESULTS: self._step_awaiting_results,
            CycleState.RESOLVING: self._step_resolving,
            CycleState.RESOLVED: self._step_resolved,
        }.get(cycle.state)
        if step is not None:
            await step(cycle)

    # =========================================================================
    # Steps
    # =========================================================================

    async def _step_pending(self, cycle: Cycle) -> None:
        cycle_id = cycle.cycle_id
        slate = await self.store.get_slate(cycle_id)
        if slate is None:
            return
        if cycle.slate_hash is None:
            # freeze committed but scheduling did not
            await self._schedule_from_slate(cycle, slate)
            cycle = await self.cycles.get(cycle_id)

        tx = await self.txs.latest_for(cycle_id, START_KIND)
        if tx is not None and not tx.is_final:
            self.gateway.ensure_watched(tx)
            return
        if tx is not None and tx.status == "reverted":
            await self._halt(cycle, f"startCycle reverted ({tx.tx_hash})")
            self.alerts.alert_transaction_reverted(cycle_id, START_KIND, tx.tx_hash, tx.error or "reverted")
            return
        if tx is not None and tx.status == "confirmed":
            await self._confirm_start(cycle, slate, tx.tx_hash)
            return

        # No live start transaction: adopt a cycle someone already started.
        onchain = await self.gateway.get_cycle(cycle_id)
        if onchain.exists:
            await self._open_or_cancel(cycle, slate, onchain.slate_hash, cycle_id, None)
            return

        if self._clock() >= cycle.close_time:
            await self.cycles.transition(
                cycle_id,
                CycleState.PENDING,
                CycleState.CANCELLED,
                Trigger.OPEN_WINDOW_MISSED,
                detail="close time passed before startCycle was sent",
                cancel_reason="OpenWindowMissed",
            )
            self.alerts.alert_cycle_cancelled(cycle_id, "open window missed")
            return

        matches = [
            ChainMatch.build(
                f.fixture_id, f.kickoff, f.home_odds, f.draw_odds, f.away_odds, f.over_odds, f.under_odds
            )
            for f in slate.fixtures
        ]
        try:
            tx = await self.gateway.submit_start(cycle_id, matches)
        except TransactionRevertedError as e:
            await self._halt(cycle, f"startCycle reverts: {e}")
            self.alerts.alert_transaction_reverted(cycle_id, START_KIND, e.tx_hash or "-", str(e))
            return
        await self.cycles.set_start_tx(cycle_id, tx.tx_hash)

    async def _confirm_start(self, cycle: Cycle, slate: Slate, tx_hash: str) -> None:
        events = await self.gateway.receipt_events(tx_hash)
        started = next((e for e in events if e.name == "CycleStarted"), None)
        if started is None:
            await self._cancel_mismatch(cycle, slate.slate_hash, "no CycleStarted event")
            return
        await self._open_or_cancel(
            cycle, slate, normalize_hash(started.args["slateHash"]), int(started.args["cycleId"]), tx_hash
        )

    async def _open_or_cancel(
        self, cycle: Cycle, slate: Slate, chain_hash: str, chain_cycle_id: int, tx_hash: Optional[str]
    ) -> None:
        if chain_cycle_id != cycle.cycle_id or chain_hash != normalize_hash(slate.slate_hash):
            await self._cancel_mismatch(cycle, slate.slate_hash, f"cycle {chain_cycle_id} hash {chain_hash}")
            return
        await self.cycles.transition(
            cycle.cycle_id,
            CycleState.PENDING,
            CycleState.OPEN,
            Trigger.OPENED_ON_CHAIN,
            tx_hash=tx_hash,
        )

    async def _cancel_mismatch(self, cycle: Cycle, expected: str, actual: str) -> None:
        await self.cycles.transition(
            cycle.cycle_id,
            CycleState.PENDING,
            CycleState.CANCELLED,
            Trigger.SLATE_MISMATCH,
            detail=f"expected {expected}, chain {actual}",
            cancel_reason="SlateMismatch",
        )
        logger.error(f"Cycle {cycle.cycle_id} cancelled: slate mismatch (expected {expected}, chain {actual})")
        self.alerts.alert_slate_mismatch(cycle.cycle_id, expected, actual)

    async def _step_open(self, cycle: Cycle) -> None:
        if cycle.close_time is None or self._clock() < cycle.close_time:
            return
        onchain = await self.gateway.get_cycle(cycle.cycle_id)
        block = await self.gateway.latest_block()
        if onchain.end_time > block.timestamp:
            logger.debug(
                f"Cycle {cycle.cycle_id}: close time passed but chain end {onchain.end_time} "
                f"> block time {block.timestamp}"
            )
            return
        await self.cycles.transition(
            cycle.cycle_id, CycleState.OPEN, CycleState.CLOSED, Trigger.CLOSE_TIME_REACHED
        )
        await self._step_closed(cycle)

    async def _step_closed(self, cycle: Cycle) -> None:
        await self.cycles.transition(
            cycle.cycle_id, CycleState.CLOSED, CycleState.AWAITING_RESULTS, Trigger.AWAITING_RESULTS
        )

    async def _step_awaiting_results(self, cycle: Cycle) -> None:
        cycle_id = cycle.cycle_id
        slate = await self.store.get_slate(cycle_id)

        tx = await self.txs.latest_for(cycle_id, RESOLVE_KIND)
        if tx is not None and tx.status in ("submitted", "pending", "confirmed"):
            # submitted before a crash; adopt instead of sending a second one
            outcomes = await self._result_vector(slate)
            if outcomes is not None:
                logger.warning(f"Cycle {cycle_id}: adopting resolve tx {tx.tx_hash}")
                await self.cycles.transition(
                    cycle_id,
                    CycleState.AWAITING_RESULTS,
                    CycleState.RESOLVING,
                    Trigger.ALL_RESULTS_READY,
                    tx_hash=tx.tx_hash,
                    submitted_vector=outcomes,
                    resolve_tx_hash=tx.tx_hash,
                )
                return
        if tx is not None and tx.status == "reverted":
            await self._halt(cycle, f"resolveCycle reverted ({tx.tx_hash})")
            self.alerts.alert_transaction_reverted(cycle_id, RESOLVE_KIND, tx.tx_hash, tx.error or "reverted")
            return

        now = self._monotonic()
        last = self._last_results_probe.get(cycle_id)
        if last is not None and now - last < self.config.results_probe_interval:
            return
        self._last_results_probe[cycle_id] = now

        outcomes = await self._result_vector(slate)
        if outcomes is None:
            return
        conflicts = await self.store.open_conflicts(slate.fixture_ids)
        if conflicts:
            logger.warning(
                f"Cycle {cycle_id} held: open result conflict on "
                f"{sorted({c.fixture_id for c in conflicts})}"
            )
            return

        fresh = await self.cycles.get(cycle_id)
        if fresh is None or fresh.state != CycleState.AWAITING_RESULTS or fresh.is_halted:
            return

        if await self.gateway.is_cycle_resolved(cycle_id):
            logger.error(f"Cycle {cycle_id} already resolved on chain but not in the database")
            self.alerts.alert_chain_divergence(cycle_id, "resolved on chain before this engine submitted")
            await self._halt(fresh, "chain divergence: resolved on chain")
            return

        try:
            tx = await self.gateway.submit_resolve(cycle_id, outcomes)
        except TransactionRevertedError as e:
            await self._halt(fresh, f"resolveCycle reverts: {e}")
            self.alerts.alert_transaction_reverted(cycle_id, RESOLVE_KIND, e.tx_hash or "-", str(e))
            return

        self._last_results_probe.pop(cycle_id, None)
        await self.cycles.transition(
            cycle_id,
            CycleState.AWAITING_RESULTS,
            CycleState.RESOLVING,
            Trigger.ALL_RESULTS_READY,
            tx_hash=tx.tx_hash,
            submitted_vector=outcomes,
            resolve_tx_hash=tx.tx_hash,
        )

    async def _result_vector(self, slate: Optional[Slate]) -> Optional[list[FixtureOutcome]]:
        """Ordered outcomes once all ten slate fixtures have results, else None."""
        if slate is None:
            return None
        results = await self.store.results_for(slate.fixture_ids)
        if len(results) < len(slate.fixture_ids):
            return None
        return [results[fid].outcome for fid in slate.fixture_ids]

    async def _step_resolving(self, cycle: Cycle) -> None:
        cycle_id = cycle.cycle_id
        tx = await self.txs.latest_for(cycle_id, RESOLVE_KIND)
        if tx is None:
            logger.error(f"Cycle {cycle_id} is Resolving without a resolve transaction")
            return
        if not tx.is_final:
            self.gateway.ensure_watched(tx)
            return

        if tx.status == "reverted":
            await self._halt(cycle, f"resolveCycle reverted ({tx.tx_hash})")
            self.alerts.alert_transaction_reverted(cycle_id, RESOLVE_KIND, tx.tx_hash, tx.error or "reverted")
            return

        if tx.status == "dropped":
            await self._recover_dropped_resolve(cycle, tx)
            return

        outcomes = cycle.submitted_outcomes
        if outcomes is None:
            logger.error(f"Cycle {cycle_id} is Resolving without a submitted result vector")
            return
        expected = result_hash(outcomes)
        events = await self.gateway.receipt_events(tx.tx_hash)
        resolved = next((e for e in events if e.name == "CycleResolved"), None)
        actual = normalize_hash(resolved.args["resultHash"]) if resolved else "none"
        if resolved is None or int(resolved.args["cycleId"]) != cycle_id or actual != expected:
            await self._halt(cycle, f"result hash mismatch: expected {expected}, chain {actual}")
            self.alerts.alert_chain_divergence(cycle_id, f"result hash {actual} != {expected}")
            return

        await self.cycles.transition(
            cycle_id,
            CycleState.RESOLVING,
            CycleState.RESOLVED,
            Trigger.RESOLVE_CONFIRMED,
            tx_hash=tx.tx_hash,
            result_vector=outcomes,
        )

    async def _recover_dropped_resolve(self, cycle: Cycle, tx: ChainTransaction) -> None:
        """
        A resolve tx past the confirmation timeout may still be mined, so
        its nonce is kept: the same signed bytes are re-sent and watched.
        A new resolveCycle goes out only when that nonce was taken by some
        other transaction and the chain still reports the cycle unresolved.
        """
        cycle_id = cycle.cycle_id
        resolved = await self.gateway.is_cycle_resolved(cycle_id)
        if resolved or not await self.gateway.nonce_used(tx.nonce):
            logger.warning(
                f"Cycle {cycle_id}: resolve tx {tx.tx_hash} dropped; re-broadcasting at nonce {tx.nonce}"
            )
            await self.gateway.revive(tx)
            return

        logger.warning(
            f"Cycle {cycle_id}: nonce {tx.nonce} of dropped resolve tx {tx.tx_hash} was used elsewhere; re-submitting"
        )
        try:
            new_tx = await self.gateway.submit_resolve(cycle_id, cycle.submitted_outcomes)
        except TransactionRevertedError as e:
            await self._halt(cycle, f"resolveCycle reverts: {e}")
            self.alerts.alert_transaction_reverted(cycle_id, RESOLVE_KIND, e.tx_hash or "-", str(e))
            return
        await self.cycles.set_resolve_tx(cycle_id, new_tx.tx_hash)

    async def _step_resolved(self, cycle: Cycle) -> None:
        cycle_id = cycle.cycle_id
        onchain = await self.gateway.get_cycle(cycle_id)
        projected = await self.projector.slip_count(cycle_id)
        if projected < onchain.slip_count:
            logger.debug(f"Cycle {cycle_id}: {projected}/{onchain.slip_count} slips projected")
            return
        if projected > onchain.slip_count:
            logger.warning(f"Cycle {cycle_id}: {projected} slips projected, chain reports {onchain.slip_count}")

        if self.subscriber is not None:
            tx = await self.txs.latest_for(cycle_id, RESOLVE_KIND)
            cursor = await self.subscriber.cursor_block()
            if tx is None or tx.block_number is None or cursor is None or cursor < tx.block_number:
                return

        await self.projector.evaluate(cycle_id)

    # =========================================================================
    # Cancellation / halting
    # =========================================================================

    async def _cancel_if_fixture_cancelled(self, cycle: Cycle) -> bool:
        slate = await self.store.get_slate(cycle.cycle_id)
        if slate is None:
            return False
        fixtures = await self.store.fixtures.get_many(slate.fixture_ids)
        cancelled = sorted(
            fid for fid, f in fixtures.items() if f.status == FixtureStatus.CANCELLED
        )
        if not cancelled:
            return False

        reason = f"fixture {', '.join(cancelled)} cancelled"
        async with self.db.transaction() as conn:
            await self.cycles.transition(
                cycle.cycle_id,
                cycle.state,
                CycleState.CANCELLED,
                Trigger.FIXTURE_CANCELLED,
                detail=reason,
                conn=conn,
                cancel_reason="FixtureCancelled",
            )
            await self.projector.flag_refunds(cycle.cycle_id, conn=conn)

        logger.warning(f"Cycle {cycle.cycle_id} cancelled: {reason}")
        self.alerts.alert_cycle_cancelled(cycle.cycle_id, reason)
        return True

    async def _halt(self, cycle: Cycle, reason: str) -> None:
        await self.cycles.set_halted(cycle.cycle_id, reason)
        logger.error(f"Cycle {cycle.cycle_id} halted in {cycle.state.value}: {reason}")

    # =========================================================================
    # Divergence watch (event handlers must not raise)
    # =========================================================================

    async def on_cycle_started(self, event: ChainEvent, conn) -> None:
        cycle_id = int(event.args["cycleId"])
        chain_hash = normalize_hash(event.args["slateHash"])
        cycle = await self.cycles.get(cycle_id, conn=conn)
        if cycle is None:
            logger.error(f"CycleStarted for unknown cycle {cycle_id}")
            self.alerts.alert_chain_divergence(cycle_id, "started on chain, unknown to the database")
        elif cycle.slate_hash is not None and cycle.slate_hash != chain_hash:
            logger.error(f"CycleStarted for {cycle_id} carries {chain_hash}, stored {cycle.slate_hash}")
            self.alerts.alert_chain_divergence(cycle_id, f"chain slate {chain_hash} != {cycle.slate_hash}")

    async def on_cycle_resolved(self, event: ChainEvent, conn) -> None:
        cycle_id = int(event.args["cycleId"])
        cycle = await self.cycles.get(cycle_id, conn=conn)
        if cycle is None or cycle.state == CycleState.CANCELLED or (
            STATE_RANK.get(cycle.state, -1) < STATE_RANK[CycleState.RESOLVING]
        ):
            state = cycle.state.value if cycle else "missing"
            logger.error(f"CycleResolved for cycle {cycle_id} while stored state is {state}")
            self.alerts.alert_chain_divergence(cycle_id, f"resolved on chain, database state {state}")
