"""
Confirmation watchers.

One task per submitted transaction, owned by the gateway rather than by
the caller, so a coordinator tick never blocks on confirmation. Each step
persists what it learned into chain_transactions:

    no receipt yet        -> stays 'submitted'; after STUCK_BLOCKS without
                             inclusion a fee-bumped replacement (same nonce)
                             is added to the watched set
    receipt, depth < K    -> 'pending' with block number / hash
    receipt vanished or
    block hash changed    -> reorg: the SAME signed bytes are re-broadcast
                             and watching continues
    depth >= K, canonical -> 'confirmed' or 'reverted'; sibling
                             replacements are marked 'replaced'

A transaction with no receipt past the timeout is marked 'dropped'.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from web3.exceptions import TransactionNotFound

from cycle_engine.errors import ConfirmationTimeoutError
from cycle_engine.storage.models import ChainTransaction
from cycle_engine.storage.repositories import ChainTransactionRepository

from .encoding import normalize_hash

logger = logging.getLogger(__name__)

Replacer = Callable[[ChainTransaction], Awaitable[Optional[ChainTransaction]]]
Broadcaster = Callable[[bytes], Awaitable[None]]
FinalCallback = Callable[[ChainTransaction], Awaitable[None]]


@dataclass
class WatchState:
    """Per-nonce tracking state; ``txs`` holds the original and its replacements."""

    txs: list[ChainTransaction]
    started_at: float
    last_progress_block: Optional[int] = None
    mined_hash: Optional[str] = None
    mined_block_hash: Optional[str] = None
    reorgs: int = 0
    rebroadcasts: int = 0
    history: list[str] = field(default_factory=list)

    @property
    def current(self) -> ChainTransaction:
        return self.txs[-1]

    def find(self, tx_hash: str) -> ChainTransaction:
        for tx in self.txs:
            if tx.tx_hash == tx_hash:
                return tx
        raise KeyError(tx_hash)


class ConfirmationWatcher:
    """Tracks submitted transactions to depth K across reorgs."""

    def __init__(
        self,
        w3,
        tx_repo: ChainTransactionRepository,
        broadcast: Broadcaster,
        depth: int = 12,
        poll_interval: float = 4.0,
        stuck_blocks: int = 25,
        timeout: float = 3600.0,
        replace: Optional[Replacer] = None,
        on_final: Optional[FinalCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.w3 = w3
        self.tx_repo = tx_repo
        self._broadcast = broadcast
        self.depth = depth
        self.poll_interval = poll_interval
        self.stuck_blocks = stuck_blocks
        self.timeout = timeout
        self._replace = replace
        self._on_final = on_final
        self._sleep = sleep
        self._monotonic = monotonic
        self._tasks: dict[str, asyncio.Task] = {}

    # =========================================================================
    # Task management
    # =========================================================================

    def watch(self, tx: ChainTransaction) -> asyncio.Task:
        """Start (or return the existing) watcher for ``tx``."""
        task = self._tasks.get(tx.tx_hash)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._run(tx), name=f"watch-{tx.tx_hash[:10]}")
        self._tasks[tx.tx_hash] = task
        task.add_done_callback(lambda _t, h=tx.tx_hash: self._tasks.pop(h, None))
        return task

    def is_watching(self, tx_hash: str) -> bool:
        task = self._tasks.get(tx_hash)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def resume_pending(self) -> int:
        """Re-attach watchers to every non-final transaction after a restart."""
        open_txs = await self.tx_repo.open_transactions()
        by_nonce: dict[int, list[ChainTransaction]] = {}
        for tx in open_txs:
            by_nonce.setdefault(tx.nonce, []).append(tx)

        for nonce, txs in sorted(by_nonce.items()):
            txs.sort(key=lambda t: t.submitted_at)
            task = asyncio.create_task(self._run(txs[0], extra=txs[1:]), name=f"watch-nonce-{nonce}")
            for tx in txs:
                self._tasks[tx.tx_hash] = task
        if open_txs:
            logger.info(f"Resumed watching {len(open_txs)} open transaction(s)")
        return len(open_txs)

    async def drain(self, timeout: float) -> None:
        """Give watchers up to ``timeout`` seconds to finish, then cancel the rest."""
        tasks = list({id(t): t for t in self._tasks.values() if not t.done()}.values())
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info(f"Cancelled {len(pending)} watcher(s) at shutdown; they resume on restart")

    # =========================================================================
    # Watch loop
    # =========================================================================

    async def _run(self, tx: ChainTransaction, extra: Optional[list] = None) -> ChainTransaction:
        state = WatchState(txs=[tx, *(extra or [])], started_at=self._monotonic())
        logger.info(f"Watching {tx.kind} tx {tx.tx_hash} for cycle {tx.cycle_id}")

        while True:
            try:
                final = await self.poll(state)
                if final is not None:
                    if self._on_final is not None:
                        await self._on_final(final)
                    return final
            except asyncio.CancelledError:
                raise
            except ConfirmationTimeoutError as e:
                logger.error(str(e))
                for t in state.txs:
                    await self.tx_repo.update_status(t.tx_hash, "dropped", error=str(e))
                dropped = state.current.model_copy(update={"status": "dropped", "error": str(e)})
                if self._on_final is not None:
                    await self._on_final(dropped)
                return dropped
            except Exception as e:
                logger.warning(f"Watcher poll for {state.current.tx_hash} failed: {e}")

            await self._sleep(self.poll_interval)

    async def _receipt(self, tx_hash: str):
        try:
            return await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    async def poll(self, state: WatchState) -> Optional[ChainTransaction]:
        """
        One observation step. Returns the final transaction once it is
        confirmed or reverted at depth, otherwise None.
        """
        head = await self.w3.eth.block_number
        if state.last_progress_block is None:
            state.last_progress_block = head

        receipt = None
        mined: Optional[ChainTransaction] = None
        for candidate in reversed(state.txs):
            receipt = await self._receipt(candidate.tx_hash)
            if receipt is not None:
                mined = candidate
                break

        if receipt is None:
            await self._handle_missing(state, head)
            return None

        block_number = receipt["blockNumber"]
        block_hash = normalize_hash(receipt["blockHash"])

        if state.mined_hash == mined.tx_hash and state.mined_block_hash != block_hash:
            state.reorgs += 1
            state.history.append(f"moved:{block_hash}")
            logger.warning(
                f"Reorg: {mined.tx_hash} moved from block {state.mined_block_hash} to {block_hash}"
            )

        if state.mined_hash != mined.tx_hash or state.mined_block_hash != block_hash:
            state.mined_hash = mined.tx_hash
            state.mined_block_hash = block_hash
            state.history.append(f"included:{block_number}")
            await self.tx_repo.update_status(mined.tx_hash, "pending", block_number, block_hash)

        confirmations = head - block_number + 1
        if confirmations < self.depth:
            return None

        canonical = await self.w3.eth.get_block(block_number)
        if normalize_hash(canonical["hash"]) != block_hash:
            logger.warning(
                f"Reorg: block {block_number} of {mined.tx_hash} is no longer canonical"
            )
            await self._reorged_out(state, mined)
            return None

        status = "confirmed" if receipt["status"] == 1 else "reverted"
        error = None if status == "confirmed" else "execution reverted"
        await self.tx_repo.update_status(mined.tx_hash, status, block_number, block_hash, error)
        for other in state.txs:
            if other.tx_hash != mined.tx_hash:
                await self.tx_repo.update_status(other.tx_hash, "replaced")

        state.history.append(status)
        log = logger.info if status == "confirmed" else logger.error
        log(
            f"{mined.kind} tx {mined.tx_hash} for cycle {mined.cycle_id} {status} "
            f"in block {block_number} ({confirmations} confirmations)"
        )
        return mined.model_copy(update={
            "status": status,
            "block_number": block_number,
            "block_hash": block_hash,
            "error": error,
        })

    async def _handle_missing(self, state: WatchState, head: int) -> None:
        if state.mined_hash is not None:
            await self._reorged_out(state, state.find(state.mined_hash))
            state.last_progress_block = head
            return

        if self._monotonic() - state.started_at > self.timeout:
            raise ConfirmationTimeoutError(state.current.tx_hash, self._monotonic() - state.started_at)

        if head - state.last_progress_block < self.stuck_blocks:
            return

        state.last_progress_block = head
        replacement = await self._replace(state.current) if self._replace is not None else None
        if replacement is not None:
            state.txs.append(replacement)
            state.history.append(f"replaced:{replacement.tx_hash}")
            owner = self._tasks.get(state.txs[0].tx_hash)
            if owner is not None:
                self._tasks[replacement.tx_hash] = owner
            return

        # No bump possible; make sure the node still has the bytes.
        if state.current.raw_tx:
            await self._rebroadcast(state, state.current)

    async def _reorged_out(self, state: WatchState, tx: ChainTransaction) -> None:
        state.reorgs += 1
        state.history.append("reorged")
        state.mined_hash = None
        state.mined_block_hash = None
        logger.warning(f"Reorg: {tx.tx_hash} lost its block; re-broadcasting the same signed tx")
        await self.tx_repo.update_status(tx.tx_hash, "submitted")
        await self._rebroadcast(state, tx)

    async def _rebroadcast(self, state: WatchState, tx: ChainTransaction) -> None:
        if not tx.raw_tx:
            logger.error(f"Cannot re-broadcast {tx.tx_hash}: raw bytes not recorded")
            return
        state.rebroadcasts += 1
        state.history.append(f"rebroadcast:{tx.tx_hash}")
        await self._broadcast(bytes(tx.raw_tx))
