"""
Serialized transaction submitter.

Every mutating transaction goes through one asyncio.Queue consumed by a
single worker task, which therefore owns the account nonce. For each job:

    1. estimate gas (a revert here is TransactionRevertedError, never sent)
    2. price with EIP-1559: priority = node suggestion (capped),
       max fee = 2 * base fee + priority
    3. sign, write the chain_transactions row, THEN broadcast
    4. classify node errors:
         already known      -> success
         underpriced        -> bump fees by GAS_BUMP_PERCENT and re-sign
         nonce too low/high -> resync nonce from the node and re-sign
         network failure    -> re-send the same signed bytes
         execution reverted -> TransactionRevertedError

Fee-bump replacements of stuck transactions (same nonce) also run on the
queue so signing never interleaves.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from web3 import Web3
from web3.exceptions import ContractLogicError

from cycle_engine.errors import (
    AlreadyKnownError,
    CycleEngineError,
    NonceGapError,
    TransactionRevertedError,
    TransientNetworkError,
    UnderpricedError,
)
from cycle_engine.storage.models import ChainTransaction
from cycle_engine.storage.repositories import ChainTransactionRepository
from cycle_engine.utils.clock import Clock, utc_now
from cycle_engine.utils.retry import RetryBudgetExhausted, RetryPolicy, retry_async

logger = logging.getLogger(__name__)

_NONCE_MARKERS = ("nonce too low", "nonce too high", "invalid nonce", "nonce gap")
_KNOWN_MARKERS = ("already known", "known transaction", "already imported")
_UNDERPRICED_MARKERS = ("underpriced", "fee too low", "less than block base fee")
_REVERT_MARKERS = ("execution reverted", "reverted")


def classify_error(exc: BaseException, tx_hash: Optional[str] = None) -> BaseException:
    """Map a node / transport failure onto an error kind."""
    if isinstance(exc, CycleEngineError):
        return exc
    if isinstance(exc, ContractLogicError):
        return TransactionRevertedError(f"Execution reverted: {exc}", tx_hash=tx_hash)
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError)):
        return TransientNetworkError(f"RPC transport failure: {exc or type(exc).__name__}")

    message = str(exc).lower()
    if any(m in message for m in _KNOWN_MARKERS):
        return AlreadyKnownError(str(exc))
    if any(m in message for m in _NONCE_MARKERS):
        return NonceGapError(str(exc))
    if any(m in message for m in _UNDERPRICED_MARKERS):
        return UnderpricedError(str(exc))
    if any(m in message for m in _REVERT_MARKERS):
        return TransactionRevertedError(str(exc), tx_hash=tx_hash)
    return exc


class NonceManager:
    """Local nonce counter that never falls behind the node's pending count."""

    def __init__(self, w3, address: str):
        self.w3 = w3
        self.address = address
        self._lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None

    async def next_nonce(self) -> int:
        async with self._lock:
            chain_nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
            if self._next_nonce is None or self._next_nonce < chain_nonce:
                self._next_nonce = chain_nonce
            out = self._next_nonce
            self._next_nonce += 1
            return out

    async def reset_from_chain(self) -> None:
        async with self._lock:
            self._next_nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
        logger.warning(f"Nonce resynced from node: next={self._next_nonce}")


@dataclass
class _Job:
    label: str
    run: Callable[[], Awaitable[Any]]
    future: asyncio.Future = field(repr=False)


def bump_fees(
    priority: int, max_fee: int, percent: int, cap: int
) -> Optional[tuple[int, int]]:
    """
    Fees for a same-nonce replacement, or None once the priority fee is at the cap.
    """
    if priority >= cap:
        return None
    new_priority = min(max(priority * (100 + percent) // 100, priority + 1), cap)
    new_max_fee = max(max_fee * (100 + percent) // 100, max_fee + 1) + (new_priority - priority)
    return new_priority, new_max_fee


class TransactionSubmitter:
    """Single-worker submission queue bound to one signing account."""

    def __init__(
        self,
        w3,
        account,
        tx_repo: ChainTransactionRepository,
        chain_id: int,
        retry_policy: Optional[RetryPolicy] = None,
        gas_bump_percent: int = 15,
        max_priority_fee_wei: int = Web3.to_wei(50, "gwei"),
        gas_multiplier: float = 1.2,
        on_broadcast: Optional[Callable[[ChainTransaction], Awaitable[None]]] = None,
        clock: Clock = utc_now,
    ):
        self.w3 = w3
        self.account = account
        self.address = account.address
        self.tx_repo = tx_repo
        self.chain_id = chain_id
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=5, initial_delay=1.0, max_delay=20.0)
        self.gas_bump_percent = gas_bump_percent
        self.max_priority_fee_wei = max_priority_fee_wei
        self.gas_multiplier = gas_multiplier
        self.nonces = NonceManager(w3, self.address)
        self._on_broadcast = on_broadcast
        self._clock = clock

        self._queue: asyncio.Queue[_Job] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        # unsigned dicts of live transactions, needed to re-sign with higher fees
        self._unsigned: dict[str, dict] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="tx-submitter")
            logger.info(f"Transaction submitter started for {self.address}")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

        while not self._queue.empty():
            job = self._queue.get_nowait()
            if not job.future.done():
                job.future.cancel()
        logger.info("Transaction submitter stopped")

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                result = await job.run()
                if not job.future.done():
                    job.future.set_result(result)
            except asyncio.CancelledError:
                if not job.future.done():
                    job.future.cancel()
                raise
            except Exception as e:
                logger.error(f"Submission job {job.label} failed: {e}")
                if not job.future.done():
                    job.future.set_exception(e)
            finally:
                self._queue.task_done()

    async def _enqueue(self, label: str, run: Callable[[], Awaitable[Any]]) -> Any:
        if self._worker is None:
            raise RuntimeError("Transaction submitter is not running")
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(_Job(label=label, run=run, future=future))
        return await future

    # =========================================================================
    # Public API
    # =========================================================================

    async def submit(self, cycle_id: int, kind: str, fn) -> ChainTransaction:
        """
        Queue a contract call and wait until it is signed, recorded and broadcast.

        ``fn`` is a bound contract function (``contract.functions.x(args)``).
        Confirmation is tracked separately by the watchers.
        """
        return await self._enqueue(
            f"{kind}:{cycle_id}", lambda: self._send_new(cycle_id, kind, fn)
        )

    async def replace(self, tx: ChainTransaction) -> Optional[ChainTransaction]:
        """Re-sign ``tx`` at the same nonce with bumped fees. None when no bump is possible."""
        return await self._enqueue(f"replace:{tx.tx_hash}", lambda: self._replace(tx))

    async def broadcast(self, raw_tx: bytes) -> None:
        """Send signed bytes. A node that already has them counts as success."""
        try:
            await self.w3.eth.send_raw_transaction(raw_tx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            classified = classify_error(e)
            if isinstance(classified, AlreadyKnownError):
                logger.debug("Node already knows transaction; treating as broadcast")
                return
            raise classified from e

    # =========================================================================
    # Worker-side implementation
    # =========================================================================

    async def _suggest_fees(self) -> tuple[int, int]:
        priority = await self.w3.eth.max_priority_fee
        block = await self.w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas", 0) or 0
        priority = min(int(priority), self.max_priority_fee_wei)
        return priority, base_fee * 2 + priority

    async def _send_new(self, cycle_id: int, kind: str, fn) -> ChainTransaction:
        try:
            gas = await fn.estimate_gas({"from": self.address})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            classified = classify_error(e)
            if isinstance(classified, TransactionRevertedError):
                raise TransactionRevertedError(
                    f"{kind} for cycle {cycle_id} reverts at estimation: {e}"
                ) from e
            raise classified from e

        priority, max_fee = await self._suggest_fees()
        nonce = await self.nonces.next_nonce()

        last_error: Optional[BaseException] = None
        for attempt in range(1, self.retry_policy.max_attempts + 1):
            unsigned = await fn.build_transaction({
                "from": self.address,
                "nonce": nonce,
                "gas": int(gas * self.gas_multiplier),
                "maxFeePerGas": max_fee,
                "maxPriorityFeePerGas": priority,
                "chainId": self.chain_id,
            })
            try:
                return await self._sign_record_broadcast(cycle_id, kind, unsigned)
            except UnderpricedError as e:
                last_error = e
                bumped = bump_fees(priority, max_fee, self.gas_bump_percent, self.max_priority_fee_wei)
                if bumped is None:
                    logger.error(f"{kind} for cycle {cycle_id}: underpriced at fee cap")
                    raise
                priority, max_fee = bumped
                logger.warning(
                    f"{kind} for cycle {cycle_id}: underpriced, bumping priority fee to "
                    f"{Web3.from_wei(priority, 'gwei')} gwei"
                )
            except NonceGapError as e:
                last_error = e
                logger.warning(f"{kind} for cycle {cycle_id}: nonce {nonce} rejected ({e})")
                await self.nonces.reset_from_chain()
                nonce = await self.nonces.next_nonce()

        raise RetryBudgetExhausted(f"submit {kind} for cycle {cycle_id}", self.retry_policy.max_attempts, last_error)

    async def _sign_record_broadcast(self, cycle_id: int, kind: str, unsigned: dict) -> ChainTransaction:
        signed = self.account.sign_transaction(unsigned)
        tx_hash = Web3.to_hex(signed.hash)
        raw = bytes(signed.raw_transaction)

        tx = await self.tx_repo.record(ChainTransaction(
            tx_hash=tx_hash,
            cycle_id=cycle_id,
            kind=kind,
            nonce=unsigned["nonce"],
            raw_tx=raw,
            status="submitted",
            max_priority_fee=unsigned["maxPriorityFeePerGas"],
            max_fee=unsigned["maxFeePerGas"],
            submitted_at=self._clock(),
        ))

        try:
            await retry_async(
                lambda: self.broadcast(raw),
                self.retry_policy,
                name=f"broadcast {tx_hash}",
                retry_on=(TransientNetworkError,),
            )
        except RetryBudgetExhausted as e:
            # The row is durable; the watcher keeps re-sending the same bytes.
            logger.error(f"Broadcast of {tx_hash} not acknowledged: {e.last_error}")
        except (UnderpricedError, NonceGapError) as e:
            await self.tx_repo.update_status(tx_hash, "dropped", error=str(e))
            raise

        self._unsigned[tx_hash] = unsigned
        logger.info(
            f"Broadcast {kind} for cycle {cycle_id}: tx={tx_hash} nonce={unsigned['nonce']}"
        )
        if self._on_broadcast is not None:
            await self._on_broadcast(tx)
        return tx

    async def _replace(self, tx: ChainTransaction) -> Optional[ChainTransaction]:
        unsigned = self._unsigned.get(tx.tx_hash)
        if unsigned is None:
            logger.warning(f"Cannot bump {tx.tx_hash}: unsigned form not held by this process")
            return None

        bumped = bump_fees(
            unsigned["maxPriorityFeePerGas"],
            unsigned["maxFeePerGas"],
            self.gas_bump_percent,
            self.max_priority_fee_wei,
        )
        if bumped is None:
            logger.warning(f"Cannot bump {tx.tx_hash}: priority fee already at cap")
            return None

        priority, max_fee = bumped
        replacement = dict(unsigned, maxPriorityFeePerGas=priority, maxFeePerGas=max_fee)
        logger.warning(
            f"Replacing stuck {tx.kind} tx {tx.tx_hash} (nonce {tx.nonce}) at "
            f"{Web3.from_wei(priority, 'gwei')} gwei priority"
        )
        try:
            return await self._sign_record_broadcast(tx.cycle_id, tx.kind, replacement)
        except (UnderpricedError, NonceGapError) as e:
            logger.warning(f"Replacement for {tx.tx_hash} rejected: {e}")
            return None
