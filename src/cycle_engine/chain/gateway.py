"""
Chain Gateway.

The only component that talks to the JSON-RPC node.

    reads   currentCycleId, cycle, isCycleResolved, getSlip, userStats
            (TTL-cached, bypassed for a window after every submission)
    writes  startCycle / resolveCycle through the serialized submitter;
            confirmation watchers are owned here, not by the caller
    events  decoding of CycleStarted / CycleResolved / SlipPlaced /
            PrizeClaimed from receipts and eth_getLogs ranges
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from cycle_engine.core.outcomes import FixtureOutcome
from cycle_engine.errors import ChainError, NonceGapError, TransientNetworkError
from cycle_engine.storage.models import ChainTransaction
from cycle_engine.storage.repositories import ChainTransactionRepository
from cycle_engine.utils.retry import RetryPolicy, retry_async

from .abi import CONTEST_ABI, EVENT_SIGNATURES
from .cache import ReadCache
from .encoding import ChainMatch, normalize_hash, result_args
from .submitter import TransactionSubmitter, classify_error
from .watcher import ConfirmationWatcher

logger = logging.getLogger(__name__)

START_KIND = "start"
RESOLVE_KIND = "resolve"


@dataclass
class GatewayConfig:
    rpc_url: str
    contract_address: str
    chain_id: Optional[int] = None
    confirmation_depth: int = 12
    read_ttl: float = 3.0
    cache_bypass_window: float = 15.0
    rpc_timeout: float = 20.0
    gas_bump_percent: int = 15
    max_priority_fee_gwei: int = 50
    stuck_blocks: int = 25
    poll_interval: float = 4.0
    confirmation_timeout: float = 3600.0
    tx_retry_budget: int = 5


@dataclass(frozen=True)
class OnChainCycle:
    cycle_id: int
    start_time: int
    end_time: int
    slip_count: int
    is_resolved: bool
    slate_hash: str

    @property
    def exists(self) -> bool:
        return self.start_time > 0


@dataclass(frozen=True)
class OnChainSlip:
    slip_id: int
    player: str
    cycle_id: int
    placed_at: int
    correct_count: int
    final_score: int
    is_evaluated: bool


@dataclass(frozen=True)
class OnChainUserStats:
    player: str
    total_slips: int
    total_wins: int
    best_score: int
    current_streak: int
    best_streak: int


@dataclass(frozen=True)
class ChainEvent:
    """A decoded contract log, keyed by (tx_hash, log_index)."""

    name: str
    args: dict
    tx_hash: str
    log_index: int
    block_number: int
    block_hash: str

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)


@dataclass(frozen=True)
class BlockInfo:
    number: int
    timestamp: int

    @property
    def time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)


TOPIC_TO_EVENT = {
    Web3.to_hex(Web3.keccak(text=signature)): name
    for name, signature in EVENT_SIGNATURES.items()
}


def _plain(value: Any) -> Any:
    """AttributeDict / HexBytes / tuples from web3 into plain Python values."""
    if isinstance(value, (bytes, bytearray)):
        return normalize_hash(value)
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if hasattr(value, "items"):
        return {k: _plain(v) for k, v in value.items()}
    return value


class ChainGateway:
    """Typed, retrying access to the contest contract."""

    def __init__(
        self,
        config: GatewayConfig,
        account,
        tx_repo: ChainTransactionRepository,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.config = config
        self.account = account
        self.tx_repo = tx_repo
        self.w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(
                config.rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=config.rpc_timeout)},
            )
        )
        self.address = Web3.to_checksum_address(config.contract_address)
        self.contract = self.w3.eth.contract(address=self.address, abi=CONTEST_ABI)
        self.cache = ReadCache(ttl=config.read_ttl, bypass_window=config.cache_bypass_window)
        self._read_policy = RetryPolicy(max_attempts=3, initial_delay=0.5, max_delay=5.0)

        self.chain_id: Optional[int] = config.chain_id
        self.submitter: Optional[TransactionSubmitter] = None
        self.watcher: Optional[ConfirmationWatcher] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> None:
        """
        Verify the node and contract, start the submitter and resume watchers.

        Raises:
            ChainError: chain id mismatch or no code at the contract address.
        """
        node_chain_id = await self._rpc(lambda: self.w3.eth.chain_id, "eth_chainId")
        if self.chain_id is not None and node_chain_id != self.chain_id:
            raise ChainError(f"Node reports chain id {node_chain_id}, expected {self.chain_id}")
        self.chain_id = node_chain_id

        code = await self._rpc(lambda: self.w3.eth.get_code(self.address), "eth_getCode")
        if not code or bytes(code) in (b"", b"\x00"):
            raise ChainError(f"No contract code at {self.address} on chain {node_chain_id}")

        self.submitter = TransactionSubmitter(
            self.w3,
            self.account,
            self.tx_repo,
            chain_id=node_chain_id,
            retry_policy=RetryPolicy(max_attempts=self.config.tx_retry_budget, initial_delay=1.0, max_delay=20.0),
            gas_bump_percent=self.config.gas_bump_percent,
            max_priority_fee_wei=Web3.to_wei(self.config.max_priority_fee_gwei, "gwei"),
            on_broadcast=self._after_broadcast,
        )
        self.watcher = ConfirmationWatcher(
            self.w3,
            self.tx_repo,
            broadcast=self.submitter.broadcast,
            depth=self.config.confirmation_depth,
            poll_interval=self.config.poll_interval,
            stuck_blocks=self.config.stuck_blocks,
            timeout=self.config.confirmation_timeout,
            replace=self.submitter.replace,
        )
        self.submitter.start()
        await self.watcher.resume_pending()
        logger.info(
            f"Chain gateway connected: chain={node_chain_id} contract={self.address} "
            f"signer={self.account.address}"
        )

    async def close(self, drain_timeout: float = 10.0) -> None:
        if self.watcher is not None:
            await self.watcher.drain(drain_timeout)
        if self.submitter is not None:
            await self.submitter.stop()
        provider = getattr(self.w3, "provider", None)
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            try:
                await disconnect()
            except Exception as e:
                logger.debug(f"Provider disconnect failed: {e}")

    async def _after_broadcast(self, tx: ChainTransaction) -> None:
        self.cache.note_submission()

    # =========================================================================
    # Reads
    # =========================================================================

    async def _rpc(self, call, name: str):
        async def attempt():
            try:
                return await call()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise classify_error(e) from e

        return await retry_async(attempt, self._read_policy, name=name, retry_on=(TransientNetworkError,))

    async def _view(self, key, call, name: str):
        return await self.cache.get_or_load(key, lambda: self._rpc(call, name))

    async def current_cycle_id(self) -> int:
        return await self._view(
            ("currentCycleId",),
            lambda: self.contract.functions.currentCycleId().call(),
            "currentCycleId",
        )

    async def get_cycle(self, cycle_id: int) -> OnChainCycle:
        raw = await self._view(
            ("cycle", cycle_id),
            lambda: self.contract.functions.cycle(cycle_id).call(),
            f"cycle({cycle_id})",
        )
        _id, start_time, end_time, slip_count, is_resolved, slate = raw
        return OnChainCycle(
            cycle_id=cycle_id,
            start_time=start_time,
            end_time=end_time,
            slip_count=slip_count,
            is_resolved=is_resolved,
            slate_hash=normalize_hash(slate),
        )

    async def is_cycle_resolved(self, cycle_id: int) -> bool:
        return await self._view(
            ("isCycleResolved", cycle_id),
            lambda: self.contract.functions.isCycleResolved(cycle_id).call(),
            f"isCycleResolved({cycle_id})",
        )

    async def get_slip(self, slip_id: int) -> OnChainSlip:
        raw = await self._view(
            ("getSlip", slip_id),
            lambda: self.contract.functions.getSlip(slip_id).call(),
            f"getSlip({slip_id})",
        )
        player, cycle_id, placed_at, correct, score, evaluated = raw
        return OnChainSlip(slip_id, player, cycle_id, placed_at, correct, score, evaluated)

    async def get_user_stats(self, player: str) -> OnChainUserStats:
        address = Web3.to_checksum_address(player)
        raw = await self._view(
            ("userStats", address),
            lambda: self.contract.functions.userStats(address).call(),
            f"userStats({address})",
        )
        return OnChainUserStats(address, *raw)

    async def latest_block(self) -> BlockInfo:
        block = await self._view(
            ("block", "latest"),
            lambda: self.w3.eth.get_block("latest"),
            "eth_getBlockByNumber",
        )
        info = BlockInfo(number=block["number"], timestamp=block["timestamp"])
        return info

    async def block_timestamp(self, block_number: int) -> int:
        block = await self._view(
            ("block", block_number),
            lambda: self.w3.eth.get_block(block_number),
            f"eth_getBlockByNumber({block_number})",
        )
        return block["timestamp"]

    async def block_number(self) -> int:
        return await self._rpc(lambda: self.w3.eth.block_number, "eth_blockNumber")

    # =========================================================================
    # Writes
    # =========================================================================

    def _require_submitter(self) -> TransactionSubmitter:
        if self.submitter is None or self.watcher is None:
            raise RuntimeError("Chain gateway is not connected")
        return self.submitter

    async def submit_start(self, cycle_id: int, matches: Sequence[ChainMatch]) -> ChainTransaction:
        """Broadcast startCycle for a frozen slate and start watching it."""
        submitter = self._require_submitter()
        fn = self.contract.functions.startCycle([m.as_call_arg() for m in matches])
        tx = await submitter.submit(cycle_id, START_KIND, fn)
        self.watcher.watch(tx)
        return tx

    async def submit_resolve(self, cycle_id: int, outcomes: Sequence[FixtureOutcome]) -> ChainTransaction:
        """Broadcast resolveCycle with the ordered result vector and start watching it."""
        submitter = self._require_submitter()
        fn = self.contract.functions.resolveCycle(cycle_id, result_args(outcomes))
        tx = await submitter.submit(cycle_id, RESOLVE_KIND, fn)
        self.watcher.watch(tx)
        return tx

    async def revive(self, tx: ChainTransaction) -> ChainTransaction:
        """
        Re-send the signed bytes of a dropped transaction (same nonce, same
        hash) and watch it again.

        A node rejecting the nonce as used is not an error here: if this
        transaction was the one mined, the watcher finds its receipt.
        """
        submitter = self._require_submitter()
        if not tx.raw_tx:
            raise ChainError(f"Cannot re-broadcast {tx.tx_hash}: raw bytes not recorded")
        await self.tx_repo.update_status(tx.tx_hash, "submitted")
        try:
            await submitter.broadcast(bytes(tx.raw_tx))
        except NonceGapError as e:
            logger.info(f"Nonce {tx.nonce} of {tx.tx_hash} already used ({e}); watching for its receipt")
        self.cache.note_submission()
        revived = tx.model_copy(update={"status": "submitted", "block_number": None, "block_hash": None})
        self.watcher.watch(revived)
        return revived

    async def nonce_used(self, nonce: int) -> bool:
        """True once some transaction of the signer with ``nonce`` is mined."""
        mined = await self._rpc(
            lambda: self.w3.eth.get_transaction_count(self.account.address, "latest"),
            "eth_getTransactionCount",
        )
        return mined > nonce

    def ensure_watched(self, tx: ChainTransaction) -> None:
        """Attach a watcher to a non-final transaction found in the store."""
        if self.watcher is not None and not tx.is_final and not self.watcher.is_watching(tx.tx_hash):
            self.watcher.watch(tx)

    # =========================================================================
    # Events
    # =========================================================================

    def decode_log(self, log) -> Optional[ChainEvent]:
        """Decode one raw log of the contest contract. Unknown topics yield None."""
        topics = log.get("topics") or []
        if not topics:
            return None
        name = TOPIC_TO_EVENT.get(normalize_hash(topics[0]))
        if name is None:
            return None

        decoded = getattr(self.contract.events, name)().process_log(log)
        return ChainEvent(
            name=name,
            args=_plain(decoded["args"]),
            tx_hash=normalize_hash(decoded["transactionHash"]),
            log_index=decoded["logIndex"],
            block_number=decoded["blockNumber"],
            block_hash=normalize_hash(decoded["blockHash"]),
        )

    async def receipt_events(self, tx_hash: str) -> list[ChainEvent]:
        receipt = await self._rpc(
            lambda: self.w3.eth.get_transaction_receipt(tx_hash), "eth_getTransactionReceipt"
        )
        events = []
        for log in receipt["logs"]:
            if Web3.to_checksum_address(log["address"]) != self.address:
                continue
            event = self.decode_log(log)
            if event is not None:
                events.append(event)
        return events

    async def get_events(self, from_block: int, to_block: int) -> list[ChainEvent]:
        """Decoded contest events in [from_block, to_block], in log order."""
        logs = await self._rpc(
            lambda: self.w3.eth.get_logs({
                "address": self.address,
                "fromBlock": from_block,
                "toBlock": to_block,
                "topics": [list(TOPIC_TO_EVENT.keys())],
            }),
            f"eth_getLogs({from_block}-{to_block})",
        )
        events = []
        for log in logs:
            event = self.decode_log(log)
            if event is not None:
                events.append(event)
        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events
