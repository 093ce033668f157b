"""
Chain bookkeeping repositories.

Handles:
- chain_transactions: signed mutating transactions and their status
- chain_cursor: last fully processed block per event consumer
- processed_events: (consumer, tx_hash, log_index) idempotency keys
"""
from __future__ import annotations

from typing import Optional

from cycle_engine.storage.models import ChainCursor, ChainTransaction
from cycle_engine.storage.repositories.base import BaseRepository

OPEN_TX_STATUSES = ("submitted", "pending")


class ChainTransactionRepository(BaseRepository[ChainTransaction]):
    """
    Durable record of every broadcast transaction.

    The row is written BEFORE the raw transaction is broadcast, so a crash
    between sign and send leaves a row the watcher can re-broadcast.
    """

    table_name = "chain_transactions"
    model_class = ChainTransaction

    async def record(self, tx: ChainTransaction) -> ChainTransaction:
        query = """
            INSERT INTO chain_transactions
            (tx_hash, cycle_id, kind, nonce, raw_tx, status, max_priority_fee, max_fee,
             submitted_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (tx_hash) DO UPDATE SET updated_at = NOW()
            RETURNING *
        """
        record = await self.db.fetchrow(
            query,
            tx.tx_hash,
            tx.cycle_id,
            tx.kind,
            tx.nonce,
            tx.raw_tx,
            tx.status,
            tx.max_priority_fee,
            tx.max_fee,
            tx.submitted_at,
        )
        return self._record_to_model(record)

    async def get(self, tx_hash: str) -> Optional[ChainTransaction]:
        record = await self.db.fetchrow(
            "SELECT * FROM chain_transactions WHERE tx_hash = $1", tx_hash
        )
        return self._record_to_model(record)

    async def update_status(
        self,
        tx_hash: str,
        status: str,
        block_number: Optional[int] = None,
        block_hash: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        await self.db.execute(
            """
            UPDATE chain_transactions
            SET status = $2, block_number = $3, block_hash = $4,
                error = COALESCE($5, error), updated_at = NOW()
            WHERE tx_hash = $1
            """,
            tx_hash,
            status,
            block_number,
            block_hash,
            error,
        )

    async def latest_for(self, cycle_id: int, kind: str) -> Optional[ChainTransaction]:
        """
        The transaction that currently represents (cycle, kind).

        Replaced rows (fee bumps) are skipped so the newest live attempt or
        the final outcome is returned.
        """
        record = await self.db.fetchrow(
            """
            SELECT * FROM chain_transactions
            WHERE cycle_id = $1 AND kind = $2 AND status <> 'replaced'
            ORDER BY submitted_at DESC, nonce DESC
            LIMIT 1
            """,
            cycle_id,
            kind,
        )
        return self._record_to_model(record)

    async def open_transactions(self) -> list[ChainTransaction]:
        """Transactions not yet final; resumed by watchers at startup."""
        records = await self.db.fetch(
            """
            SELECT * FROM chain_transactions
            WHERE status = ANY($1::text[])
            ORDER BY nonce, submitted_at
            """,
            list(OPEN_TX_STATUSES),
        )
        return self._records_to_models(records)


class ChainCursorRepository(BaseRepository[ChainCursor]):
    """Per-consumer replay point for event subscription."""

    table_name = "chain_cursor"
    model_class = ChainCursor

    async def get_block(self, consumer: str) -> Optional[int]:
        return await self.db.fetchval(
            "SELECT last_block FROM chain_cursor WHERE consumer = $1", consumer
        )

    async def advance(self, consumer: str, block: int, conn=None) -> None:
        """Move the cursor forward. Never moves it back."""
        await self._executor(conn).execute(
            """
            INSERT INTO chain_cursor (consumer, last_block, updated_at)
            VALUES ($1, $2, NOW())
            ON CONFLICT (consumer) DO UPDATE
            SET last_block = GREATEST(chain_cursor.last_block, $2),
                updated_at = NOW()
            """,
            consumer,
            block,
        )


class ProcessedEventRepository:
    """Idempotency keys for delivered logs."""

    def __init__(self, db) -> None:
        self.db = db

    async def mark(
        self, consumer: str, tx_hash: str, log_index: int, block_number: int, event_name: str, conn
    ) -> bool:
        """Record a delivery. Returns False if it was already processed."""
        record = await conn.fetchrow(
            """
            INSERT INTO processed_events (consumer, tx_hash, log_index, block_number, event_name)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (consumer, tx_hash, log_index) DO NOTHING
            RETURNING 1
            """,
            consumer,
            tx_hash,
            log_index,
            block_number,
            event_name,
        )
        return record is not None

    async def count(self, consumer: str) -> int:
        return await self.db.fetchval(
            "SELECT COUNT(*) FROM processed_events WHERE consumer = $1", consumer
        )
