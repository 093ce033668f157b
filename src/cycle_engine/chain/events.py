"""
Event subscription by eth_getLogs polling.

Each poll walks from the consumer's cursor to ``head - K`` in block
batches. Every log is handled in its own database transaction together
with its (consumer, tx_hash, log_index) idempotency key, so a replay after
a crash skips what was already applied. The cursor moves only after the
whole batch was handled; a handler failure leaves it in place and the
batch is retried on the next poll.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from cycle_engine.storage.database import Database
from cycle_engine.storage.repositories import ChainCursorRepository, ProcessedEventRepository

from .gateway import ChainEvent, ChainGateway

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChainEvent, object], Awaitable[None]]


class EventSubscriber:
    """Polls contest logs and dispatches them to registered handlers."""

    def __init__(
        self,
        gateway: ChainGateway,
        db: Database,
        consumer: str = "contest",
        depth: int = 12,
        batch_size: int = 2000,
        start_block: int = 0,
    ):
        self.gateway = gateway
        self.db = db
        self.consumer = consumer
        self.depth = depth
        self.batch_size = batch_size
        self.start_block = start_block
        self.cursors = ChainCursorRepository(db)
        self.processed = ProcessedEventRepository(db)
        self._handlers: dict[str, list[EventHandler]] = {}

    def on(self, event_name: str, handler: EventHandler) -> None:
        """Register ``handler(event, conn)`` for an event name."""
        self._handlers.setdefault(event_name, []).append(handler)

    async def cursor_block(self) -> Optional[int]:
        return await self.cursors.get_block(self.consumer)

    async def poll_once(self) -> int:
        """Process every safe block past the cursor. Returns events handled."""
        head = await self.gateway.block_number()
        safe_head = head - self.depth
        cursor = await self.cursors.get_block(self.consumer)
        if cursor is None:
            cursor = self.start_block - 1
        if safe_head <= cursor:
            return 0

        handled = 0
        from_block = cursor + 1
        while from_block <= safe_head:
            to_block = min(from_block + self.batch_size - 1, safe_head)
            events = await self.gateway.get_events(from_block, to_block)
            for event in events:
                if await self.dispatch(event):
                    handled += 1
            await self.cursors.advance(self.consumer, to_block)
            logger.debug(
                f"{self.consumer}: blocks {from_block}-{to_block} done ({len(events)} events)"
            )
            from_block = to_block + 1

        if handled:
            logger.info(f"{self.consumer}: handled {handled} new event(s) up to block {safe_head}")
        return handled

    async def dispatch(self, event: ChainEvent) -> bool:
        """Apply one event exactly once. Returns False for a duplicate delivery."""
        handlers = self._handlers.get(event.name, [])
        async with self.db.transaction() as conn:
            fresh = await self.processed.mark(
                self.consumer, event.tx_hash, event.log_index, event.block_number, event.name, conn
            )
            if not fresh:
                logger.debug(f"Skipping duplicate {event.name} {event.tx_hash}:{event.log_index}")
                return False
            for handler in handlers:
                await handler(event, conn)
        return True
