"""
Tests for the event subscriber: batching up to the safe head, idempotent
delivery and cursor handling on failure.
"""
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from cycle_engine.chain.events import EventSubscriber
from cycle_engine.chain.gateway import ChainEvent
from cycle_engine.projection.projector import Projector


class FakeConn:
    """Connection emulating the processed_events unique key."""

    def __init__(self):
        self.seen = set()

    async def fetchrow(self, query, consumer, tx_hash, log_index, block_number, event_name):
        key = (consumer, tx_hash, log_index)
        if key in self.seen:
            return None
        self.seen.add(key)
        return {"?column?": 1}


def slip_placed(log_index=0, tx_hash="0x" + "55" * 32, block=150):
    return ChainEvent(
        name="SlipPlaced",
        args={"cycleId": 5, "slipId": 1, "player": "0x" + "ab" * 20},
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block,
        block_hash="0x" + "cd" * 32,
    )


@pytest.fixture
def conn():
    return FakeConn()


@pytest.fixture
def db(conn):
    db = MagicMock()

    @asynccontextmanager
    async def transaction():
        yield conn

    db.transaction = transaction
    return db


@pytest.fixture
def gateway():
    gateway = MagicMock()
    gateway.block_number = AsyncMock(return_value=1012)
    gateway.get_events = AsyncMock(return_value=[])
    return gateway


@pytest.fixture
def subscriber(gateway, db):
    sub = EventSubscriber(gateway, db, consumer="contest", depth=12, batch_size=500)
    sub.cursors = MagicMock()
    sub.cursors.get_block = AsyncMock(return_value=99)
    sub.cursors.advance = AsyncMock()
    return sub


class TestPolling:
    @pytest.mark.asyncio
    async def test_walks_batches_up_to_safe_head(self, subscriber, gateway):
        await subscriber.poll_once()

        ranges = [c.args for c in gateway.get_events.await_args_list]
        assert ranges == [(100, 599), (600, 1000)]
        advanced = [c.args[1] for c in subscriber.cursors.advance.await_args_list]
        assert advanced == [599, 1000]

    @pytest.mark.asyncio
    async def test_nothing_to_do_at_safe_head(self, subscriber, gateway):
        subscriber.cursors.get_block.return_value = 1000

        assert await subscriber.poll_once() == 0
        gateway.get_events.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_first_run_starts_at_start_block(self, subscriber, gateway):
        subscriber.cursors.get_block.return_value = None
        subscriber.start_block = 900

        await subscriber.poll_once()

        assert gateway.get_events.await_args_list[0].args == (900, 1000)


class TestDelivery:
    @pytest.mark.asyncio
    async def test_each_log_applied_once(self, subscriber, gateway):
        """A replayed batch after a crash does not re-apply its events."""
        handler = AsyncMock()
        subscriber.on("SlipPlaced", handler)
        gateway.get_events.return_value = [slip_placed(0), slip_placed(1)]
        subscriber.batch_size = 10_000

        first = await subscriber.poll_once()
        second = await subscriber.poll_once()

        assert first == 2
        assert second == 0
        assert handler.await_count == 2

    @pytest.mark.asyncio
    async def test_handler_receives_transaction_connection(self, subscriber, conn):
        handler = AsyncMock()
        subscriber.on("SlipPlaced", handler)

        assert await subscriber.dispatch(slip_placed()) is True

        handler.assert_awaited_once()
        assert handler.call_args.args[1] is conn

    @pytest.mark.asyncio
    async def test_handler_failure_keeps_cursor(self, subscriber, gateway):
        subscriber.on("SlipPlaced", AsyncMock(side_effect=RuntimeError("projection failed")))
        gateway.get_events.return_value = [slip_placed()]

        with pytest.raises(RuntimeError):
            await subscriber.poll_once()

        subscriber.cursors.advance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unhandled_event_is_still_marked(self, subscriber, conn):
        event = slip_placed()

        assert await subscriber.dispatch(event) is True
        assert ("contest", event.tx_hash, event.log_index) in conn.seen

    @pytest.mark.asyncio
    async def test_malformed_slip_is_consumed_and_cursor_advances(self, subscriber, gateway, db, conn):
        projector = Projector(db, MagicMock(), block_timestamp=AsyncMock(return_value=0), alerts=MagicMock())
        projector.slips = MagicMock()
        projector.slips.insert = AsyncMock()
        projector.register(subscriber)
        event = slip_placed()
        event.args["predictions"] = [(1000 + i, 0, 0, 210) for i in range(10)]
        gateway.get_events.return_value = [event]

        assert await subscriber.poll_once() == 1

        assert ("contest", event.tx_hash, event.log_index) in conn.seen
        assert [c.args[1] for c in subscriber.cursors.advance.await_args_list] == [599, 1000]
        projector.slips.insert.assert_not_awaited()
        projector.alerts.alert_rejected_event.assert_called_once()
