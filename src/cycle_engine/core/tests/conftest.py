"""
Core test fixtures.

The coordinator is exercised against mocked repositories, store, chain
gateway and projector; every collaborator is an AsyncMock so tests assert
on the calls the coordinator makes.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from cycle_engine.chain.gateway import BlockInfo, ChainEvent, OnChainCycle
from cycle_engine.core.coordinator import CoordinatorConfig, CycleCoordinator
from cycle_engine.core.states import CycleState
from cycle_engine.storage.models import ChainTransaction, Cycle, Slate, SlateFixture
from cycle_engine.utils.clock import FrozenClock

NOW = datetime(2025, 3, 14, 6, 0, tzinfo=timezone.utc)
FIRST_KICKOFF = NOW + timedelta(hours=6)
CLOSE_GRACE = timedelta(minutes=60)
SLATE_HASH = "0x" + "ab" * 32


def make_slate(cycle_id: int = 5, slate_hash: str = SLATE_HASH) -> Slate:
    fixtures = [
        SlateFixture(
            cycle_id=cycle_id,
            position=i,
            fixture_id=str(1000 + i),
            kickoff=FIRST_KICKOFF + timedelta(minutes=30 * i),
            home_odds=210,
            draw_odds=330,
            away_odds=195,
            over_odds=180,
            under_odds=200,
            odds_captured_at=NOW - timedelta(minutes=5),
        )
        for i in range(10)
    ]
    return Slate(cycle_id=cycle_id, slate_hash=slate_hash, created_at=NOW, fixtures=fixtures)


def make_cycle(state: CycleState = CycleState.PENDING, cycle_id: int = 5, **fields) -> Cycle:
    defaults = dict(
        selection_date=NOW.date(),
        open_time=NOW,
        close_time=FIRST_KICKOFF - CLOSE_GRACE,
        resolve_deadline=FIRST_KICKOFF - CLOSE_GRACE + timedelta(hours=36),
        slate_hash=SLATE_HASH,
    )
    defaults.update(fields)
    return Cycle(cycle_id=cycle_id, state=state, **defaults)


def make_tx(kind: str = "start", status: str = "submitted", cycle_id: int = 5, **fields) -> ChainTransaction:
    defaults = dict(
        tx_hash="0x" + ("11" if kind == "start" else "22") * 32,
        nonce=7,
        raw_tx=b"\x02signed",
        submitted_at=NOW,
    )
    defaults.update(fields)
    return ChainTransaction(cycle_id=cycle_id, kind=kind, status=status, **defaults)


def make_event(name: str, args: dict, tx_hash: str = "0x" + "11" * 32, block: int = 500) -> ChainEvent:
    return ChainEvent(
        name=name,
        args=args,
        tx_hash=tx_hash,
        log_index=0,
        block_number=block,
        block_hash="0x" + "cd" * 32,
    )


def onchain_cycle(cycle_id: int = 5, start_time: int = 0, end_time: int = 0, slip_count: int = 0,
                  is_resolved: bool = False, slate_hash: str = "0x" + "00" * 32) -> OnChainCycle:
    return OnChainCycle(
        cycle_id=cycle_id,
        start_time=start_time,
        end_time=end_time,
        slip_count=slip_count,
        is_resolved=is_resolved,
        slate_hash=slate_hash,
    )


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def cycle_factory():
    return make_cycle


@pytest.fixture
def tx_factory():
    return make_tx


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def onchain_factory():
    return onchain_cycle


@pytest.fixture
def slate():
    return make_slate()


@pytest.fixture
def mock_db():
    """Database whose transaction() yields a sentinel connection."""
    db = MagicMock()
    db.conn = MagicMock(name="conn")

    @asynccontextmanager
    async def transaction():
        yield db.conn

    db.transaction = transaction
    return db


@pytest.fixture
def mock_store(slate):
    store = MagicMock()
    store.get_slate = AsyncMock(return_value=slate)
    store.freeze_slate = AsyncMock(return_value=slate)
    store.results_for = AsyncMock(return_value={})
    store.open_conflicts = AsyncMock(return_value=[])
    store.fixtures = MagicMock()
    store.fixtures.get_many = AsyncMock(return_value={})
    return store


@pytest.fixture
def mock_gateway():
    gateway = MagicMock()
    gateway.current_cycle_id = AsyncMock(return_value=4)
    gateway.get_cycle = AsyncMock(return_value=onchain_cycle())
    gateway.is_cycle_resolved = AsyncMock(return_value=False)
    gateway.latest_block = AsyncMock(return_value=BlockInfo(number=1000, timestamp=int(NOW.timestamp())))
    gateway.submit_start = AsyncMock(return_value=make_tx("start"))
    gateway.submit_resolve = AsyncMock(return_value=make_tx("resolve"))
    gateway.receipt_events = AsyncMock(return_value=[])
    gateway.ensure_watched = MagicMock()
    gateway.revive = AsyncMock(side_effect=lambda tx: tx)
    gateway.nonce_used = AsyncMock(return_value=False)
    return gateway


@pytest.fixture
def mock_projector():
    projector = MagicMock()
    projector.slip_count = AsyncMock(return_value=0)
    projector.evaluate = AsyncMock(return_value=[])
    projector.flag_refunds = AsyncMock(return_value=0)
    return projector


@pytest.fixture
def mock_selector():
    selector = MagicMock()
    selector.select = AsyncMock()
    return selector


@pytest.fixture
def mock_alerts():
    return MagicMock()


@pytest.fixture
def coordinator(mock_db, mock_store, mock_selector, mock_gateway, mock_projector, mock_alerts, clock):
    coord = CycleCoordinator(
        mock_db,
        mock_store,
        mock_selector,
        mock_gateway,
        mock_projector,
        alerts=mock_alerts,
        config=CoordinatorConfig(close_grace=CLOSE_GRACE, results_probe_interval=60.0),
        clock=clock,
    )
    coord.cycles = AsyncMock()
    coord.txs = AsyncMock()
    coord.txs.latest_for = AsyncMock(return_value=None)
    coord.selection_runs = AsyncMock()
    return coord
