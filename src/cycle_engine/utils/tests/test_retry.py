"""
Tests for retry backoff and clocks.
"""
import asyncio
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from cycle_engine.errors import TransientNetworkError
from cycle_engine.utils.clock import FrozenClock, ensure_utc
from cycle_engine.utils.retry import RetryBudgetExhausted, RetryPolicy, is_transient, retry_async


class TestRetryPolicy:
    def test_exponential_and_capped(self):
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=0)

        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_band(self):
        policy = RetryPolicy(initial_delay=10.0, jitter=0.25)
        rng = random.Random(1)

        for _ in range(50):
            assert 7.5 <= policy.delay_for(1, rng) <= 12.5


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_transient_then_success(self):
        op = AsyncMock(side_effect=[TransientNetworkError("reset"), "ok"])
        sleep = AsyncMock()

        result = await retry_async(op, RetryPolicy(jitter=0), name="fetch", sleep=sleep)

        assert result == "ok"
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_budget_exhausted(self):
        op = AsyncMock(side_effect=TransientNetworkError("reset"))

        with pytest.raises(RetryBudgetExhausted) as exc:
            await retry_async(op, RetryPolicy(max_attempts=3), name="fetch", sleep=AsyncMock())

        assert exc.value.attempts == 3
        assert op.await_count == 3
        assert isinstance(exc.value.last_error, TransientNetworkError)

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        op = AsyncMock(side_effect=ValueError("bad payload"))

        with pytest.raises(ValueError):
            await retry_async(op, RetryPolicy(), sleep=AsyncMock())

        assert op.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_overrides_classification(self):
        op = AsyncMock(side_effect=[KeyError("x"), 5])

        assert await retry_async(op, RetryPolicy(), retry_on=(KeyError,), sleep=AsyncMock()) == 5

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        op = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await retry_async(op, RetryPolicy(), sleep=AsyncMock())

    def test_builtin_transients(self):
        assert is_transient(asyncio.TimeoutError())
        assert is_transient(ConnectionResetError())
        assert not is_transient(RuntimeError())


class TestClock:
    def test_frozen_clock(self):
        clock = FrozenClock(datetime(2025, 3, 14, 6, 0))

        assert clock().tzinfo == timezone.utc
        assert clock.advance(minutes=90) == datetime(2025, 3, 14, 7, 30, tzinfo=timezone.utc)

    def test_ensure_utc_converts(self):
        cet = timezone(timedelta(hours=1))

        assert ensure_utc(datetime(2025, 3, 14, 7, 0, tzinfo=cet)) == datetime(2025, 3, 14, 6, 0, tzinfo=timezone.utc)
