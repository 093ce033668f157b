"""
Tests for the contract read cache.
"""
from unittest.mock import AsyncMock

import pytest

from cycle_engine.chain.cache import ReadCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ReadCache(ttl=3.0, bypass_window=15.0, clock=clock)


class TestReadCache:
    @pytest.mark.asyncio
    async def test_hit_within_ttl(self, cache, clock):
        loader = AsyncMock(return_value=42)

        assert await cache.get_or_load("cycle", loader) == 42
        clock.now += 2.0
        assert await cache.get_or_load("cycle", loader) == 42

        assert loader.await_count == 1
        assert cache.hits == 1
        assert cache.misses == 1

    @pytest.mark.asyncio
    async def test_expires_after_ttl(self, cache, clock):
        loader = AsyncMock(side_effect=[1, 2])

        await cache.get_or_load("cycle", loader)
        clock.now += 3.5

        assert await cache.get_or_load("cycle", loader) == 2

    @pytest.mark.asyncio
    async def test_submission_bypasses_cache(self, cache, clock):
        """Reads right after our own write always go to the node."""
        loader = AsyncMock(side_effect=[1, 2, 3, 4])
        await cache.get_or_load("cycle", loader)

        cache.note_submission()
        assert cache.bypassing
        assert await cache.get_or_load("cycle", loader) == 2
        assert await cache.get_or_load("cycle", loader) == 3

        clock.now += 16.0
        assert not cache.bypassing
        assert await cache.get_or_load("cycle", loader) == 4
        assert await cache.get_or_load("cycle", loader) == 4

    def test_zero_ttl_disables_cache(self, clock):
        cache = ReadCache(ttl=0, clock=clock)
        cache.put("k", "v")

        assert cache.get("k") == (False, None)
