"""Tests for the query embedding cache."""

from __future__ import annotations

import pytest

from helpdesk_retrieval.gateway.domain import EmbeddingResult
from helpdesk_retrieval.knowledge.domain import EmbeddingCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _result(value: float) -> EmbeddingResult:
    return EmbeddingResult(vector=[value] * 4, tokens_in=1, model="m", backend_name="b")


@pytest.mark.asyncio
async def test_entry_expires_after_ttl():
    clock = FakeClock()
    cache = EmbeddingCache(ttl_seconds=300, max_size=10, clock=clock)
    await cache.put("pump", _result(1.0))

    clock.now += 299
    assert (await cache.get("pump")).vector == [1.0] * 4

    clock.now += 1
    assert await cache.get("pump") is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_full_cache_evicts_oldest_insert():
    cache = EmbeddingCache(ttl_seconds=300, max_size=2, clock=FakeClock())
    await cache.put("a", _result(1.0))
    await cache.put("b", _result(2.0))
    await cache.get("a")

    await cache.put("c", _result(3.0))

    assert await cache.get("a") is None
    assert await cache.get("b") is not None
    assert await cache.get("c") is not None


@pytest.mark.asyncio
async def test_expired_entries_are_pruned_before_eviction():
    clock = FakeClock()
    cache = EmbeddingCache(ttl_seconds=60, max_size=2, clock=clock)
    await cache.put("old", _result(1.0))
    clock.now += 30
    await cache.put("fresh", _result(2.0))
    clock.now += 40

    await cache.put("new", _result(3.0))

    assert await cache.get("fresh") is not None
    assert await cache.get("new") is not None
    assert len(cache) == 2


@pytest.mark.asyncio
async def test_reput_refreshes_entry_and_clear_empties():
    clock = FakeClock()
    cache = EmbeddingCache(ttl_seconds=60, max_size=5, clock=clock)
    await cache.put("q", _result(1.0))
    clock.now += 50
    await cache.put("q", _result(2.0))
    clock.now += 50

    assert (await cache.get("q")).vector == [2.0] * 4
    assert cache.stats() == {"size": 1, "max_size": 5, "ttl_seconds": 60}

    await cache.clear()
    assert len(cache) == 0


def test_max_size_must_be_positive():
    with pytest.raises(ValueError):
        EmbeddingCache(max_size=0)
