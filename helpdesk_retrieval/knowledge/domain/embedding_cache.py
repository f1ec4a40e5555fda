"""
Query Embedding Cache
=====================

Short-lived cache of query text -> embedding result (vector, backend,
model, input tokens).

Bounded by size and age. When full, expired entries are pruned first; if
still full, the oldest inserted entry is evicted (FIFO). The clock is
injectable so tests can move time forward.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional, Tuple

from helpdesk_retrieval.gateway.domain import EmbeddingResult


class EmbeddingCache:
    """In-process TTL + FIFO cache owned by one knowledge store instance."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_size: int = 200,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[EmbeddingResult, float]]" = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, stored_at: float, now: float) -> bool:
        return now - stored_at >= self._ttl

    async def get(self, key: str) -> Optional[EmbeddingResult]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            result, stored_at = entry
            if self._expired(stored_at, self._clock()):
                del self._entries[key]
                return None
            return result

    async def put(self, key: str, result: EmbeddingResult) -> None:
        async with self._lock:
            now = self._clock()
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self._max_size:
                self._prune_expired(now)
                while len(self._entries) >= self._max_size:
                    self._entries.popitem(last=False)
            self._entries[key] = (result, now)

    def _prune_expired(self, now: float) -> None:
        for key in [k for k, (_, stored_at) in self._entries.items() if self._expired(stored_at, now)]:
            del self._entries[key]

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, float]:
        return {
            "size": len(self._entries),
            "max_size": self._max_size,
            "ttl_seconds": self._ttl,
        }
