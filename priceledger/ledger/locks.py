"""Per-entity write serialization within one process.

Concurrent writes to the same entity queue behind one asyncio.Lock; writes
to different entities never contend. Cross-process safety comes from the
store's compare-and-swap on the entity version.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from priceledger.models import EntityRef


class EntityLocks:
    """Registry of asyncio locks keyed by entity, dropped when idle."""

    def __init__(self) -> None:
        self._locks: dict[EntityRef, asyncio.Lock] = {}
        self._waiters: dict[EntityRef, int] = {}

    @asynccontextmanager
    async def hold(self, ref: EntityRef) -> AsyncIterator[None]:
        """Hold the lock for `ref` for the duration of the block."""
        lock = self._locks.get(ref)
        if lock is None:
            lock = self._locks[ref] = asyncio.Lock()
        self._waiters[ref] = self._waiters.get(ref, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._waiters[ref] -= 1
            if self._waiters[ref] == 0:
                del self._waiters[ref]
                del self._locks[ref]

    def __len__(self) -> int:
        return len(self._locks)
