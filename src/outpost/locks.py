"""Per-entity asyncio locks.

One lock per key, created on first use and kept for the life of the
registry, so every waiter on a key queues on the same lock object. Work on different keys never
contends; work on the same key is serialized.
"""

from __future__ import annotations

import asyncio


class KeyedLocks:
    """Registry of asyncio locks keyed by entity id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
