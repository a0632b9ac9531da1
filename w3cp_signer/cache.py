"""
In-memory attestation cache.

Holds the ``<cpId>::<did>`` keys this process has seen included in a
block. It is empty at startup and never evicts; a restart forgets every
key, there is no reconciliation against chain history.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Set


def attestation_key(cp_id: str, did: str) -> str:
    """Composite cache key for a (cpId, did) pair."""
    return f"{cp_id}::{did}"


class AttestationCache:
    """
    Append-only set of attested keys with per-key critical sections.

    ``exclusive(key)`` serializes every coroutine working on the same
    key, so a dedup check, the submission it guards, and the final
    ``add`` happen as one unit. Locks for idle keys are dropped.
    """

    def __init__(self):
        self._keys: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def contains(self, key: str) -> bool:
        return key in self._keys

    def add(self, key: str) -> None:
        self._keys.add(key)

    def __contains__(self, key: str) -> bool:
        return self.contains(key)

    def __len__(self) -> int:
        return len(self._keys)

    @asynccontextmanager
    async def exclusive(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def pending(self) -> int:
        """Number of keys with a lift in progress or queued."""
        return len(self._locks)
