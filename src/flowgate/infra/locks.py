"""Keyed asyncio locks.

Two flavours are needed by the facade and the ledger:

- ``acquire_nowait``: fail fast when another coroutine already holds the
  key. Used for upstream writes per connection so a second toggle is told
  about the conflict instead of queueing behind the first.
- ``hold``: wait for the key. Used to linearize credit writes per tenant.

Locks live in-process and are reference counted: an entry is dropped as
soon as no coroutine holds or waits on it.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class LockBusy(Exception):
    """Raised by ``acquire_nowait`` when the key is already held."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Lock '{key}' is held by another operation")
        self.key = key


class KeyedMutex:
    """A registry of ``asyncio.Lock`` objects indexed by string key."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        self._refs[key] -= 1
        if self._refs[key] == 0:
            del self._refs[key]
            del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def acquire_nowait(self, key: str) -> AsyncIterator[None]:
        """Hold *key* or raise ``LockBusy`` immediately."""
        if self.locked(key):
            raise LockBusy(key)
        lock = self._checkout(key)
        try:
            # Uncontended acquire completes without yielding to the loop,
            # so nothing can slip in between the check above and here.
            await lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Wait for and hold *key*."""
        lock = self._checkout(key)
        try:
            async with lock:
                yield
        finally:
            self._checkin(key)
