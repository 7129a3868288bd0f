"""
Per-order advisory locks.

One asyncio.Lock per order id, created on demand, so the release timer and
the manual trigger for the same order run one at a time while different
orders proceed independently. A lock lives only while someone holds or
waits on it; the last holder out removes it.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class OrderLockRegistry:
    def __init__(self) -> None:
        # map order id -> asyncio.Lock
        self._locks: Dict[str, asyncio.Lock] = {}
        # holders plus waiters per order id
        self._users: Dict[str, int] = {}

    def _acquire_ref(self, order_id: str) -> asyncio.Lock:
        # no await between lookup and count
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        self._users[order_id] = self._users.get(order_id, 0) + 1
        return lock

    def _release_ref(self, order_id: str) -> None:
        remaining = self._users.get(order_id, 1) - 1
        if remaining > 0:
            self._users[order_id] = remaining
            return
        self._users.pop(order_id, None)
        self._locks.pop(order_id, None)

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[asyncio.Lock]:
        """Hold the order's lock for the duration of the block."""
        lock = self._acquire_ref(order_id)
        try:
            async with lock:
                yield lock
        finally:
            self._release_ref(order_id)

    def __len__(self) -> int:
        return len(self._locks)
