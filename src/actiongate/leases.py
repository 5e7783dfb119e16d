"""Process-local per-action leases.

A lease guarantees that one action is never processed by two concurrent
invocations in this process. Unlike a plain lock, a second caller does not
queue behind the first: it fails fast with :class:`ActionBusyError`.
Cross-process exclusivity comes from the store's compare-and-set writes.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from actiongate.errors import ActionBusyError


class ActionLeases:
    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, action_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(action_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[action_id] = lock
        return lock

    def is_held(self, action_id: uuid.UUID) -> bool:
        lock = self._locks.get(action_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, action_id: uuid.UUID) -> AsyncIterator[None]:
        """Hold the lease for *action_id* or raise ActionBusyError immediately."""
        lock = self._lock_for(action_id)
        if lock.locked():
            raise ActionBusyError(f"Action {action_id} is already being processed")
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
