"""Store wrapper keeping the head consistent with appends."""

from __future__ import annotations

import threading

__all__ = ["SyncStore"]


class SyncStore:
    """Wraps a store so that ``head`` always reflects the last ``append``.

    Useful for stores whose ``head`` lags behind ``append``.
    """

    def __init__(self, store) -> None:
        self.store = store
        self._lock = threading.Lock()
        self._head = None

    async def head(self):
        """Return the latest appended head, loading it from the store once."""
        with self._lock:
            cached = self._head
        if cached is not None:
            return cached
        head = await self.store.head()
        with self._lock:
            self._head = head
        return head

    async def append(self, *headers) -> None:
        """Append ``headers`` to the store and remember the last as head."""
        await self.store.append(*headers)
        if headers:
            with self._lock:
                self._head = headers[-1]

    async def get_by_height(self, height: int):
        """Return the header at ``height`` from the wrapped store."""
        return await self.store.get_by_height(height)