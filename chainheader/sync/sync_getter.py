"""Getter wrapper letting only one head request run at a time."""

from __future__ import annotations

import asyncio
from typing import Optional

__all__ = ["SyncGetter"]


class SyncGetter:
    """Wraps a getter so that only one caller requests the head at a time.

    ``lock`` returns True to the single caller that gets the lock; every other
    caller waits until it is released and gets False, needing no unlock.
    """

    def __init__(self, getter) -> None:
        self.getter = getter
        self._held = False
        self._released: Optional[asyncio.Event] = None

    async def lock(self) -> bool:
        """Take the lock, or wait for its holder to release it and return False."""
        if not self._held:
            self._held = True
            self._released = asyncio.Event()
            return True
        released = self._released
        await released.wait()
        return False

    def unlock(self) -> None:
        """Release the lock taken by ``lock``."""
        self._check_lock("unlock without preceding lock on SyncGetter")
        self._held = False
        released, self._released = self._released, None
        released.set()

    async def head(self, trusted_head=None):
        """Request the head from the wrapped getter; the lock must be held."""
        self._check_lock("head without preceding lock on SyncGetter")
        if trusted_head is None:
            return await self.getter.head()
        return await self.getter.head(trusted_head=trusted_head)

    async def get_verified_range(self, start, amount: int) -> list:
        """Request ``amount`` headers above ``start``, verified against it."""
        return await self.getter.get_verified_range(start, amount)

    def _check_lock(self, message: str) -> None:
        if not self._held:
            raise RuntimeError(message)