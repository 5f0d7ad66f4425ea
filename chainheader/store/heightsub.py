"""Waiting for the header of a given height to become available."""

from __future__ import annotations

import asyncio
import threading

__all__ = ["ElapsedHeightError", "HeightSub"]


class ElapsedHeightError(Exception):
    """The requested height was already published; look the header up elsewhere."""

    def __init__(self, height: int) -> None:
        self.height = height
        super().__init__(f"elapsed height: {height}")


def _set_if_pending(future: asyncio.Future, header) -> None:
    if not future.done():
        future.set_result(header)


def _deliver(future: asyncio.Future, header) -> None:
    if future.done():
        return
    loop = future.get_loop()
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        future.set_result(header)
    else:
        loop.call_soon_threadsafe(_set_if_pending, future, header)


class HeightSub:
    """Tracks the latest available height and wakes waiters for new heights."""

    def __init__(self) -> None:
        self._height = 0
        self._lock = threading.Lock()
        self._requests: dict[int, list[asyncio.Future]] = {}

    @property
    def height(self) -> int:
        """Latest locally available, verified header height."""
        return self._height

    @height.setter
    def height(self, value: int) -> None:
        self._height = value

    async def sub(self, height: int):
        """Wait for the header at ``height``.

        Raises ElapsedHeightError if that height was already published.
        """
        if self._height >= height:
            raise ElapsedHeightError(height)

        loop = asyncio.get_running_loop()
        with self._lock:
            # The height may have moved while waiting for the lock.
            if self._height >= height:
                raise ElapsedHeightError(height)
            future = loop.create_future()
            self._requests.setdefault(height, []).append(future)

        try:
            return await future
        except asyncio.CancelledError:
            with self._lock:
                waiters = self._requests.get(height)
                if waiters and future in waiters:
                    waiters.remove(future)
                    if not waiters:
                        del self._requests[height]
            raise

    def pub(self, *headers) -> None:
        """Fulfil every outstanding request matching ``headers``.

        The headers must continue directly from the current height, unless the
        height is still zero. Must be called from one producer only.
        """
        if not headers:
            return

        current = self._height
        first, last = headers[0].height, headers[-1].height
        if current != 0 and current + 1 != first:
            raise RuntimeError(
                "headers given to the height subscription are in the wrong order: "
                f"expected {current + 1}, got {first}"
            )
        self._height = last

        with self._lock:
            if len(headers) == 1:
                for future in self._requests.pop(first, []):
                    _deliver(future, headers[0])
                return

            # Fewer requests than headers is the common case, so scan requests.
            matching = [h for h in self._requests if first <= h <= last]
            for height in matching:
                header = headers[height - first]
                for future in self._requests.pop(height):
                    _deliver(future, header)