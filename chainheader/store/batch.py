"""Adjacent run of headers waiting to be written to the datastore."""

from __future__ import annotations

import threading

__all__ = ["PendingBatch"]


class PendingBatch:
    """Keeps an adjacent range of headers indexed by height and by hash."""

    def __init__(self, size: int = 0) -> None:
        self.size = size
        self._lock = threading.Lock()
        self._heights: dict[bytes, int] = {}
        self._headers: list = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._headers)

    def get_all(self) -> list:
        """Return all headers in the batch, lowest first."""
        with self._lock:
            return list(self._headers)

    def get(self, hash: bytes):
        """Return the header with ``hash``, or None."""
        with self._lock:
            height = self._heights.get(bytes(hash))
            if height is None:
                return None
            return self._get_by_height(height)

    def get_by_height(self, height: int):
        """Return the header at ``height``, or None."""
        with self._lock:
            return self._get_by_height(height)

    def _get_by_height(self, height: int):
        if not self._headers:
            return None
        head = self._headers[-1].height
        base = head - len(self._headers)
        if height > head or height <= base:
            return None
        return self._headers[height - base - 1]

    def append(self, *headers) -> None:
        """Append headers to the batch."""
        with self._lock:
            for header in headers:
                self._headers.append(header)
                self._heights[bytes(header.hash)] = header.height

    def has(self, hash: bytes) -> bool:
        with self._lock:
            return bytes(hash) in self._heights

    def reset(self) -> None:
        """Drop every header from the batch."""
        with self._lock:
            self._headers.clear()
            self._heights.clear()