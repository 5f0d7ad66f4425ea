"""Cache of verified headers kept as ascending, non-adjacent ranges."""

from __future__ import annotations

import logging
import threading
from typing import Iterator

__all__ = ["HeaderRange", "Ranges"]

log = logging.getLogger(__name__)


class HeaderRange:
    """An adjacent run of headers starting at ``start``."""

    def __init__(self, header) -> None:
        self._lock = threading.Lock()
        self.start: int = header.height
        self._headers = [header]

    def __len__(self) -> int:
        with self._lock:
            return len(self._headers)

    def append(self, *headers) -> None:
        """Append headers to the end of the range."""
        with self._lock:
            self._headers.extend(headers)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._headers

    def head(self):
        """Return the highest header of the range, or None."""
        with self._lock:
            return self._headers[-1] if self._headers else None

    def get(self, end: int) -> list:
        """Return the headers of the range up to and including height ``end``."""
        with self._lock:
            return self._headers[: self._amount(end)]

    def remove(self, end: int) -> None:
        """Drop the headers of the range up to and including height ``end``."""
        with self._lock:
            self._headers = self._headers[self._amount(end):]
            if self._headers:
                self.start = self._headers[0].height

    def _amount(self, end: int) -> int:
        if self.start > end:
            return 0
        amount = len(self._headers)
        if self.start + amount >= end:
            amount = end - self.start + 1  # include 'end' itself
        return amount


class Ranges:
    """Non-overlapping, non-adjacent header ranges in ascending order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ranges: list[HeaderRange] = []

    def __iter__(self) -> Iterator[HeaderRange]:
        with self._lock:
            snapshot = list(self._ranges)
        return iter(snapshot)

    def head(self):
        """Return the highest header over all ranges, or None."""
        with self._lock:
            return self._head()

    def _head(self):
        return self._ranges[-1].head() if self._ranges else None

    def add(self, header) -> None:
        """Extend the last range with ``header`` or start a new range."""
        with self._lock:
            head = self._head()
            if head is not None and head.height >= header.height:
                log.warning("received headers in wrong order")
                return
            if head is not None and header.height == head.height + 1:
                self._ranges[-1].append(header)
            else:
                # Headers may be missed from gossip; a gap starts a new range.
                self._ranges.append(HeaderRange(header))

    def first(self) -> HeaderRange | None:
        """Return the first non-empty range, discarding empty ones before it."""
        with self._lock:
            while self._ranges:
                candidate = self._ranges[0]
                if not candidate.is_empty():
                    return candidate
                self._ranges.pop(0)
            return None