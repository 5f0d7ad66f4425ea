"""Counters kept by the syncer."""

from __future__ import annotations

import threading

__all__ = ["METRIC_NAME", "Metrics"]

METRIC_NAME = "total_synced_headers"


class Metrics:
    """Thread-safe count of the headers the syncer has stored."""

    name = METRIC_NAME
    description = "total synced headers"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_synced = 0

    @property
    def total_synced(self) -> int:
        """Number of headers synced so far."""
        with self._lock:
            return self._total_synced

    def record_total_synced(self, count: int) -> None:
        """Add ``count`` synced headers to the total."""
        with self._lock:
            self._total_synced += int(count)

    def observe(self) -> dict[str, float]:
        """Return the current gauge reading keyed by metric name."""
        return {self.name: float(self.total_synced)}