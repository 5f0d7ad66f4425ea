"""Cached mapping from header height to header hash."""

from __future__ import annotations

import threading

from cachetools import LRUCache

from chainheader.store.datastore import height_key

__all__ = ["HeightIndexer"]


class HeightIndexer:
    """Stores height-to-hash pairs and caches lookups."""

    def __init__(self, datastore, index_cache_size: int) -> None:
        if index_cache_size <= 0:
            raise ValueError("index cache size must be positive")
        self._datastore = datastore
        self._lock = threading.Lock()
        self._cache: LRUCache = LRUCache(maxsize=index_cache_size)

    def hash_by_height(self, height: int) -> bytes:
        """Return the hash of the header at ``height``; raise KeyError if unknown."""
        with self._lock:
            cached = self._cache.get(height)
        if cached is not None:
            return cached

        value = self._datastore.get(height_key(height))
        with self._lock:
            self._cache[height] = value
        return value

    def index_to(self, batch, *headers) -> None:
        """Queue height-to-hash pairs of ``headers`` into ``batch``."""
        for header in headers:
            batch.put(height_key(header.height), bytes(header.hash))

    def purge(self) -> None:
        """Drop every cached entry."""
        with self._lock:
            self._cache.clear()