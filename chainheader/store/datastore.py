"""Minimal key-value datastore with namespaces, batches and store keys."""

from __future__ import annotations

import posixpath
import threading
from dataclasses import dataclass
from typing import Callable, Mapping, Union

__all__ = [
    "HEAD_KEY",
    "DatastoreBatch",
    "Key",
    "MapDatastore",
    "NamespacedDatastore",
    "header_key",
    "height_key",
]


@dataclass(frozen=True)
class Key:
    """A slash-separated, cleaned datastore key that always starts with '/'."""

    path: str

    def __post_init__(self) -> None:
        cleaned = posixpath.normpath("/" + self.path.lstrip("/"))
        object.__setattr__(self, "path", cleaned)

    def child(self, other: "Key") -> "Key":
        """Return ``other`` nested under this key."""
        return Key(f"{self.path}/{other.path}")

    def __str__(self) -> str:
        return self.path


KeyLike = Union[Key, str]


def _as_key(key: KeyLike) -> Key:
    return key if isinstance(key, Key) else Key(key)


class DatastoreBatch:
    """Collects writes and applies them together on commit."""

    def __init__(self, write: Callable[[Mapping[Key, bytes]], None]) -> None:
        self._write = write
        self._lock = threading.Lock()
        self._pending: dict[Key, bytes] = {}

    def put(self, key: KeyLike, value: bytes) -> None:
        """Queue ``value`` under ``key``; later puts to the same key win."""
        with self._lock:
            self._pending[_as_key(key)] = bytes(value)

    def commit(self) -> None:
        """Write every queued entry and empty the batch."""
        with self._lock:
            items, self._pending = self._pending, {}
        if items:
            self._write(items)


class MapDatastore:
    """Thread-safe in-memory datastore."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[Key, bytes] = {}

    def get(self, key: KeyLike) -> bytes:
        """Return the value under ``key``; raise KeyError if there is none."""
        key = _as_key(key)
        with self._lock:
            try:
                return self._data[key]
            except KeyError:
                raise KeyError(str(key)) from None

    def put(self, key: KeyLike, value: bytes) -> None:
        with self._lock:
            self._data[_as_key(key)] = bytes(value)

    def has(self, key: KeyLike) -> bool:
        with self._lock:
            return _as_key(key) in self._data

    def batch(self) -> DatastoreBatch:
        return DatastoreBatch(self._write_all)

    def _write_all(self, items: Mapping[Key, bytes]) -> None:
        with self._lock:
            self._data.update(items)


class NamespacedDatastore:
    """A view of another datastore with every key placed under ``prefix``."""

    def __init__(self, inner, prefix: KeyLike) -> None:
        self._inner = inner
        self.prefix = _as_key(prefix)

    def _wrap(self, key: KeyLike) -> Key:
        return self.prefix.child(_as_key(key))

    def get(self, key: KeyLike) -> bytes:
        try:
            return self._inner.get(self._wrap(key))
        except KeyError:
            raise KeyError(str(_as_key(key))) from None

    def put(self, key: KeyLike, value: bytes) -> None:
        self._inner.put(self._wrap(key), value)

    def has(self, key: KeyLike) -> bool:
        return self._inner.has(self._wrap(key))

    def batch(self) -> DatastoreBatch:
        return DatastoreBatch(self._write_all)

    def _write_all(self, items: Mapping[Key, bytes]) -> None:
        inner_batch = self._inner.batch()
        for key, value in items.items():
            inner_batch.put(self._wrap(key), value)
        inner_batch.commit()


HEAD_KEY = Key("head")


def height_key(height: int) -> Key:
    """Key under which the hash of the header at ``height`` is kept."""
    return Key(str(int(height)))


def header_key(header) -> Key:
    """Key under which ``header`` itself is kept."""
    return Key(bytes(header.hash).hex().upper())