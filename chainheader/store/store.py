"""Header store over a key-value datastore, with batched background writes."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Callable, Optional

from cachetools import LRUCache

from chainheader.header import NoHeadError, NonAdjacentError, NotFoundError
from chainheader.store.batch import PendingBatch
from chainheader.store.datastore import (
    HEAD_KEY,
    Key,
    NamespacedDatastore,
    header_key,
)
from chainheader.store.height_indexer import HeightIndexer
from chainheader.store.heightsub import ElapsedHeightError, HeightSub
from chainheader.store.options import Option, Parameters, default_parameters

__all__ = [
    "DEFAULT_STORE_PREFIX",
    "StoppedStoreError",
    "Store",
    "init_store",
    "new_store",
    "new_store_with_head",
]

log = logging.getLogger(__name__)

DEFAULT_STORE_PREFIX = "headers"

# Capacity of the queue of header runs waiting to be written.
_WRITE_QUEUE_SIZE = 16


class StoppedStoreError(Exception):
    """The store was stopped and accepts no more operations."""

    def __init__(self) -> None:
        super().__init__("stopped store")


def _hash_key(hash: bytes) -> Key:
    return Key(bytes(hash).hex().upper())


def _encode_head(hash: bytes) -> bytes:
    return json.dumps(bytes(hash).hex().upper()).encode()


def _decode_head(raw: bytes) -> bytes:
    return bytes.fromhex(json.loads(raw))


class Store:
    """Stores headers over a datastore.

    ``decode`` turns the bytes produced by ``Header.marshal_binary`` back
    into a header.
    """

    def __init__(
        self,
        datastore,
        decode: Callable[[bytes], object],
        params: Parameters,
    ) -> None:
        self.params = params
        self._decode = decode
        self._ds = NamespacedDatastore(datastore, params.store_prefix or DEFAULT_STORE_PREFIX)
        self._cache_lock = threading.Lock()
        self._cache: LRUCache = LRUCache(maxsize=params.store_cache_size)
        self._height_index = HeightIndexer(self._ds, params.index_cache_size)
        self._height_sub = HeightSub()
        self._writes: asyncio.Queue = asyncio.Queue(maxsize=_WRITE_QUEUE_SIZE)
        self._writes_done = asyncio.Event()
        self._write_head = None
        self._pending = PendingBatch(params.write_batch_size)
        self._task: Optional[asyncio.Task] = None

    async def init(self, initial) -> None:
        """Trust ``initial`` as the first head of an empty store."""
        if self._height_sub.height != 0:
            raise RuntimeError("store already initialized")
        self._flush(initial)
        log.info("initialized head: height=%d hash=%s", initial.height, bytes(initial.hash).hex())
        self._height_sub.pub(initial)

    async def start(self) -> None:
        """Start the background writer."""
        self._task = asyncio.get_running_loop().create_task(self._flush_loop())

    async def stop(self) -> None:
        """Flush everything pending and stop the background writer."""
        if self._writes_done.is_set():
            raise StoppedStoreError()
        if self._task is None:
            raise RuntimeError("store was not started")
        await self._writes.put(None)
        await self._writes_done.wait()
        with self._cache_lock:
            self._cache.clear()
        self._height_index.purge()

    def height(self) -> int:
        """Height of the latest readable header."""
        return self._height_sub.height

    async def head(self):
        """Return the latest stored header; raise NoHeadError if there is none."""
        try:
            return await self.get_by_height(self._height_sub.height)
        except Exception:
            pass

        try:
            head = await self._read_head()
        except (KeyError, NotFoundError):
            raise NoHeadError() from None
        self._height_sub.height = head.height
        log.info("loaded head: height=%d hash=%s", head.height, bytes(head.hash).hex())
        return head

    async def get(self, hash: bytes):
        """Return the header with ``hash``; raise NotFoundError if unknown."""
        hash = bytes(hash)
        with self._cache_lock:
            cached = self._cache.get(hash)
        if cached is not None:
            return cached

        # The header may not be written to the datastore yet.
        pending = self._pending.get(hash)
        if pending is not None:
            return pending

        try:
            raw = self._ds.get(_hash_key(hash))
        except KeyError:
            raise NotFoundError(hash.hex()) from None

        header = self._decode(raw)
        with self._cache_lock:
            self._cache[bytes(header.hash)] = header
        return header

    async def get_by_height(self, height: int):
        """Return the header at ``height``, waiting for it if not yet published."""
        if height == 0:
            raise ValueError("header/store: height must be bigger than zero")
        try:
            return await self._height_sub.sub(height)
        except ElapsedHeightError:
            pass

        pending = self._pending.get_by_height(height)
        if pending is not None:
            return pending

        try:
            hash = self._height_index.hash_by_height(height)
        except KeyError:
            raise NotFoundError(f"height {height}") from None
        return await self.get(hash)

    async def get_range_by_height(self, start: int, end: int) -> list:
        """Return the headers of heights in [start, end)."""
        if start > end - 1:
            raise ValueError(f"header/store: invalid range({start},{end - 1})")
        header = await self.get_by_height(end - 1)
        headers = [header]
        for _ in range(end - start - 1):
            header = await self.get(header.last_header)
            headers.append(header)
        headers.reverse()
        return headers

    async def get_verified_range(self, start, end: int) -> list:
        """Return the headers above ``start`` up to ``end`` (exclusive), verified in turn."""
        headers = await self.get_range_by_height(start.height + 1, end)
        trusted = start
        for header in headers:
            trusted.verify(header)
            trusted = header
        return headers

    async def has(self, hash: bytes) -> bool:
        """Report whether the header with ``hash`` is stored."""
        hash = bytes(hash)
        with self._cache_lock:
            if hash in self._cache:
                return True
        if self._pending.has(hash):
            return True
        return self._ds.has(_hash_key(hash))

    def has_at(self, height: int) -> bool:
        """Report whether a header at ``height`` is available."""
        return height != 0 and self.height() >= height

    async def append(self, *headers) -> None:
        """Verify and queue adjacent headers for writing.

        Headers after the first invalid one are dropped and the verification
        error is raised once the valid ones are queued.
        """
        if not headers:
            return

        head = self._write_head
        if head is None:
            head = await self.head()

        verified = []
        failure: Optional[Exception] = None
        for index, header in enumerate(headers):
            # Headers must be appended sequentially and adjacently.
            if header.height != head.height + 1:
                raise NonAdjacentError(head.height, header.height)
            try:
                head.verify(header)
            except Exception as exc:
                log.error(
                    "invalid header: height_of_head=%d height_of_invalid=%d reason=%s",
                    head.height,
                    header.height,
                    exc,
                )
                if index == 0:
                    raise
                failure = exc
                break
            verified.append(header)
            head = header

        await self._enqueue(verified)
        self._write_head = verified[-1]
        log.info(
            "new head: height=%d hash=%s",
            self._write_head.height,
            bytes(self._write_head.hash).hex(),
        )
        if failure is not None:
            raise failure

    async def _enqueue(self, headers: list) -> None:
        if self._writes_done.is_set():
            raise StoppedStoreError()
        try:
            self._writes.put_nowait(headers)
            return
        except asyncio.QueueFull:
            pass

        put = asyncio.ensure_future(self._writes.put(headers))
        done = asyncio.ensure_future(self._writes_done.wait())
        try:
            await asyncio.wait({put, done}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            done.cancel()
            if not put.done():
                put.cancel()
        if not put.done() or put.cancelled():
            raise StoppedStoreError()

    async def _flush_loop(self) -> None:
        try:
            while True:
                headers = await self._writes.get()
                if headers is not None:
                    self._pending.append(*headers)
                    # Publish after pending is updated so both stay consistent.
                    self._height_sub.pub(*headers)
                    if len(self._pending) < self.params.write_batch_size:
                        continue

                try:
                    self._flush(*self._pending.get_all())
                except Exception:
                    log.exception("writing header batch")
                    if headers is None:
                        return
                    continue

                self._pending.reset()
                if headers is None:
                    return
        finally:
            self._writes_done.set()

    def _flush(self, *headers) -> None:
        if not headers:
            return
        batch = self._ds.batch()
        for header in headers:
            batch.put(header_key(header), header.marshal_binary())
        batch.put(HEAD_KEY, _encode_head(headers[-1].hash))
        self._height_index.index_to(batch, *headers)
        batch.commit()

    async def _read_head(self):
        raw = self._ds.get(HEAD_KEY)
        return await self.get(_decode_head(raw))


def new_store(datastore, decode: Callable[[bytes], object], *options: Option) -> Store:
    """Build a store over ``datastore``; it must already hold a head to be used."""
    params = default_parameters()
    for option in options:
        option(params)
    try:
        params.validate()
    except ValueError as exc:
        raise ValueError(f"header/store: store creation failed: {exc}") from exc
    return Store(datastore, decode, params)


async def new_store_with_head(
    datastore, decode: Callable[[bytes], object], head, *options: Option
) -> Store:
    """Build a store and force ``head`` as its trusted head."""
    store = new_store(datastore, decode, *options)
    await store.init(head)
    return store


async def init_store(store, exchange, hash: bytes) -> None:
    """Initialise ``store`` from the header ``hash`` fetched from ``exchange`` if it has no head."""
    try:
        await store.head()
    except NoHeadError:
        initial = await exchange.get(hash)
        await store.init(initial)