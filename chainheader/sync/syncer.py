"""Synchronisation of headers from the network into a local store.

The subjective head is the latest known valid local header and the sync
target. The network head is the latest valid network-wide header; it becomes
subjective once applied locally.

The syncer runs a sync loop that fills the gap between the stored head and
the subjective head. It does so by requesting missing headers from a getter,
or by taking them from the cache of pending headers. New network heads arrive
through ``incoming_network_head``. Each one is validated against the
subjective head and becomes the new sync target.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from chainheader.header import NonAdjacentError, NotFoundError, VerifyError, verify
from chainheader.sync.metrics import Metrics
from chainheader.sync.options import Option, Parameters, default_parameters
from chainheader.sync.ranges import Ranges
from chainheader.sync.sync_getter import SyncGetter
from chainheader.sync.sync_store import SyncStore

__all__ = [
    "MAX_RANGE_REQUEST_SIZE",
    "State",
    "Syncer",
    "is_expired",
    "is_recent",
]

log = logging.getLogger(__name__)

# Largest number of headers requested from the getter at once.
MAX_RANGE_REQUEST_SIZE = 512


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class State:
    """Information about the current sync, or about the last one."""

    id: int = 0
    height: int = 0
    from_height: int = 0
    to_height: int = 0
    from_hash: bytes = b""
    to_hash: bytes = b""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    error: str = ""

    def finished(self) -> bool:
        """Report whether the sync is done."""
        return self.to_height <= self.height

    def duration(self) -> timedelta:
        """Return how long the sync took; zero if it has no start and end."""
        if self.start is None or self.end is None:
            return timedelta(0)
        return self.end - self.start


def is_expired(header, period: timedelta) -> bool:
    """Report whether ``header`` is older than the trusting ``period``."""
    expiration = header.time + period
    return not expiration > datetime.now(header.time.tzinfo)


def is_recent(header, block_time: timedelta, recency_threshold: timedelta) -> bool:
    """Report whether ``header`` is recent against the recency threshold.

    A zero threshold means one and a half block times.
    """
    if not recency_threshold:
        recency_threshold = block_time + block_time / 2
    return datetime.now(header.time.tzinfo) - header.time <= recency_threshold


class Syncer:
    """Keeps a local store in sync with the network's headers."""

    def __init__(self, getter, store, sub, *options: Option) -> None:
        params: Parameters = default_parameters()
        for option in options:
            option(params)
        params.validate()

        self.params = params
        self.metrics = Metrics()
        self.pending = Ranges()
        self._sub = sub
        self._store = SyncStore(store)
        self._getter = SyncGetter(getter)
        self._state_lock = threading.Lock()
        self._state = State()
        self._trigger = asyncio.Event()
        self._incoming_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Register the header verifier, load the head and start the sync loop."""
        self._sub.set_verifier(self.incoming_network_head)
        try:
            await self.head()
        except Exception:
            log.error("error getting latest head during start")
            raise
        self._task = asyncio.get_running_loop().create_task(self._sync_loop())

    async def stop(self) -> None:
        """Stop the sync loop."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def sync_wait(self) -> None:
        """Wait until the ongoing sync is done."""
        state = await self.state()
        if state.finished():
            return
        await self._store.get_by_height(state.to_height)

    async def state(self) -> State:
        """Report the state of the current sync, or of the last one."""
        with self._state_lock:
            state = dataclasses.replace(self._state)
        try:
            head = await self._store.head()
        except Exception as exc:
            if not state.error:
                state.error = str(exc)
        else:
            state.height = head.height
        return state

    async def head(self):
        """Return the network head.

        A recent subjective head counts as the network head. Otherwise the head
        is requested from the network and validated as a new subjective head.
        """
        subjective = await self._subjective_head()
        if is_recent(subjective, self.params.block_time, self.params.recency_threshold):
            return subjective

        # Only one head request at a time; others reuse the result.
        if not await self._getter.lock():
            return await self.head()
        try:
            try:
                net_head = await self._getter.head(trusted_head=subjective)
            except Exception as exc:
                log.warning(
                    "failed to get recent head, returning current subjective: "
                    "subjective_height=%d err=%s",
                    subjective.height,
                    exc,
                )
                return await self._subjective_head()
            # Accepted or rejected, the latest subjective head is returned.
            with contextlib.suppress(Exception):
                await self.incoming_network_head(net_head)
            return await self._subjective_head()
        finally:
            self._getter.unlock()

    async def incoming_network_head(self, head) -> None:
        """Process a candidate network head and make it the sync target if valid.

        Raises VerifyError if the candidate fails verification. A soft failure
        still sets the candidate as the sync target before raising.
        """
        async with self._incoming_lock:
            error = await self._verify(head)
            if error is not None and not error.soft_failure:
                raise error
            await self._set_subjective_head(head)
            if error is not None:
                raise error

    async def sync(self) -> None:
        """Sync from the stored head up to the subjective head; errors are logged."""
        try:
            subjective = await self._subjective_head()
        except Exception as exc:
            log.error("getting subjective head: %s", exc)
            return
        try:
            store_head = await self._store.head()
        except Exception as exc:
            log.error("getting stored head: %s", exc)
            return

        if store_head.height >= subjective.height:
            log.warning(
                "sync attempt to an already synced header: synced_height=%d attempted_height=%d",
                store_head.height,
                subjective.height,
            )
            return

        start = store_head.height + 1
        log.info("syncing headers: from=%d to=%d", start, subjective.height)
        try:
            await self._do_sync(store_head, subjective)
        except Exception as exc:
            log.error("syncing headers: from=%d to=%d err=%s", start, subjective.height, exc)
            return

        with self._state_lock:
            elapsed = self._state.duration()
        log.info(
            "finished syncing headers: from=%d to=%d elapsed=%s",
            start,
            subjective.height,
            elapsed,
        )

    async def process_headers(self, from_head, to: int) -> None:
        """Fetch and store the headers of heights (from_head.height, to].

        Pending headers are used where they cover the range; missing ones are
        requested from the getter.
        """
        while True:
            header_range = self.pending.first()
            if header_range is None:
                break
            headers = header_range.get(to)
            if not headers:
                break

            if from_head.height + 1 != headers[0].height:
                await self._request_headers(from_head, headers[0].height - 1)

            await self._store_headers(*headers)
            # Clean up the range only once its headers are stored.
            header_range.remove(to)
            from_head = headers[-1]

        await self._request_headers(from_head, to)

    async def _sync_loop(self) -> None:
        while True:
            await self._trigger.wait()
            self._trigger.clear()
            await self.sync()

    def _want_sync(self) -> None:
        self._trigger.set()

    async def _do_sync(self, from_head, to_head) -> None:
        with self._state_lock:
            self._state.id += 1
            self._state.from_height = from_head.height + 1
            self._state.to_height = to_head.height
            self._state.from_hash = bytes(from_head.hash)
            self._state.to_hash = bytes(to_head.hash)
            self._state.start = _now()

        try:
            await self.process_headers(from_head, to_head.height)
        except Exception as exc:
            with self._state_lock:
                self._state.end = _now()
                self._state.error = str(exc)
            raise
        except BaseException:
            with self._state_lock:
                self._state.end = _now()
            raise

        with self._state_lock:
            self._state.end = _now()
            self._state.error = ""

    async def _request_headers(self, from_head, to: int) -> None:
        amount = to - from_head.height
        while amount > 0:
            size = min(MAX_RANGE_REQUEST_SIZE, amount)
            headers = await self._getter.get_verified_range(from_head, size)
            if not headers:
                raise NotFoundError(f"no headers above height {from_head.height}")
            await self._store_headers(*headers)
            amount -= size
            from_head = headers[-1]

    async def _store_headers(self, *headers) -> None:
        await self._store.append(*headers)
        self.metrics.record_total_synced(len(headers))

    async def _subjective_head(self):
        # The pending head is the latest sync target and is never expired.
        pending_head = self.pending.head()
        if pending_head is not None:
            return pending_head

        store_head = await self._store.head()
        if not is_expired(store_head, self.params.trusting_period):
            return store_head

        log.info("stored head header expired: height=%d", store_head.height)
        if not await self._getter.lock():
            return await self._subjective_head()
        try:
            trusted = await self._getter.head()
            # Taken without validation: the stored head expired, so validating
            # against it would open the door to a long-range attack.
            await self._set_subjective_head(trusted)
            if is_expired(trusted, self.params.trusting_period):
                log.warning("subjective initialization with an expired header: height=%d", trusted.height)
            elif not is_recent(trusted, self.params.block_time, self.params.recency_threshold):
                log.warning("subjective initialization with an old header: height=%d", trusted.height)
            else:
                log.info("subjective initialization finished: height=%d", trusted.height)
                return trusted
            log.warning("trusted peer is out of sync")
            return trusted
        finally:
            self._getter.unlock()

    async def _set_subjective_head(self, net_head) -> None:
        try:
            await self._store_headers(net_head)
        except NonAdjacentError:
            pass
        except Exception as exc:
            log.error(
                "storing new network header: height=%d hash=%s err=%s",
                net_head.height,
                bytes(net_head.hash).hex(),
                exc,
            )

        try:
            store_head = await self._store.head()
        except Exception:
            store_head = None
        if store_head is not None and store_head.height >= net_head.height:
            return

        self.pending.add(net_head)
        self._want_sync()
        log.info("new network head: height=%d hash=%s", net_head.height, bytes(net_head.hash).hex())

    async def _verify(self, new_head) -> Optional[VerifyError]:
        try:
            subjective = await self._subjective_head()
        except Exception as exc:
            log.error("getting subjective head during validation: %s", exc)
            return VerifyError(exc, soft_failure=True)

        threshold = 0
        if self.params.trusting_period and self.params.block_time:
            # A generous buffer for variable block time.
            buffer = timedelta(hours=48) // self.params.block_time
            threshold = self.params.trusting_period // self.params.block_time + buffer

        try:
            verify(subjective, new_head, threshold)
        except VerifyError as err:
            if not err.soft_failure:
                log.error(
                    "invalid network header: height_of_invalid=%d height_of_subjective=%d reason=%s",
                    new_head.height,
                    subjective.height,
                    err.reason,
                )
            return err
        return None