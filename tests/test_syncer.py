import asyncio
import contextlib
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from chainheader.header import VerifyError
from chainheader.store.datastore import MapDatastore
from chainheader.store.store import new_store_with_head
from chainheader.sync.options import (
    with_block_time,
    with_recency_threshold,
    with_trusting_period,
)
from chainheader.sync.syncer import (
    MAX_RANGE_REQUEST_SIZE,
    State,
    Syncer,
    is_expired,
    is_recent,
)

CHAIN_ID = "test-chain"
TIMEOUT = 5


def _now():
    return datetime.now(timezone.utc)


@dataclass
class DummyHeader:
    height: int
    last_header: bytes
    time: datetime
    chain_id: str = CHAIN_ID
    verify_failure: bool = False
    hash: bytes = b""

    def __post_init__(self):
        if not self.hash:
            text = f"{self.chain_id}|{self.height}|{self.last_header.hex()}|{self.time.isoformat()}"
            self.hash = hashlib.sha256(text.encode()).digest()

    def is_zero(self):
        return self.height == 0

    def verify(self, untrusted):
        if untrusted.verify_failure:
            raise ValueError("header marked to fail verification")
        if untrusted.height == self.height + 1 and untrusted.last_header != self.hash:
            raise ValueError("header does not link to its parent")

    def marshal_binary(self):
        return json.dumps(
            {
                "height": self.height,
                "last_header": self.last_header.hex(),
                "time": self.time.isoformat(),
                "chain_id": self.chain_id,
                "verify_failure": self.verify_failure,
                "hash": self.hash.hex(),
            }
        ).encode()

    @classmethod
    def decode(cls, raw):
        data = json.loads(raw)
        return cls(
            height=data["height"],
            last_header=bytes.fromhex(data["last_header"]),
            time=datetime.fromisoformat(data["time"]),
            chain_id=data["chain_id"],
            verify_failure=data["verify_failure"],
            hash=bytes.fromhex(data["hash"]),
        )


class Suite:
    def __init__(self):
        self._head = DummyHeader(height=1, last_header=b"", time=_now() - timedelta(seconds=1))

    def head(self):
        return self._head

    def next_header(self):
        moment = max(_now(), self._head.time + timedelta(microseconds=1))
        self._head = DummyHeader(
            height=self._head.height + 1, last_header=self._head.hash, time=moment
        )
        return self._head

    def gen(self, count):
        return [self.next_header() for _ in range(count)]


class LocalExchange:
    def __init__(self, store):
        self.store = store
        self.head_requests = []

    async def head(self, trusted_head=None):
        self.head_requests.append(trusted_head)
        return await self.store.head()

    async def get(self, hash):
        return await self.store.get(hash)

    async def get_verified_range(self, start, amount):
        return await self.store.get_verified_range(start, start.height + amount + 1)


class DelayedExchange(LocalExchange):
    async def get_verified_range(self, start, amount):
        await asyncio.sleep(0.1)
        return await super().get_verified_range(start, amount)


class FailingGetter:
    def __init__(self):
        self.calls = 0

    async def head(self, trusted_head=None):
        self.calls += 1
        raise ConnectionError("unreachable")

    async def get_verified_range(self, start, amount):
        raise ConnectionError("unreachable")


class DummySubscriber:
    def __init__(self):
        self.verifier = None

    def set_verifier(self, verifier):
        self.verifier = verifier


async def _store(stack, head):
    store = await new_store_with_head(MapDatastore(), DummyHeader.decode, head)
    await store.start()
    stack.push_async_callback(store.stop)
    return store


def _syncer(stack, getter, store, *options, sub=None):
    syncer = Syncer(getter, store, sub or DummySubscriber(), *options)
    stack.push_async_callback(syncer.stop)
    return syncer


def test_state_finished_and_duration():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    state = State(height=10, to_height=10, start=start, end=start + timedelta(seconds=5))
    assert state.finished()
    assert state.duration() == timedelta(seconds=5)
    assert not State(height=9, to_height=10).finished()
    assert State().duration() == timedelta(0)


def test_is_expired():
    header = DummyHeader(height=1, last_header=b"", time=_now() - timedelta(hours=2))
    assert is_expired(header, timedelta(hours=1))
    assert not is_expired(header, timedelta(hours=3))


@pytest.mark.parametrize(
    "block_time, threshold, expected",
    [
        (timedelta(seconds=30), timedelta(0), True),
        (timedelta(seconds=4), timedelta(0), False),
        (timedelta(seconds=4), timedelta(seconds=20), True),
        (timedelta(seconds=30), timedelta(seconds=1), False),
    ],
)
def test_is_recent(block_time, threshold, expected):
    header = DummyHeader(height=1, last_header=b"", time=_now() - timedelta(seconds=10))
    assert is_recent(header, block_time, threshold) is expected


def test_invalid_parameters_rejected():
    with pytest.raises(ValueError):
        Syncer(None, None, DummySubscriber(), with_trusting_period(timedelta(0)))


@pytest.mark.asyncio
async def test_start_registers_verifier():
    suite = Suite()
    async with contextlib.AsyncExitStack() as stack:
        local = await _store(stack, suite.head())
        sub = DummySubscriber()
        syncer = _syncer(
            stack, LocalExchange(local), local, with_block_time(timedelta(seconds=30)), sub=sub
        )
        await syncer.start()
        assert sub.verifier == syncer.incoming_network_head


@pytest.mark.asyncio
async def test_head_returns_recent_subjective_head_without_request():
    suite = Suite()
    async with contextlib.AsyncExitStack() as stack:
        local = await _store(stack, suite.head())
        exchange = LocalExchange(local)
        syncer = _syncer(stack, exchange, local, with_block_time(timedelta(seconds=30)))
        head = await syncer.head()
        assert head.height == 1
        assert exchange.head_requests == []


@pytest.mark.asyncio
async def test_head_falls_back_on_getter_failure():
    suite = Suite()
    async with contextlib.AsyncExitStack() as stack:
        local = await _store(stack, suite.head())
        getter = FailingGetter()
        syncer = _syncer(stack, getter, local)
        head = await syncer.head()
        assert head.height == 1
        assert getter.calls == 1


@pytest.mark.asyncio
async def test_sync_wait_without_sync():
    suite = Suite()
    async with contextlib.AsyncExitStack() as stack:
        local = await _store(stack, suite.head())
        syncer = _syncer(stack, LocalExchange(local), local)
        await syncer.sync_wait()
        state = await syncer.state()
        assert state.id == 0
        assert state.height == 1
        assert state.finished()


@pytest.mark.asyncio
async def test_sync_simple_requesting_head():
    suite = Suite()
    head = suite.head()
    async with contextlib.AsyncExitStack() as stack:
        remote = await _store(stack, head)
        await remote.append(*suite.gen(100))
        await asyncio.wait_for(remote.get_by_height(101), TIMEOUT)

        local = await _store(stack, head)
        syncer = _syncer(
            stack,
            LocalExchange(remote),
            local,
            with_block_time(timedelta(seconds=30)),
            with_recency_threshold(timedelta(seconds=35)),
            with_trusting_period(timedelta(microseconds=1)),
        )
        await syncer.start()

        await asyncio.sleep(0.01)
        await asyncio.wait_for(syncer.sync_wait(), TIMEOUT)
        await asyncio.wait_for(local.get_by_height(101), TIMEOUT)

        expected = await remote.head()
        have = await local.head()
        assert have.height == expected.height
        assert syncer.pending.head() is None

        state = await syncer.state()
        assert state.height == expected.height
        assert state.from_height == 2
        assert state.to_height == expected.height
        assert state.finished()


@pytest.mark.asyncio
async def test_sync_full_range_from_external_peer():
    suite = Suite()
    head = suite.head()
    async with contextlib.AsyncExitStack() as stack:
        remote = await _store(stack, head)
        local = await _store(stack, head)
        syncer = _syncer(
            stack,
            LocalExchange(remote),
            local,
            with_block_time(timedelta(microseconds=1)),
            with_recency_threshold(timedelta(microseconds=1)),
        )
        await syncer.start()

        await remote.append(*suite.gen(MAX_RANGE_REQUEST_SIZE))
        top = MAX_RANGE_REQUEST_SIZE + 1
        await asyncio.wait_for(remote.get_by_height(top), TIMEOUT)

        await syncer.head()
        await asyncio.wait_for(local.get_by_height(top), TIMEOUT)

        remote_head = await remote.head()
        new_head = await local.head()
        assert new_head.height == remote_head.height == top


@pytest.mark.asyncio
async def test_sync_catch_up():
    suite = Suite()
    head = suite.head()
    async with contextlib.AsyncExitStack() as stack:
        remote = await _store(stack, head)
        local = await _store(stack, head)
        syncer = _syncer(
            stack, LocalExchange(remote), local, with_trusting_period(timedelta(minutes=1))
        )
        await syncer.start()

        await remote.append(*suite.gen(100))
        await asyncio.wait_for(remote.get_by_height(101), TIMEOUT)

        incoming = suite.gen(1)[0]
        await syncer.incoming_network_head(incoming)

        await asyncio.wait_for(local.get_by_height(incoming.height), TIMEOUT)
        await asyncio.wait_for(syncer.sync_wait(), TIMEOUT)

        expected = await remote.head()
        have = await local.head()
        assert have.height == incoming.height
        assert have.height == expected.height + 1
        assert syncer.pending.head() is None

        state = await syncer.state()
        assert state.height == expected.height + 1
        assert state.from_height == 2
        assert state.to_height == expected.height + 1
        assert state.finished()
        assert state.error == ""
        assert syncer.metrics.total_synced == 101


@pytest.mark.asyncio
async def test_sync_pending_ranges_with_misses():
    suite = Suite()
    head = suite.head()
    async with contextlib.AsyncExitStack() as stack:
        remote = await _store(stack, head)
        local = await _store(stack, head)
        syncer = _syncer(
            stack, LocalExchange(remote), local, with_trusting_period(timedelta(minutes=1))
        )
        await syncer.start()

        await remote.append(*suite.gen(1))
        range1 = suite.gen(15)
        await remote.append(*range1)
        await remote.append(*suite.gen(3))
        range2 = suite.gen(23)
        await remote.append(*range2)
        await asyncio.wait_for(remote.get_by_height(43), TIMEOUT)

        for header in range1 + range2:
            syncer.pending.add(header)

        await syncer.sync()

        await asyncio.wait_for(local.get_by_height(43), TIMEOUT)
        have = await local.head()
        expected = await remote.head()
        assert have.height == 43
        assert expected.height == have.height
        assert syncer.pending.head() is None


@pytest.mark.asyncio
async def test_process_headers_returns_correct_range():
    suite = Suite()
    head = suite.head()
    async with contextlib.AsyncExitStack() as stack:
        remote = await _store(stack, head)
        local = await _store(stack, head)
        syncer = _syncer(stack, LocalExchange(remote), local)

        range1 = suite.gen(10)
        for header in range1:
            syncer.pending.add(header)
        await remote.append(*range1)
        await remote.append(*suite.gen(9))
        await asyncio.wait_for(remote.get_by_height(20), TIMEOUT)

        syncer.pending.add(suite.next_header())
        await syncer.process_headers(head, 21)

        await asyncio.wait_for(local.get_by_height(21), TIMEOUT)
        assert (await local.head()).height == 21


@pytest.mark.asyncio
async def test_incoming_duplicate():
    suite = Suite()
    head = suite.head()
    async with contextlib.AsyncExitStack() as stack:
        remote = await _store(stack, head)
        local = await _store(stack, head)
        syncer = _syncer(stack, DelayedExchange(remote), local)
        await syncer.start()

        range1 = suite.gen(10)
        await remote.append(*range1)
        await asyncio.wait_for(remote.get_by_height(11), TIMEOUT)

        await syncer.incoming_network_head(range1[-1])
        await asyncio.sleep(0.01)

        with pytest.raises(VerifyError):
            await syncer.incoming_network_head(range1[-1])

        await asyncio.wait_for(syncer.sync_wait(), TIMEOUT)
        assert (await local.head()).height == 11


@pytest.mark.asyncio
async def test_incoming_network_head_races():
    suite = Suite()
    async with contextlib.AsyncExitStack() as stack:
        local = await _store(stack, suite.head())
        syncer = _syncer(stack, local, local)
        incoming = suite.next_header()

        results = await asyncio.gather(
            *(syncer.incoming_network_head(incoming) for _ in range(10)),
            return_exceptions=True,
        )
        hits = [result for result in results if result is None]
        failures = [result for result in results if result is not None]
        assert len(hits) == 1
        assert all(isinstance(failure, VerifyError) for failure in failures)


@pytest.mark.asyncio
async def test_head_with_trusted_head():
    suite = Suite()
    head = suite.head()
    async with contextlib.AsyncExitStack() as stack:
        local = await _store(stack, head)
        remote = await _store(stack, head)
        await remote.append(*suite.gen(100))
        await asyncio.wait_for(remote.get_by_height(101), TIMEOUT)

        exchange = LocalExchange(remote)
        syncer = _syncer(
            stack,
            exchange,
            local,
            with_block_time(timedelta(microseconds=1)),
            with_recency_threshold(timedelta(microseconds=1)),
            with_trusting_period(timedelta(hours=1)),
        )
        await syncer.start()

        assert exchange.head_requests
        assert exchange.head_requests[0] is not None
        assert exchange.head_requests[0].height == 1

        await asyncio.wait_for(local.get_by_height(101), TIMEOUT)
        assert (await local.head()).height == 101