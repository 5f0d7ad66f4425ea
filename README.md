# chainheader

Building blocks for a light client that follows a chain of block headers:

- **Verification** of an untrusted header against a trusted one
  (`chainheader.header.verify`).
- **A header store** over a key-value datastore, with write batching,
  caching, a height index and the ability to wait for a height that has
  not arrived yet (`chainheader.store.store`).
- **A syncer** that keeps a subjective head, accepts new network heads,
  and fills the gap between the stored head and the target by fetching
  verified ranges from a getter (`chainheader.sync.syncer`).

Everything that touches the store or the network is `async` and runs on
`asyncio`.

## Installation

```
pip install chainheader
```

For running the test suite:

```
pip install "chainheader[test]"
pytest
```

## Headers

Applications supply their own header type that satisfies the
`chainheader.header.Header` protocol. It has the properties `height`,
`chain_id`, `hash`, `last_header` (hash of the previous header) and
`time` (a `datetime`), and the methods `is_zero()`, `verify(untrusted)`
(raise if `untrusted` does not follow) and `marshal_binary()`.

`verify(trusted, untrusted, height_threshold)` performs the checks every
header must pass and then the trusted header's own `verify`. On failure it
raises `VerifyError`; its `reason` holds the underlying error, one of:

| Error                     | Raised when                                               |
|---------------------------|-----------------------------------------------------------|
| `ZeroHeaderError`         | the untrusted header is empty                             |
| `WrongChainIDError`       | chain ids differ                                          |
| `UnorderedTimeError`      | the untrusted header is older than the trusted one        |
| `FromFutureError`         | the timestamp lies more than 10 seconds in the future     |
| `KnownHeaderError`        | the height is not above the trusted height                |
| `HeightFromFutureError`   | the height is too far ahead (default threshold 80000)     |

If the header's own verification fails, that error becomes the reason
(or is raised as is when it already is a `VerifyError`). For a
non-adjacent header the failure is marked soft (`VerifyError.soft_failure`),
since there is not enough information to reject it outright.

A `height_threshold` of zero uses `DEFAULT_HEIGHT_THRESHOLD` (80000).
All header errors derive from `HeaderError`; the module also defines
`NotFoundError`, `NoHeadError` and `NonAdjacentError`.

## Store

```python
from chainheader.store.datastore import MapDatastore
from chainheader.store.options import with_write_batch_size
from chainheader.store.store import new_store_with_head


async def run(genesis, decode, more_headers):
    store = await new_store_with_head(
        MapDatastore(), decode, genesis, with_write_batch_size(512)
    )
    await store.start()
    await store.append(*more_headers)
    head = await store.head()
    first_ten = await store.get_range_by_height(1, 11)  # heights [1, 11)
    await store.stop()
```

`decode` turns the bytes produced by `marshal_binary()` back into a header.
`new_store(datastore, decode, *options)` builds a store over a datastore
that already holds a head, for example one that was written earlier and
stopped.

Store parameters (`chainheader.store.options.Parameters`) default to a
store cache of 4096 entries, an index cache of 16384 entries and write
batches of 2048 headers; all must be positive, otherwise creating the
store raises `ValueError`. Options are `with_store_cache_size`,
`with_index_cache_size`, `with_write_batch_size`, `with_store_prefix`
(default prefix `headers`) and `with_params`. `Parameters.to_dict()` and
`Parameters.from_dict()` round-trip the three sizes.

Behaviour worth knowing:

- Headers must be appended adjacently: a header whose height is not the
  current head plus one raises `NonAdjacentError`. If a header fails
  verification, the valid ones before it are still queued and the error
  is raised afterwards.
- Appended headers are written in the background, in batches; they are
  readable immediately. `stop()` flushes what is pending; using a stopped
  store raises `StoppedStoreError`.
- `get_by_height(h)` for a height not stored yet waits until it arrives.
  Unknown hashes raise `NotFoundError`; an empty store's `head()` raises
  `NoHeadError`.
- `get_verified_range(start, end)` returns the headers above `start` up to
  `end` (exclusive), verifying each against the one before.
- `init_store(store, exchange, hash)` initialises an empty store with the
  header `exchange.get(hash)` returns, and leaves a store that already has
  a head untouched.

`chainheader.store.datastore` provides `MapDatastore`, a thread-safe
in-memory datastore, `NamespacedDatastore` for key prefixes, and
`DatastoreBatch` for grouped writes. Any object with `get`, `put`, `has`
and `batch` of the same shape can stand in for it.

## Syncer

```python
from datetime import timedelta

from chainheader.sync.options import with_block_time
from chainheader.sync.syncer import Syncer


async def follow(getter, store, subscriber):
    syncer = Syncer(getter, store, subscriber, with_block_time(timedelta(seconds=15)))
    await syncer.start()
    await syncer.sync_wait()
    state = await syncer.state()
    await syncer.stop()
```

`Syncer(getter, store, sub, *options)` expects:

- `getter` with `async head(trusted_head=...)` and
  `async get_verified_range(start, amount)`;
- `store` with `async head()`, `async append(*headers)` and
  `async get_by_height(height)` — a `Store` fits;
- `sub` with `set_verifier(callback)`; `start()` registers
  `incoming_network_head` there.

Parameters (`chainheader.sync.options.Parameters`) default to a trusting
period of 336 hours and zero block time and recency threshold; a zero
trusting period is rejected with `ValueError`. Options are
`with_block_time`, `with_recency_threshold`, `with_trusting_period` and
`with_params`.

- `head()` returns the network head: the subjective head if it is recent
  enough (within the recency threshold, or one and a half block times
  when the threshold is zero), otherwise a head requested from the getter
  and verified. Only one such request runs at a time.
- `incoming_network_head(head)` validates a candidate header and makes it
  the new sync target. A hard failure raises `VerifyError`; a soft
  failure still sets the target and then raises.
- `sync_wait()` waits until the current sync has finished.
- `state()` reports the current or last sync as a `State` with
  `finished()` and `duration()`.
- `process_headers(from_head, to)` stores heights above `from_head` up to
  `to`, taking cached pending headers where they cover the range and
  requesting the rest in chunks of at most 512 headers.

An expired stored head triggers subjective initialisation: the head is
requested from the getter and accepted without verification.
`is_expired` and `is_recent` expose the time checks; `syncer.metrics`
(`chainheader.sync.metrics.Metrics`) counts synced headers.

## What this package does not do

There is no networking: no peer-to-peer exchange, no gossip subscription
and no server. The getter and subscriber the syncer needs must be
provided by the application. The only datastore included keeps data in
memory; persistence to disk needs a datastore of your own with the same
methods. There is no command-line program.