# eventstore

An append-only event store together with the clients that feed it and read
from it.

- **Producers** (`eventstore.producer`) queue events, give each one an
  idempotency key drawn from their runtime, and send them in batches, either
  when a batch is full or when a flush delay has passed. Batches that fail
  with `FlushOutcome.FAILED_SHOULD_RETRY` are queued again.
- **The store** (`eventstore.canister`) checks callers against whitelists,
  drops events whose idempotency key was seen within the last hour
  (`eventstore.deduper.EventDeduper`), optionally rounds timestamps down to a
  time granularity, replaces users and sources marked for anonymisation with a
  salted SHA-256 digest, and gives every event a sequential index.
- **Consumers** (`eventstore.consumer`) read events back by start index and
  length.
- A **DappRadar** aggregation (`eventstore.dapp_radar`) counts events per user
  by day and by hour (the most recent 1680 hours are kept) and serves them as
  paginated JSON, 1000 entries a page.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Building events

```python
from eventstore.producer import EventBuilder

event = (
    EventBuilder("user_signed_up", 1_700_000_000_000)
    .with_user("alice", anonymize=True)
    .with_source("web", anonymize=False)
    .with_json_payload({"plan": "free"})
    .build()
)
```

`with_maybe_user` and `with_maybe_source` accept `None` to leave the field
empty; `with_payload` takes raw bytes.

## Producing

A producer client is built around a runtime that schedules timers, sends
batches, draws random 128-bit keys and tells the time in milliseconds.
Implement the `ProducerRuntime` protocol for your environment. The bundled
`NullRuntime` never runs scheduled flushes, treats every batch it is given as
delivered, and always returns 0 for both the key and the time.

```python
from datetime import timedelta

from eventstore.api import Principal
from eventstore.producer import EventStoreClientBuilder, NullRuntime

client = (
    EventStoreClientBuilder(Principal.anonymous(), NullRuntime())
    .with_flush_delay(timedelta(seconds=60))
    .with_max_batch_size(500)
    .build()
)

client.push(event)
print(client.info())          # events_pending=1, next_flush_scheduled=60000, ...
```

By default a batch is sent after five minutes or once 1000 events are
pending, whichever comes first, and only one batch is in flight at a time.
`push_many(events, can_flush_immediately)` queues several events at once; if
the batch is full and `can_flush_immediately` is false, the flush is put on a
zero-delay timer instead. `take_events()` removes and returns everything
queued.

The client's state (without its runtime) can be saved with `to_dict()` and
restored with `EventStoreClient.from_dict(data, runtime)`; if events were
pending, a flush is scheduled again on restore.

## Storing

```python
from eventstore.api import EventsArgs, InitArgs, Principal, PushEventsArgs
from eventstore.canister import EventStoreCanister

pusher = Principal.from_text("aaaaa-aa")
reader = Principal.anonymous()

store = EventStoreCanister(InitArgs(
    push_events_whitelist=[pusher],
    read_events_whitelist=[reader],
    time_granularity=1000,
))
store.initialize_salt(bytes(range(1, 33)))

store.push_events(pusher, PushEventsArgs(events=client.take_events()), now=0)
response = store.events(reader, EventsArgs(start=0, length=10))
print(response.latest_event_index, [e.timestamp for e in response.events])
```

The salt must be set, once, before events can be stored; called with no
argument, `initialize_salt()` draws a random one. Callers outside the relevant
whitelist get an `Unauthorized` error. `whitelisted_principals()` lists both
whitelists.

The whole state is serialised with MessagePack by `pre_upgrade()`, after
which that instance can no longer be used, and restored with
`EventStoreCanister.post_upgrade(data)`, which also brings the DappRadar
aggregation up to date with any events it has not yet counted.

### DappRadar data

`http_request(url)` answers paths of the form

```
/dapp-radar/aggregated-data/2024-01-31/daily?page=1
/dapp-radar/aggregated-data/2024-01-31/hourly?page=1
```

with an `HttpResponse` holding a JSON body such as
`{"results":[{"user":"alice","transactions":3}],"pageCount":1}`; hourly
entries also carry a `dateTime`. Pages are numbered from 1; page 0, or no
`page` parameter, gives an empty `results` list with the page count. Every
other path gets a 404.

## Consuming

A consumer runtime implements the `ConsumerRuntime` protocol: an async
`events(canister_id, args)` returning an `EventsResponse`, raising
`EventStoreCallError` (with `code` and `message`) when a call is rejected.
For example, a runtime reading from a store in the same process:

```python
import asyncio

from eventstore.consumer import EventStoreCallError, EventStoreConsumer
from eventstore.canister import Unauthorized


class LocalRuntime:
    def __init__(self, store, caller):
        self.store = store
        self.caller = caller

    async def events(self, canister_id, args):
        try:
            return self.store.events(self.caller, args)
        except Unauthorized as exc:
            raise EventStoreCallError(4, str(exc)) from exc


consumer = EventStoreConsumer(Principal.anonymous(), LocalRuntime(store, reader))
response = asyncio.run(consumer.events(start=0, length=100))
```

## What this package does not do

- It has no network transport: no producer or consumer runtime that talks to a
  remote store is included, only the protocols to implement and `NullRuntime`.
- `EventStoreCanister.http_request` turns a URL into a response; there is no
  HTTP server around it.
- The store keeps everything in memory. It is not written to disk on its own;
  persisting the bytes from `pre_upgrade()` is left to the caller.
- There is no command-line interface.