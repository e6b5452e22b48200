"""Client that batches events and pushes them to the event store."""

from __future__ import annotations

import json
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import IntEnum
from typing import Any, Callable, Iterable, Iterator, Optional, Protocol

from eventstore.api import Anonymizable, IdempotentEvent, Principal, TimestampMillis

DEFAULT_FLUSH_DELAY = timedelta(seconds=300)
DEFAULT_MAX_BATCH_SIZE = 1000

_U64_MAX = 2**64 - 1
_ONE_MILLISECOND = timedelta(milliseconds=1)


class FlushOutcome(IntEnum):
    """How an attempt to push a batch of events ended."""

    SUCCESS = 0
    FAILED_SHOULD_RETRY = 1
    FAILED_SHOULDNT_RETRY = 2


@dataclass(frozen=True)
class Event:
    """An event waiting to be given an idempotency key and queued."""

    name: str
    timestamp: TimestampMillis
    user: Optional[Anonymizable] = None
    source: Optional[Anonymizable] = None
    payload: bytes = b""

    @classmethod
    def from_idempotent(cls, event: IdempotentEvent) -> Event:
        """Strip the idempotency key from a queued event."""
        return cls(
            name=event.name,
            timestamp=event.timestamp,
            user=event.user,
            source=event.source,
            payload=event.payload,
        )


class EventBuilder:
    """Assembles an Event step by step; each step returns the builder."""

    def __init__(self, name: str, timestamp: TimestampMillis) -> None:
        self._name = str(name)
        self._timestamp = timestamp
        self._user: Optional[Anonymizable] = None
        self._source: Optional[Anonymizable] = None
        self._payload = b""

    def with_user(self, user: str, anonymize: bool) -> EventBuilder:
        self._user = Anonymizable(str(user), anonymize)
        return self

    def with_maybe_user(self, user: Optional[str], anonymize: bool) -> EventBuilder:
        self._user = Anonymizable(str(user), anonymize) if user is not None else None
        return self

    def with_source(self, source: str, anonymize: bool) -> EventBuilder:
        self._source = Anonymizable(str(source), anonymize)
        return self

    def with_maybe_source(self, source: Optional[str], anonymize: bool) -> EventBuilder:
        self._source = Anonymizable(str(source), anonymize) if source is not None else None
        return self

    def with_payload(self, payload: bytes) -> EventBuilder:
        self._payload = bytes(payload)
        return self

    def with_json_payload(self, payload: Any) -> EventBuilder:
        """Use the compact JSON encoding of ``payload`` as the payload."""
        encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        return self.with_payload(encoded.encode("utf-8"))

    def build(self) -> Event:
        return Event(
            name=self._name,
            timestamp=self._timestamp,
            user=self._user,
            source=self._source,
            payload=self._payload,
        )


class ProducerRuntime(Protocol):
    """The environment a producer client runs in: timers, transport, randomness, clock."""

    def schedule_flush(self, delay: timedelta, callback: Callable[[], None]) -> None:
        """Arrange for ``callback`` to be called once ``delay`` has passed."""

    def flush(
        self,
        canister_id: Principal,
        events: list[IdempotentEvent],
        on_complete: Callable[[FlushOutcome], None],
    ) -> None:
        """Send ``events`` and report the outcome through ``on_complete``."""

    def rng(self) -> int:
        """Return a random 128-bit unsigned integer."""

    def now(self) -> TimestampMillis:
        """Return the current time in milliseconds since the epoch."""


@dataclass
class NullRuntime:
    """A runtime that never runs scheduled flushes and drops every batch as sent.

    ``dropped_schedules`` counts the flush callbacks that were discarded.
    """

    dropped_schedules: int = 0

    def schedule_flush(self, delay: timedelta, callback: Callable[[], None]) -> None:
        """Discard the callback, keeping count of how many were dropped."""
        self.dropped_schedules += 1

    def flush(
        self,
        canister_id: Principal,
        events: list[IdempotentEvent],
        on_complete: Callable[[FlushOutcome], None],
    ) -> None:
        on_complete(FlushOutcome.SUCCESS)

    def rng(self) -> int:
        return 0

    def now(self) -> TimestampMillis:
        return 0


@dataclass(frozen=True)
class EventStoreClientInfo:
    """A snapshot of a producer client's state."""

    event_store_canister_id: Principal
    flush_delay: timedelta
    max_batch_size: int
    events_pending: int
    flush_in_progress: bool
    next_flush_scheduled: Optional[TimestampMillis]
    total_events_flushed: int


class EventStoreClientBuilder:
    """Configures and creates an EventStoreClient."""

    def __init__(self, canister_id: Principal, runtime: ProducerRuntime) -> None:
        self._canister_id = canister_id
        self._runtime = runtime
        self._flush_delay: Optional[timedelta] = None
        self._max_batch_size: Optional[int] = None

    def with_flush_delay(self, delay: timedelta) -> EventStoreClientBuilder:
        if delay < timedelta(0):
            raise ValueError("flush delay must not be negative")
        self._flush_delay = delay
        return self

    def with_max_batch_size(self, max_batch_size: int) -> EventStoreClientBuilder:
        if max_batch_size < 0:
            raise ValueError("max batch size must not be negative")
        self._max_batch_size = max_batch_size
        return self

    def build(self) -> EventStoreClient:
        return EventStoreClient(
            self._canister_id,
            self._runtime,
            flush_delay=self._flush_delay if self._flush_delay is not None else DEFAULT_FLUSH_DELAY,
            max_batch_size=(
                self._max_batch_size
                if self._max_batch_size is not None
                else DEFAULT_MAX_BATCH_SIZE
            ),
        )


def _delay_to_dict(delay: timedelta) -> dict[str, int]:
    micros = delay // timedelta(microseconds=1)
    secs, rem = divmod(micros, 1_000_000)
    return {"secs": secs, "nanos": rem * 1000}


def _delay_from_dict(data: Any) -> timedelta:
    if isinstance(data, timedelta):
        return data
    return timedelta(seconds=data["secs"], microseconds=data.get("nanos", 0) / 1000)


class EventStoreClient:
    """Queues events and pushes them to the event store in batches.

    A batch is sent once ``max_batch_size`` events are waiting, or once the
    flush delay has passed since the first event of a batch was queued.
    Only one batch is in flight at a time.
    """

    def __init__(
        self,
        canister_id: Principal,
        runtime: ProducerRuntime,
        flush_delay: timedelta = DEFAULT_FLUSH_DELAY,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    ) -> None:
        self._canister_id = canister_id
        self._runtime = runtime
        self._flush_delay = flush_delay
        self._max_batch_size = max_batch_size
        self._events: list[IdempotentEvent] = []
        self._next_flush_scheduled: Optional[TimestampMillis] = None
        self._flush_in_progress = False
        self._total_events_flushed = 0
        self._lock = threading.Lock()
        self._owner: Optional[int] = None
        self._deferred: deque[Callable[[], None]] = deque()

    @classmethod
    def null(cls) -> EventStoreClient:
        """A client that talks to nobody."""
        return EventStoreClientBuilder(Principal.anonymous(), NullRuntime()).build()

    @property
    def runtime(self) -> ProducerRuntime:
        return self._runtime

    # Locking: callbacks that arrive while this thread already holds the
    # lock are deferred and run as soon as it is released.

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if self._owner == threading.get_ident():
            raise RuntimeError("event store client is already in use by this thread")
        self._lock.acquire()
        self._owner = threading.get_ident()
        try:
            yield
        finally:
            self._owner = None
            self._lock.release()
            self._drain_deferred()

    def _run_locked(self, action: Callable[[], None]) -> None:
        if self._owner == threading.get_ident():
            self._deferred.append(action)
            return
        with self._locked():
            action()

    def _drain_deferred(self) -> None:
        while True:
            try:
                action = self._deferred.popleft()
            except IndexError:
                return
            self._run_locked(action)

    # Public operations

    def push(self, event: Event) -> None:
        """Queue one event, flushing at once if the batch is full."""
        with self._locked():
            self._enqueue(event)
            self._process_events(can_flush_immediately=True)

    def push_many(self, events: Iterable[Event], can_flush_immediately: bool) -> None:
        """Queue several events; a full batch is flushed now or on a zero-delay timer."""
        with self._locked():
            for event in events:
                self._enqueue(event)
            self._process_events(can_flush_immediately)

    def take_events(self) -> list[IdempotentEvent]:
        """Remove and return every queued event."""
        with self._locked():
            events, self._events = self._events, []
            return events

    def info(self) -> EventStoreClientInfo:
        with self._locked():
            return EventStoreClientInfo(
                event_store_canister_id=self._canister_id,
                flush_delay=self._flush_delay,
                max_batch_size=self._max_batch_size,
                events_pending=len(self._events),
                flush_in_progress=self._flush_in_progress,
                next_flush_scheduled=self._next_flush_scheduled,
                total_events_flushed=self._total_events_flushed,
            )

    def to_dict(self) -> dict[str, Any]:
        """A plain representation of the client's state, without its runtime."""
        with self._locked():
            return {
                "event_store_canister_id": self._canister_id.raw,
                "flush_delay": _delay_to_dict(self._flush_delay),
                "max_batch_size": self._max_batch_size,
                "events": [event.to_dict() for event in self._events],
                "flush_in_progress": self._flush_in_progress,
                "total_events_flushed": self._total_events_flushed,
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any], runtime: ProducerRuntime) -> EventStoreClient:
        """Restore a client and schedule a flush if events were pending."""
        raw_id = data.get("event_store_canister_id", data.get("event_sink_canister_id"))
        if raw_id is None:
            raise ValueError("missing field: event_store_canister_id")
        canister_id = raw_id if isinstance(raw_id, Principal) else Principal(bytes(raw_id))
        try:
            client = cls(
                canister_id,
                runtime,
                flush_delay=_delay_from_dict(data["flush_delay"]),
                max_batch_size=data["max_batch_size"],
            )
            client._events = [IdempotentEvent.from_dict(e) for e in data["events"]]
            client._flush_in_progress = bool(data["flush_in_progress"])
            client._total_events_flushed = data["total_events_flushed"]
        except KeyError as exc:
            raise ValueError(f"missing field: {exc.args[0]}") from exc

        if client._events:
            with client._locked():
                client._process_events(can_flush_immediately=False)
        return client

    # Internals; each expects the lock to be held.

    def _enqueue(self, event: Event) -> None:
        self._events.append(
            IdempotentEvent(
                idempotency_key=self._runtime.rng(),
                name=event.name,
                timestamp=event.timestamp,
                user=event.user,
                source=event.source,
                payload=event.payload,
            )
        )

    def _process_events(self, can_flush_immediately: bool) -> None:
        if self._flush_in_progress:
            return
        if len(self._events) >= self._max_batch_size:
            if can_flush_immediately:
                self._flush_batch_within_lock()
            else:
                self._schedule_flush(timedelta(0))
        elif self._next_flush_scheduled is None:
            self._schedule_flush(self._flush_delay)

    def _schedule_flush(self, delay: timedelta) -> None:
        now = self._runtime.now()
        self._runtime.schedule_flush(delay, self._flush_batch)
        self._next_flush_scheduled = now + delay // _ONE_MILLISECOND

    def _flush_batch(self) -> None:
        self._run_locked(self._flush_batch_within_lock)

    def _flush_batch_within_lock(self) -> None:
        self._next_flush_scheduled = None
        if not self._events:
            return
        self._flush_in_progress = True
        batch = self._events[: self._max_batch_size]
        self._events = self._events[self._max_batch_size :]

        def on_complete(outcome: FlushOutcome) -> None:
            self._on_flush_complete(outcome, batch)

        self._runtime.flush(self._canister_id, list(batch), on_complete)

    def _on_flush_complete(self, outcome: FlushOutcome, events: list[IdempotentEvent]) -> None:
        def action() -> None:
            self._on_flush_within_lock(outcome, events)

        if self._owner != threading.get_ident() and self._lock.locked():
            threading.Thread(target=self._run_locked, args=(action,), daemon=True).start()
        else:
            self._run_locked(action)

    def _on_flush_within_lock(self, outcome: FlushOutcome, events: list[IdempotentEvent]) -> None:
        self._flush_in_progress = False
        if outcome == FlushOutcome.SUCCESS:
            self._total_events_flushed = min(self._total_events_flushed + len(events), _U64_MAX)
        elif outcome == FlushOutcome.FAILED_SHOULD_RETRY:
            self._events.extend(events)
        if self._events:
            self._process_events(can_flush_immediately=False)