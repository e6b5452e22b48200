import pytest

from eventstore.api import EventsArgs, EventsResponse, IndexedEvent, Principal
from eventstore.consumer import EventStoreCallError, EventStoreConsumer


class _RecordingRuntime:
    def __init__(self, stored):
        self.stored = stored
        self.calls = []

    async def events(self, canister_id, args):
        self.calls.append((canister_id, args))
        selected = self.stored[args.start : args.start + args.length]
        latest = len(self.stored) - 1 if self.stored else None
        return EventsResponse(events=selected, latest_event_index=latest)


class _FailingRuntime:
    async def events(self, canister_id, args):
        raise EventStoreCallError(4, "Caller is not authorized to read events")


def _stored(count):
    return [IndexedEvent(index=i, name=f"e{i}", timestamp=i) for i in range(count)]


@pytest.mark.asyncio
async def test_events_forwards_range_and_canister():
    canister = Principal(b"\x01\x02")
    runtime = _RecordingRuntime(_stored(10))
    consumer = EventStoreConsumer(canister, runtime)

    response = await consumer.events(0, 5)

    assert runtime.calls == [(canister, EventsArgs(start=0, length=5))]
    assert [e.index for e in response.events] == [0, 1, 2, 3, 4]
    assert response.latest_event_index == 9


@pytest.mark.asyncio
async def test_events_empty_store():
    consumer = EventStoreConsumer(Principal.anonymous(), _RecordingRuntime([]))
    response = await consumer.events(0, 3)
    assert response.events == []
    assert response.latest_event_index is None


@pytest.mark.asyncio
async def test_events_error_propagates():
    consumer = EventStoreConsumer(Principal.anonymous(), _FailingRuntime())
    with pytest.raises(EventStoreCallError) as info:
        await consumer.events(0, 1)
    assert info.value.code == 4
    assert info.value.message == "Caller is not authorized to read events"


@pytest.mark.asyncio
async def test_events_invalid_range_rejected():
    runtime = _RecordingRuntime(_stored(2))
    consumer = EventStoreConsumer(Principal.anonymous(), runtime)
    with pytest.raises(ValueError):
        await consumer.events(-1, 1)
    assert runtime.calls == []


def test_call_error_text_includes_code_and_message():
    error = EventStoreCallError(2, "boom")
    assert str(error) == "[2] boom"