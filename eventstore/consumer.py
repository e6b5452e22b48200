"""Client for reading events back out of the event store."""

from __future__ import annotations

from typing import Protocol

from eventstore.api import EventsArgs, EventsResponse, Principal


class EventStoreCallError(Exception):
    """A call to the event store was rejected or failed."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message


class ConsumerRuntime(Protocol):
    """Carries read requests to the event store."""

    async def events(self, canister_id: Principal, args: EventsArgs) -> EventsResponse:
        """Fetch events, raising EventStoreCallError if the call fails."""


class EventStoreConsumer:
    """Reads ranges of events from one event store."""

    def __init__(self, canister_id: Principal, runtime: ConsumerRuntime) -> None:
        self.canister_id = canister_id
        self.runtime = runtime

    async def events(self, start: int, length: int) -> EventsResponse:
        """Fetch up to ``length`` events starting at index ``start``."""
        return await self.runtime.events(self.canister_id, EventsArgs(start, length))