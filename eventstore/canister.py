"""The event store service: access control, event ingestion, queries and upgrades."""

from __future__ import annotations

import dataclasses
import json
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
from urllib.parse import unquote, urlsplit

import msgpack

from eventstore.api import (
    EventsArgs,
    EventsResponse,
    IdempotentEvent,
    InitArgs,
    Milliseconds,
    Principal,
    PushEventsArgs,
    TimestampMillis,
    WhitelistedPrincipals,
)
from eventstore.dapp_radar import IntegrationsData
from eventstore.deduper import EventDeduper
from eventstore.store import SALT_LENGTH, Events, Salt

POPULATE_BATCH_SIZE = 10_000

_U32_MAX = 2**32 - 1
_U8_MAX = 2**8 - 1
_UNSIGNED = re.compile(r"\+?[0-9]+")


class Unauthorized(Exception):
    """The caller is not on the whitelist for the requested action."""

    def __init__(self, action: str) -> None:
        super().__init__(f"Caller is not authorized to {action} events")
        self.action = action


@dataclass
class HttpResponse:
    status_code: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    @classmethod
    def from_status_code(cls, status_code: int) -> HttpResponse:
        return cls(status_code)


def _now_millis() -> TimestampMillis:
    return time.time_ns() // 1_000_000


class State:
    """Everything the event store holds."""

    def __init__(
        self,
        push_events_whitelist: Iterable[Principal],
        read_events_whitelist: Iterable[Principal],
        time_granularity: Optional[Milliseconds],
    ) -> None:
        self.push_events_whitelist: set[Principal] = set(push_events_whitelist)
        self.read_events_whitelist: set[Principal] = set(read_events_whitelist)
        self.time_granularity = time_granularity
        self.events = Events()
        self.event_deduper = EventDeduper()
        self.integrations_data = IntegrationsData()
        self.salt = Salt()

    def can_push_events(self, caller: Principal) -> bool:
        return caller in self.push_events_whitelist

    def can_read_events(self, caller: Principal) -> bool:
        return caller in self.read_events_whitelist

    def whitelisted_principals(self) -> WhitelistedPrincipals:
        return WhitelistedPrincipals(
            read=sorted(self.read_events_whitelist),
            push=sorted(self.push_events_whitelist),
        )

    def set_salt(self, salt: bytes) -> None:
        self.salt.set(salt)

    def push_event(self, event: IdempotentEvent, now: TimestampMillis) -> None:
        """Store ``event`` unless its idempotency key was seen recently."""
        if not self.event_deduper.try_push(event.idempotency_key, now):
            return
        if self.time_granularity is not None:
            event = dataclasses.replace(
                event, timestamp=event.timestamp - event.timestamp % self.time_granularity
            )
        indexed = self.events.push(event, self.salt.get())
        self.integrations_data.push_event(indexed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "push_events_whitelist": [p.raw for p in sorted(self.push_events_whitelist)],
            "read_events_whitelist": [p.raw for p in sorted(self.read_events_whitelist)],
            "time_granularity": self.time_granularity,
            "event_deduper": self.event_deduper.to_dict(),
            "integrations_data": self.integrations_data.to_dict(),
            "salt": bytes(self.salt),
            "events": self.events.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> State:
        try:
            state = cls(
                (Principal(bytes(raw)) for raw in data["push_events_whitelist"]),
                (Principal(bytes(raw)) for raw in data["read_events_whitelist"]),
                data["time_granularity"],
            )
            state.event_deduper = EventDeduper.from_dict(data["event_deduper"])
            state.salt = Salt(bytes(data["salt"]))
        except KeyError as exc:
            raise ValueError(f"missing state field: {exc.args[0]}") from exc
        state.integrations_data = IntegrationsData.from_dict(data.get("integrations_data", {}))
        stored_events = data.get("events")
        if stored_events is not None:
            state.events = Events.from_dict(stored_events)
        return state


def _parse_unsigned(text: str, maximum: int) -> Optional[int]:
    if not _UNSIGNED.fullmatch(text):
        return None
    value = int(text)
    return value if value <= maximum else None


def _page_from_query(query: str) -> int:
    for pair in query.split("&"):
        key, _, value = pair.partition("=")
        if key == "page":
            if not value.isdigit():
                raise ValueError(f"invalid page number: {value!r}")
            return int(value)
    return 0


class EventStoreCanister:
    """The event store service as seen by its callers."""

    def __init__(self, args: InitArgs) -> None:
        self._state: Optional[State] = State(
            args.push_events_whitelist,
            args.read_events_whitelist,
            args.time_granularity,
        )

    @property
    def state(self) -> State:
        if self._state is None:
            raise RuntimeError("State has not been initialized")
        return self._state

    def initialize_salt(self, salt: Optional[bytes] = None) -> None:
        """Set the anonymization salt, drawing a random one if none is given."""
        self.state.set_salt(salt if salt is not None else os.urandom(SALT_LENGTH))

    def push_events(
        self, caller: Principal, args: PushEventsArgs, now: Optional[TimestampMillis] = None
    ) -> None:
        state = self.state
        if not state.can_push_events(caller):
            raise Unauthorized("push")
        timestamp = now if now is not None else _now_millis()
        for event in args.events:
            state.push_event(event, timestamp)

    def events(self, caller: Principal, args: EventsArgs) -> EventsResponse:
        state = self.state
        if not state.can_read_events(caller):
            raise Unauthorized("read")
        stats = state.events.stats()
        return EventsResponse(
            events=state.events.get(args.start, args.length),
            latest_event_index=stats.latest_event_index,
        )

    def whitelisted_principals(self) -> WhitelistedPrincipals:
        return self.state.whitelisted_principals()

    def http_request(self, url: str) -> HttpResponse:
        """Serve a GET of ``url``; unknown paths get a 404."""
        try:
            parts = urlsplit(url)
        except ValueError:
            return HttpResponse.from_status_code(404)
        segments = unquote(parts.path).split("/")[1:]
        if segments and segments[0] == "dapp-radar":
            response = self._dapp_radar_request(segments, parts.query)
            if response is not None:
                return response
        return HttpResponse.from_status_code(404)

    def _dapp_radar_request(self, segments: list[str], query: str) -> Optional[HttpResponse]:
        radar = self.state.integrations_data.dapp_radar
        if radar is None:
            return None
        if len(segments) != 4 or segments[0] != "dapp-radar" or segments[1] != "aggregated-data":
            return None

        page = _page_from_query(query)
        date_parts = segments[2].split("-")
        if len(date_parts) != 3:
            return None
        year = _parse_unsigned(date_parts[0], _U32_MAX)
        month = _parse_unsigned(date_parts[1], _U8_MAX)
        day = _parse_unsigned(date_parts[2], _U8_MAX)
        if year is None or month is None or day is None:
            return None

        grouping = segments[3]
        if grouping == "daily":
            data = radar.daily(year, month, day, page)
        elif grouping == "hourly":
            data = radar.hourly(year, month, day, page)
        else:
            return None

        body = data.to_json().encode("utf-8")
        return HttpResponse(
            status_code=200,
            headers=[
                ("content-type", "application/json"),
                ("content-length", str(len(body))),
            ],
            body=body,
        )

    def pre_upgrade(self) -> bytes:
        """Serialize and give up the state; the instance is unusable afterwards."""
        state = self.state
        self._state = None
        return msgpack.packb(state.to_dict(), use_bin_type=True)

    @classmethod
    def post_upgrade(cls, data: bytes) -> EventStoreCanister:
        """Restore from ``pre_upgrade`` output and catch up integration data."""
        decoded = msgpack.unpackb(data, raw=False)
        if not isinstance(decoded, dict):
            raise ValueError("upgrade data does not hold a state")
        canister = cls.__new__(cls)
        canister._state = State.from_dict(decoded)
        canister._populate_integrations_data()
        return canister

    def _populate_integrations_data(self) -> None:
        state = self.state
        while True:
            next_index = state.integrations_data.next_event_index()
            if next_index is None:
                return
            latest = state.events.stats().latest_event_index
            if latest is None or latest <= next_index:
                return
            for event in state.events.get(next_index, POPULATE_BATCH_SIZE):
                state.integrations_data.push_event(event)
            if state.integrations_data.next_event_index() == next_index:
                return