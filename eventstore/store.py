"""The event log: events are indexed, strings interned, users optionally anonymized."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional

import msgpack

from eventstore.api import Anonymizable, IdempotentEvent, IndexedEvent

SALT_LENGTH = 32
_UNKNOWN_NAME = "unknown"


def _check_salt(salt: bytes) -> bytes:
    salt = bytes(salt)
    if len(salt) != SALT_LENGTH:
        raise ValueError(f"salt must be {SALT_LENGTH} bytes, got {len(salt)}")
    return salt


def anonymize(value: str, salt: bytes) -> str:
    """Derive a 32 character hex string from ``value`` and ``salt``."""
    digest = hashlib.sha256(value.encode("utf-8") + _check_salt(salt)).digest()
    return digest[16:].hex()


def _to_maybe_anonymized_string(value: Anonymizable, salt: bytes) -> str:
    return value.as_str() if value.is_public() else anonymize(value.as_str(), salt)


class Salt:
    """A 32-byte salt that may be set once; all zeros means not yet set."""

    def __init__(self, salt: bytes = bytes(SALT_LENGTH)) -> None:
        self._salt = _check_salt(salt)

    def get(self) -> bytes:
        if not self.is_initialized():
            raise RuntimeError("salt has not been initialized")
        return self._salt

    def set(self, salt: bytes) -> None:
        if self.is_initialized():
            raise RuntimeError("salt has already been initialized")
        self._salt = _check_salt(salt)

    def is_initialized(self) -> bool:
        return any(self._salt)

    def __bytes__(self) -> bytes:
        return self._salt


class StringToNumMap:
    """Interns strings, giving each a number in order of first appearance."""

    def __init__(self, strings: Iterable[str] = ()) -> None:
        self._strings: list[str] = []
        self._nums: dict[str, int] = {}
        for string in strings:
            self._nums.setdefault(string, len(self._strings))
            self._strings.append(string)

    def convert_to_num(self, string: str) -> int:
        num = self._nums.get(string)
        if num is None:
            num = len(self._strings)
            self._strings.append(string)
            self._nums[string] = num
        return num

    def convert_to_string(self, num: int) -> Optional[str]:
        if 0 <= num < len(self._strings):
            return self._strings[num]
        return None

    def __len__(self) -> int:
        return len(self._strings)

    def __iter__(self) -> Iterator[str]:
        return iter(self._strings)


@dataclass
class _StorableEvent:
    index: int
    name: int
    timestamp: int
    user: Optional[int] = None
    source: Optional[int] = None
    payload: bytes = b""

    def to_bytes(self) -> bytes:
        record: dict[str, Any] = {"i": self.index, "n": self.name, "t": self.timestamp}
        if self.user is not None:
            record["u"] = self.user
        if self.source is not None:
            record["s"] = self.source
        if self.payload:
            record["p"] = self.payload
        return msgpack.packb(record, use_bin_type=True)

    @classmethod
    def from_bytes(cls, data: bytes) -> _StorableEvent:
        record = msgpack.unpackb(data, raw=False)
        try:
            return cls(
                index=record["i"],
                name=record["n"],
                timestamp=record["t"],
                user=record.get("u"),
                source=record.get("s"),
                payload=bytes(record.get("p", b"")),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"invalid stored event: {record!r}") from exc


@dataclass(frozen=True)
class EventsStats:
    latest_event_index: Optional[int]


class Events:
    """An append-only log of events."""

    def __init__(self) -> None:
        self._log: list[bytes] = []
        self._strings = StringToNumMap()

    def get(self, start: int, length: int) -> list[IndexedEvent]:
        """Up to ``length`` events starting at index ``start``."""
        if start < 0 or length < 0:
            raise ValueError("start and length must not be negative")
        return [
            self._hydrate(_StorableEvent.from_bytes(raw))
            for raw in self._log[start : start + length]
        ]

    def push(self, event: IdempotentEvent, salt: bytes) -> IndexedEvent:
        """Append ``event`` and return it as stored."""
        indexed = IndexedEvent(
            index=len(self._log),
            name=event.name,
            timestamp=event.timestamp,
            user=_to_maybe_anonymized_string(event.user, salt) if event.user else None,
            source=_to_maybe_anonymized_string(event.source, salt) if event.source else None,
            payload=event.payload,
        )
        storable = _StorableEvent(
            index=indexed.index,
            name=self._strings.convert_to_num(indexed.name),
            timestamp=indexed.timestamp,
            user=self._strings.convert_to_num(indexed.user) if indexed.user is not None else None,
            source=(
                self._strings.convert_to_num(indexed.source)
                if indexed.source is not None
                else None
            ),
            payload=indexed.payload,
        )
        self._log.append(storable.to_bytes())
        return indexed

    def stats(self) -> EventsStats:
        return EventsStats(latest_event_index=len(self._log) - 1 if self._log else None)

    def to_dict(self) -> dict[str, Any]:
        """A plain representation: the encoded records and the interned strings."""
        return {"events": list(self._log), "strings": list(self._strings)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Events:
        try:
            records = data["events"]
            strings = data["strings"]
        except KeyError as exc:
            raise ValueError(f"missing events field: {exc.args[0]}") from exc
        events = cls()
        events._log = [bytes(raw) for raw in records]
        events._strings = StringToNumMap(strings)
        return events

    def _hydrate(self, event: _StorableEvent) -> IndexedEvent:
        name = self._strings.convert_to_string(event.name)
        return IndexedEvent(
            index=event.index,
            name=name if name is not None else _UNKNOWN_NAME,
            timestamp=event.timestamp,
            user=self._strings.convert_to_string(event.user) if event.user is not None else None,
            source=(
                self._strings.convert_to_string(event.source)
                if event.source is not None
                else None
            ),
            payload=event.payload,
        )