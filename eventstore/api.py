"""Data types exchanged with the event store."""

from __future__ import annotations

import base64
import binascii
import zlib
from dataclasses import dataclass, field
from typing import Any, Optional

Milliseconds = int
TimestampMillis = int

_MAX_PRINCIPAL_LENGTH = 29
_U64_MAX = 2**64 - 1
_U128_MAX = 2**128 - 1


def _check_uint(name: str, value: int, maximum: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an integer, got {type(value).__name__}")
    if not 0 <= value <= maximum:
        raise ValueError(f"{name} out of range: {value}")


def _check_optional_uint(name: str, value: Optional[int], maximum: int) -> None:
    if value is not None:
        _check_uint(name, value, maximum)


@dataclass(frozen=True, order=True)
class Principal:
    """An opaque identity of a caller or a canister, held as raw bytes."""

    raw: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw", bytes(self.raw))
        if len(self.raw) > _MAX_PRINCIPAL_LENGTH:
            raise ValueError(
                f"principal is {len(self.raw)} bytes, at most {_MAX_PRINCIPAL_LENGTH} allowed"
            )

    @classmethod
    def anonymous(cls) -> Principal:
        """The principal of an unauthenticated caller."""
        return cls(b"\x04")

    @classmethod
    def from_text(cls, text: str) -> Principal:
        """Parse the dashed, checksummed base32 form of a principal."""
        compact = text.replace("-", "").upper()
        padded = compact + "=" * (-len(compact) % 8)
        try:
            data = base64.b32decode(padded)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"invalid principal text: {text!r}") from exc
        if len(data) < 4:
            raise ValueError(f"principal text too short: {text!r}")
        checksum, raw = data[:4], data[4:]
        principal = cls(raw)
        if zlib.crc32(raw).to_bytes(4, "big") != checksum:
            raise ValueError(f"principal checksum mismatch: {text!r}")
        if principal.to_text() != text.lower():
            raise ValueError(f"principal text is not in canonical form: {text!r}")
        return principal

    def to_text(self) -> str:
        """Render the principal in its dashed, checksummed base32 form."""
        checksum = zlib.crc32(self.raw).to_bytes(4, "big")
        encoded = base64.b32encode(checksum + self.raw).decode("ascii").lower().rstrip("=")
        return "-".join(encoded[i : i + 5] for i in range(0, len(encoded), 5))

    def __str__(self) -> str:
        return self.to_text()


@dataclass(frozen=True)
class Anonymizable:
    """A string value that is either kept public or anonymized on storage."""

    value: str
    anonymize: bool = False

    def as_str(self) -> str:
        return self.value

    def is_public(self) -> bool:
        return not self.anonymize

    def to_dict(self) -> dict[str, str]:
        return {"Anonymize" if self.anonymize else "Public": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Anonymizable:
        if not isinstance(data, dict) or len(data) != 1:
            raise ValueError(f"invalid anonymizable value: {data!r}")
        ((tag, value),) = data.items()
        if tag == "Public":
            return cls(value, False)
        if tag == "Anonymize":
            return cls(value, True)
        raise ValueError(f"unknown anonymizable variant: {tag!r}")


@dataclass
class IdempotentEvent:
    """An event as pushed by a producer, keyed for de-duplication."""

    idempotency_key: int
    name: str
    timestamp: TimestampMillis
    user: Optional[Anonymizable] = None
    source: Optional[Anonymizable] = None
    payload: bytes = b""

    def __post_init__(self) -> None:
        _check_uint("idempotency_key", self.idempotency_key, _U128_MAX)
        _check_uint("timestamp", self.timestamp, _U64_MAX)
        self.payload = bytes(self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "name": self.name,
            "timestamp": self.timestamp,
            "user": self.user.to_dict() if self.user is not None else None,
            "source": self.source.to_dict() if self.source is not None else None,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IdempotentEvent:
        user = data.get("user")
        source = data.get("source")
        return cls(
            idempotency_key=data["idempotency_key"],
            name=data["name"],
            timestamp=data["timestamp"],
            user=Anonymizable.from_dict(user) if user is not None else None,
            source=Anonymizable.from_dict(source) if source is not None else None,
            payload=data.get("payload", b""),
        )


@dataclass
class IndexedEvent:
    """An event as stored, with its position in the log."""

    index: int
    name: str
    timestamp: TimestampMillis
    user: Optional[str] = None
    source: Optional[str] = None
    payload: bytes = b""

    def __post_init__(self) -> None:
        _check_uint("index", self.index, _U64_MAX)
        _check_uint("timestamp", self.timestamp, _U64_MAX)
        self.payload = bytes(self.payload)


@dataclass
class InitArgs:
    """Arguments the store is created with."""

    push_events_whitelist: list[Principal] = field(default_factory=list)
    read_events_whitelist: list[Principal] = field(default_factory=list)
    time_granularity: Optional[Milliseconds] = None

    def __post_init__(self) -> None:
        _check_optional_uint("time_granularity", self.time_granularity, _U64_MAX)
        if self.time_granularity == 0:
            raise ValueError("time_granularity must be positive")


@dataclass
class EventsArgs:
    """A request for a range of stored events."""

    start: int
    length: int

    def __post_init__(self) -> None:
        _check_uint("start", self.start, _U64_MAX)
        _check_uint("length", self.length, _U64_MAX)


@dataclass
class EventsResponse:
    """A range of stored events and the index of the latest one."""

    events: list[IndexedEvent] = field(default_factory=list)
    latest_event_index: Optional[int] = None


@dataclass
class WhitelistedPrincipals:
    """The principals allowed to read and to push events."""

    read: list[Principal] = field(default_factory=list)
    push: list[Principal] = field(default_factory=list)


@dataclass
class PushEventsArgs:
    """A batch of events to store."""

    events: list[IdempotentEvent] = field(default_factory=list)