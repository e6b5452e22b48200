"""Per-user activity aggregated by day and by hour, for the DappRadar integration."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from eventstore.api import IndexedEvent

HOURLY_MAX_ENTRIES = 24 * 70
PAGE_SIZE = 1000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class DappRadarResponseEntry:
    date_time: Optional[str]
    user: str
    transactions: int

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.date_time is not None:
            result["dateTime"] = self.date_time
        result["user"] = self.user
        result["transactions"] = self.transactions
        return result


@dataclass
class DappRadarResponse:
    results: list[DappRadarResponseEntry] = field(default_factory=list)
    page_count: int = 0

    def to_json(self) -> str:
        """The compact JSON body served for this response."""
        return json.dumps(
            {"results": [entry.to_dict() for entry in self.results], "pageCount": self.page_count},
            separators=(",", ":"),
            ensure_ascii=False,
        )


def _extract_page(all_results: list[DappRadarResponseEntry], page: int) -> DappRadarResponse:
    if not all_results:
        return DappRadarResponse()
    page_count = (len(all_results) - 1) // PAGE_SIZE + 1
    if page <= 0:
        return DappRadarResponse([], page_count)
    offset = (page - 1) * PAGE_SIZE
    return DappRadarResponse(all_results[offset : offset + PAGE_SIZE], page_count)


def _increment(counts: dict[str, int], user: str) -> None:
    counts[user] = counts.get(user, 0) + 1


class DappRadarData:
    """Counts of events per user, for each day and for each recent hour."""

    def __init__(self) -> None:
        self._daily: dict[tuple[int, int, int], dict[str, int]] = {}
        self._hourly: dict[tuple[int, int, int, int], dict[str, int]] = {}
        self._next_event_index = 0

    def push_event(self, event: IndexedEvent) -> None:
        """Count ``event`` if it is the next one expected; others are ignored."""
        if event.index != self._next_event_index:
            return
        self._next_event_index = event.index + 1

        if event.user is None:
            return

        try:
            moment = _EPOCH + timedelta(seconds=event.timestamp // 1000)
        except OverflowError as exc:
            raise ValueError(f"timestamp out of range: {event.timestamp}") from exc

        day_key = (moment.year, moment.month, moment.day)
        _increment(self._daily.setdefault(day_key, {}), event.user)
        _increment(self._hourly.setdefault((*day_key, moment.hour), {}), event.user)

        while len(self._hourly) > HOURLY_MAX_ENTRIES:
            del self._hourly[min(self._hourly)]

    def next_event_index(self) -> int:
        return self._next_event_index

    def hourly(self, year: int, month: int, day: int, page: int) -> DappRadarResponse:
        keys = sorted(key for key in self._hourly if key[:3] == (year, month, day))
        results = [
            DappRadarResponseEntry(
                f"{year}-{month:02}-{day:02} {key[3]:02}:00:00", user, count
            )
            for key in keys
            for user, count in sorted(self._hourly[key].items())
        ]
        return _extract_page(results, page)

    def daily(self, year: int, month: int, day: int, page: int) -> DappRadarResponse:
        counts = self._daily.get((year, month, day), {})
        results = [
            DappRadarResponseEntry(None, user, count) for user, count in sorted(counts.items())
        ]
        return _extract_page(results, page)

    def to_dict(self) -> dict[str, Any]:
        return {
            "daily": [[list(key), dict(self._daily[key])] for key in sorted(self._daily)],
            "hourly": [[list(key), dict(self._hourly[key])] for key in sorted(self._hourly)],
            "next_event_index": self._next_event_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DappRadarData:
        try:
            daily = data["daily"]
            hourly = data["hourly"]
            next_event_index = data["next_event_index"]
        except KeyError as exc:
            raise ValueError(f"missing dapp radar field: {exc.args[0]}") from exc
        radar = cls()
        radar._daily = {tuple(key): dict(counts) for key, counts in daily}
        radar._hourly = {tuple(key): dict(counts) for key, counts in hourly}
        radar._next_event_index = next_event_index
        return radar


@dataclass
class IntegrationsData:
    """Data kept for third-party integrations; an integration set to None is disabled."""

    dapp_radar: Optional[DappRadarData] = field(default_factory=DappRadarData)

    def push_event(self, event: IndexedEvent) -> None:
        if self.dapp_radar is not None:
            self.dapp_radar.push_event(event)

    def next_event_index(self) -> Optional[int]:
        """The lowest index any enabled integration still expects, or None."""
        indexes = [self.dapp_radar.next_event_index()] if self.dapp_radar is not None else []
        return min(indexes) if indexes else None

    def to_dict(self) -> dict[str, Any]:
        if self.dapp_radar is None:
            return {}
        return {"dapp_radar": self.dapp_radar.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IntegrationsData:
        radar = data.get("dapp_radar")
        return cls(DappRadarData.from_dict(radar) if radar is not None else DappRadarData())