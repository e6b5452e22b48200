"""Rejects events whose idempotency key was seen within a time window."""

from __future__ import annotations

from typing import Any

DEFAULT_WINDOW_DURATION = 60 * 60 * 1000  # one hour, in milliseconds


class EventDeduper:
    """Remembers recently seen keys and the time each was first seen."""

    def __init__(self, window_duration: int = DEFAULT_WINDOW_DURATION) -> None:
        self.window_duration = window_duration
        self._recently_added: dict[int, int] = {}
        self._last_pruned = 0

    def try_push(self, key: int, now: int) -> bool:
        """Record ``key`` at ``now``; return False if it was already recorded."""
        self._prune_if_due(now)
        if key in self._recently_added:
            return False
        self._recently_added[key] = now
        return True

    def is_empty(self) -> bool:
        return not self._recently_added

    def __len__(self) -> int:
        return len(self._recently_added)

    def _prune_if_due(self, now: int) -> None:
        if max(now - self._last_pruned, 0) > self.window_duration // 2:
            cutoff = max(now - self.window_duration, 0)
            self._recently_added = {
                key: ts for key, ts in self._recently_added.items() if ts > cutoff
            }
            self._last_pruned = now

    def to_dict(self) -> dict[str, Any]:
        """A plain representation; keys are stored as 16-byte big-endian strings."""
        return {
            "window_duration": self.window_duration,
            "recently_added": [
                [key.to_bytes(16, "big"), ts]
                for key, ts in sorted(self._recently_added.items())
            ],
            "recently_added_last_pruned": self._last_pruned,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventDeduper:
        try:
            deduper = cls(data["window_duration"])
            entries = data["recently_added"]
            last_pruned = data["recently_added_last_pruned"]
        except KeyError as exc:
            raise ValueError(f"missing deduper field: {exc.args[0]}") from exc
        deduper._recently_added = {
            (int.from_bytes(key, "big") if isinstance(key, (bytes, bytearray)) else int(key)): ts
            for key, ts in entries
        }
        deduper._last_pruned = last_pruned
        return deduper