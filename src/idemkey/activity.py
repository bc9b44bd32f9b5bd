from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

# (timestamp, message) callback invoked whenever coordination state changes.
LogAppender = Callable[[float, str], None]


@dataclass(frozen=True)
class ActivityEntry:
    timestamp: float
    message: str


class ActivityLog:
    """Append-only server log feed for whatever drives the service."""

    def __init__(self, max_entries: int | None = None) -> None:
        self._entries: deque[ActivityEntry] = deque(maxlen=max_entries)
        self._subscribers: list[LogAppender] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[ActivityEntry]:
        return list(self._entries)

    def messages(self) -> list[str]:
        return [entry.message for entry in self._entries]

    def subscribe(self, callback: LogAppender) -> None:
        self._subscribers.append(callback)

    def append(self, timestamp: float, message: str) -> None:
        self._entries.append(ActivityEntry(timestamp=timestamp, message=message))
        for callback in self._subscribers:
            callback(timestamp, message)

    def clear(self) -> None:
        self._entries.clear()
