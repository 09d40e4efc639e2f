"""Bounded, append-only history of terminal scan jobs."""

import threading
from collections import deque

from .types import HistoryEntry

DEFAULT_HISTORY_CAPACITY = 10


class HistoryStore:
    """
    FIFO log of HistoryEntry snapshots.

    Appending beyond capacity evicts the oldest entry. Reads copy the deque
    under a short lock, so readers never hold up the writer for long.
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY):
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self._entries: deque[HistoryEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def append(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def recent(self, n: int | None = None) -> list[HistoryEntry]:
        """Return up to n entries, newest first (all of them if n is None)."""
        with self._lock:
            entries = list(self._entries)
        entries.reverse()
        if n is None:
            return entries
        return entries[: max(n, 0)]

    def find(self, job_id: str) -> HistoryEntry | None:
        with self._lock:
            for entry in self._entries:
                if entry.job_id == job_id:
                    return entry
        return None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
