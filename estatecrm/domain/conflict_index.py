"""
Interval index over one calendar resource (an agent's appointments).

Two intervals overlap when start < other_end and end > other_start, so
back-to-back and zero-length appointments never conflict.

Entries are kept sorted by start. Tracking the longest stored duration bounds
the left edge of every query, so a lookup is a bisect plus a scan over the
candidates whose start lies in [start - longest, end).
"""
import bisect
import threading
from datetime import datetime, timedelta


class ConflictIndex:
    def __init__(self, resource: str):
        self.resource = resource
        self._lock = threading.RLock()
        self._starts: list[tuple[datetime, int]] = []
        self._spans: dict[int, tuple[datetime, datetime]] = {}
        self._longest = timedelta(0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._spans)

    def __contains__(self, item_id: int) -> bool:
        with self._lock:
            return item_id in self._spans

    def span(self, item_id: int) -> tuple[datetime, datetime] | None:
        with self._lock:
            return self._spans.get(item_id)

    def insert(self, item_id: int, start: datetime, end: datetime) -> None:
        """Add or replace the interval stored for item_id."""
        if end < start:
            raise ValueError("end must not precede start")
        with self._lock:
            if item_id in self._spans:
                self._remove_locked(item_id)
            bisect.insort(self._starts, (start, item_id))
            self._spans[item_id] = (start, end)
            if end - start > self._longest:
                self._longest = end - start

    def remove(self, item_id: int) -> bool:
        with self._lock:
            if item_id not in self._spans:
                return False
            self._remove_locked(item_id)
            return True

    def _remove_locked(self, item_id: int) -> None:
        start, _ = self._spans.pop(item_id)
        pos = bisect.bisect_left(self._starts, (start, item_id))
        del self._starts[pos]
        if not self._spans:
            self._longest = timedelta(0)

    def overlapping(self, start: datetime, end: datetime, exclude: int | None = None) -> set[int]:
        """Ids whose interval overlaps [start, end), minus `exclude`."""
        if end <= start:
            return set()
        with self._lock:
            lo = bisect.bisect_left(self._starts, (start - self._longest,))
            hi = bisect.bisect_left(self._starts, (end,))
            hits = set()
            for other_start, item_id in self._starts[lo:hi]:
                if item_id == exclude:
                    continue
                _, other_end = self._spans[item_id]
                if other_end == other_start:
                    continue
                if start < other_end and end > other_start:
                    hits.add(item_id)
            return hits

    def replace(self, item_id: int, start: datetime, end: datetime) -> None:
        """Move an existing entry in one step (no window where it is absent)."""
        self.insert(item_id, start, end)
