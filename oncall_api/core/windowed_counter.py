"""Time-windowed hit counter used by failure ingestion.

Each key keeps the timestamps of its recent hits. Hits older than the
window passed to ``hit`` are evicted on every access, and the number of
tracked keys is capped; when the cap is reached the key whose newest hit
is oldest is dropped first.
"""

from collections import OrderedDict, deque
from collections.abc import Hashable
from datetime import datetime, timedelta


class WindowedCounter:
    """Counts hits per key inside a sliding time window.

    Not thread-safe; intended for use from a single event loop.
    """

    def __init__(self, max_keys: int = 10_000) -> None:
        if max_keys < 1:
            raise ValueError("max_keys must be at least 1")
        self.max_keys = max_keys
        # Ordered by recency of last hit so the stalest key is first
        self._hits: OrderedDict[Hashable, deque[datetime]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._hits)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._hits

    def hit(self, key: Hashable, now: datetime, window: timedelta) -> int:
        """Record a hit at ``now`` and return the count inside the window."""
        timestamps = self._hits.pop(key, None)
        if timestamps is None:
            timestamps = deque()
            while len(self._hits) >= self.max_keys:
                self._hits.popitem(last=False)
        timestamps.append(now)
        self._evict(timestamps, now - window)
        self._hits[key] = timestamps
        return len(timestamps)

    def count(self, key: Hashable, now: datetime, window: timedelta) -> int:
        """Return the number of hits inside the window without recording one."""
        timestamps = self._hits.get(key)
        if timestamps is None:
            return 0
        self._evict(timestamps, now - window)
        if not timestamps:
            del self._hits[key]
            return 0
        return len(timestamps)

    def reset(self, key: Hashable) -> None:
        self._hits.pop(key, None)

    def clear(self) -> None:
        self._hits.clear()

    @staticmethod
    def _evict(timestamps: deque[datetime], cutoff: datetime) -> None:
        while timestamps and timestamps[0] < cutoff:
            timestamps.popleft()
