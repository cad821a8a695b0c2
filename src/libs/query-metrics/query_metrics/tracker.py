# src/libs/query-metrics/query_metrics/tracker.py
import threading
from typing import Dict, Hashable, Optional


class CorrelationTracker:
    """
    Maps the correlation id of every in-flight query to the monotonic timestamp
    at which its start event was observed.

    Entries are created on "query started" and consumed exactly once by whichever
    terminal event arrives first. All operations take a lock so the tracker can be
    shared by listeners fired from several threads (e.g. a pooled sync engine).
    """
    def __init__(self):
        # Insertion ordered, so the oldest start is always first.
        self._starts: Dict[Hashable, float] = {}
        self._lock = threading.Lock()

    def record_start(self, correlation_id: Hashable, timestamp: float) -> bool:
        """
        Records the start time of a query.

        A second start for an id that is still in flight replaces the first one;
        the entry moves to the end so eviction order stays by start time.

        Returns:
            True if an existing entry was replaced, False otherwise.
        """
        with self._lock:
            replaced = self._starts.pop(correlation_id, None) is not None
            self._starts[correlation_id] = timestamp
            return replaced

    def take_and_remove(self, correlation_id: Hashable) -> Optional[float]:
        """
        Atomically reads and deletes the entry for a query.

        Returns:
            The recorded start timestamp, or None when no start was recorded for
            the id (a terminal event without a matching start).
        """
        with self._lock:
            return self._starts.pop(correlation_id, None)

    def evict_older_than(self, max_age: float, now: float) -> int:
        """
        Drops entries whose start is more than `max_age` seconds before `now`.

        Returns:
            The number of evicted entries.
        """
        cutoff = now - max_age
        evicted = 0
        with self._lock:
            while self._starts:
                oldest_id = next(iter(self._starts))
                if self._starts[oldest_id] >= cutoff:
                    break
                del self._starts[oldest_id]
                evicted += 1
        return evicted

    def clear(self) -> None:
        with self._lock:
            self._starts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._starts)

    def __contains__(self, correlation_id: Hashable) -> bool:
        with self._lock:
            return correlation_id in self._starts
