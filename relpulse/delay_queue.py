"""
Delay queue: a min-heap of work keyed by due time.

Replaces "run this again after N seconds" scheduling. Callers push keyed items
with a due time and poll pop_due() from their own loop, so ordering and jitter
are testable with a fake clock.
"""

import heapq
import itertools
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple


class DelayQueue:
    """Thread-safe min-heap of (due_at, seq, key, item) with keyed de-duplication."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self.clock = clock or time.time
        self._heap: List[Tuple[float, int, str, Any]] = []
        self._live: Dict[str, int] = {}  # key -> seq of the live heap entry
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def schedule(self, key: str, item: Any, delay: float = 0.0, replace: bool = False) -> bool:
        """
        Schedule item to become due after delay seconds.

        Returns False when the key is already pending and replace is False.
        """
        due_at = self.clock() + max(0.0, delay)
        with self._lock:
            if key in self._live and not replace:
                return False
            seq = next(self._seq)
            self._live[key] = seq
            heapq.heappush(self._heap, (due_at, seq, key, item))
            return True

    def cancel(self, key: str) -> bool:
        with self._lock:
            return self._live.pop(key, None) is not None

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._live

    def pop_due(self, now: Optional[float] = None, limit: Optional[int] = None) -> List[Tuple[str, Any]]:
        """Remove and return (key, item) pairs whose due time has passed, earliest first."""
        now = self.clock() if now is None else now
        due = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                if limit is not None and len(due) >= limit:
                    break
                _, seq, key, item = heapq.heappop(self._heap)
                # Skip entries superseded by replace=True or cancelled
                if self._live.get(key) != seq:
                    continue
                del self._live[key]
                due.append((key, item))
        return due

    def next_due_at(self) -> Optional[float]:
        with self._lock:
            while self._heap and self._live.get(self._heap[0][2]) != self._heap[0][1]:
                heapq.heappop(self._heap)
            return self._heap[0][0] if self._heap else None

    def pending(self) -> List[Tuple[str, float]]:
        """Snapshot of (key, due_at) for live entries, earliest first."""
        with self._lock:
            live = [(key, due) for due, seq, key, _ in self._heap if self._live.get(key) == seq]
        return sorted(live, key=lambda kv: kv[1])

    def __len__(self) -> int:
        with self._lock:
            return len(self._live)
