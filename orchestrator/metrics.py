"""
Counter Store - Thread-safe event counters owned by one orchestrator

Created by the orchestrator service and passed to the components that
increment it, so every orchestrator instance keeps its own counts.
"""

from collections import Counter
from threading import Lock
from typing import Dict


class CounterStore:
    """In-memory counters keyed by event name"""

    def __init__(self):
        self._counts: Counter = Counter()
        self._lock = Lock()

    def increment(self, name: str, amount: int = 1) -> int:
        """
        Add to a counter.

        Args:
            name: Counter name (e.g. "tasks.completed")
            amount: Value to add

        Returns:
            The counter's new value
        """
        with self._lock:
            self._counts[name] += amount
            return self._counts[name]

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(sorted(self._counts.items()))

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
