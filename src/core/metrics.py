"""
Process-wide named counters, in the spirit of Go's expvar maps.
"""

import threading
from datetime import timedelta
from typing import Any, Union

Number = Union[int, float]


class Metrics:
    """A thread-safe map of named counters and gauges."""

    def __init__(self, name: str):
        self.name = name
        self._values: dict[str, Any] = {}
        self._lock = threading.Lock()

    def add(self, key: str, delta: Number = 1) -> None:
        """Increment a counter, creating it at zero if missing."""
        with self._lock:
            self._values[key] = self._values.get(key, 0) + delta

    def set(self, key: str, value: Union[Number, timedelta]) -> None:
        """Overwrite a gauge. Durations are stored in seconds."""
        if isinstance(value, timedelta):
            value = value.total_seconds()
        with self._lock:
            self._values[key] = value

    def get(self, key: str, default: Number = 0) -> Number:
        with self._lock:
            return self._values.get(key, default)

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of all values, sorted by key."""
        with self._lock:
            return dict(sorted(self._values.items()))

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


cache_client_stats = Metrics("iex-cache-client-stats")
