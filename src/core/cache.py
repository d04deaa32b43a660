"""
Thread-safe quote and chart caches with write-through Parquet snapshots.

Values are deep-copied on the way in and on the way out, so neither the
cache nor its callers can corrupt each other through shared references.
"""

import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import Callable, Generic, Optional, TypeVar

from loguru import logger

from .metrics import Metrics, cache_client_stats
from .models import (
    ChartCacheKey,
    ChartCacheValue,
    Interval,
    QuoteCacheKey,
    QuoteCacheValue,
    validate_symbol,
)
from .storage import (
    chart_snapshot_path,
    load_chart_snapshot,
    load_quote_snapshot,
    quote_snapshot_path,
    save_chart_snapshot,
    save_quote_snapshot,
)
from .timeutil import Clock, now as default_now, to_reference_zone

K = TypeVar("K", QuoteCacheKey, ChartCacheKey)
V = TypeVar("V", QuoteCacheValue, ChartCacheValue)


class SnapshotCache(Generic[K, V]):
    """
    A keyed store guarded by a mutex and persisted to a single snapshot file.

    The in-memory map and the snapshot only agree after save(); callers
    decide when to save.
    """

    prefix: str = ""

    def __init__(
        self,
        path: Optional[Path],
        loader: Callable[[Path], dict],
        saver: Callable[[dict, Path], Path],
        clock: Clock = default_now,
        metrics: Metrics = cache_client_stats,
    ):
        self.path = path
        self._loader = loader
        self._saver = saver
        self._clock = clock
        self._metrics = metrics
        self._data: dict[K, V] = {}
        self._lock = threading.Lock()

    def _metric(self, name: str) -> str:
        return f"{self.prefix}-cache-{name}"

    def get(self, key: K) -> Optional[V]:
        """Return a deep copy of the cached value, or None."""
        with self._lock:
            self._metrics.add(self._metric("gets"))
            value = self._data.get(key)
            if value is None:
                self._metrics.add(self._metric("misses"))
                return None
            self._metrics.add(self._metric("hits"))
            return value.model_copy(deep=True)

    def put(self, key: K, value: V) -> None:
        """
        Store a deep copy of the value and stamp its last update time.

        Raises:
            BadRequestError: If the key's symbol is invalid
        """
        with self._lock:
            self._metrics.add(self._metric("puts"))
            validate_symbol(key.symbol)
            stored = value.model_copy(deep=True)
            stored.last_update_time = to_reference_zone(self._clock())
            self._data[key] = stored

    def keys(self) -> list[K]:
        with self._lock:
            return list(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def load(self) -> None:
        """
        Replace the in-memory map with the snapshot. A missing file empties the cache.

        Raises:
            CacheIOError: If the snapshot exists but is corrupt
        """
        start = time.perf_counter()
        try:
            with self._lock:
                self._data = self._loader(self.path) if self.path else {}
        finally:
            self._metrics.set(self._metric("load-time"), timedelta(seconds=time.perf_counter() - start))
        logger.info(f"Loaded {len(self)} entries into {self.prefix} cache from {self.path}")

    def save(self) -> None:
        """
        Write the whole map to the snapshot file.

        Raises:
            CacheIOError: If the snapshot can't be written
        """
        if not self.path:
            return
        start = time.perf_counter()
        try:
            with self._lock:
                self._saver(self._data, self.path)
        finally:
            self._metrics.set(self._metric("save-time"), timedelta(seconds=time.perf_counter() - start))


class QuoteCache(SnapshotCache[QuoteCacheKey, QuoteCacheValue]):
    """Caches quotes by symbol. With no path the cache lives only in memory."""

    prefix = "quote"

    def __init__(self, path: Optional[Path] = None, clock: Clock = default_now, **kwargs):
        super().__init__(path, load_quote_snapshot, save_quote_snapshot, clock, **kwargs)

    @classmethod
    def open(cls, cache_dir: Optional[Path] = None, clock: Clock = default_now) -> "QuoteCache":
        """Open the quote cache from its snapshot under the user cache directory."""
        cache = cls(quote_snapshot_path(cache_dir), clock)
        cache.load()
        return cache


class ChartCache(SnapshotCache[ChartCacheKey, ChartCacheValue]):
    """Caches charts by symbol and interval."""

    prefix = "chart"

    def __init__(self, path: Optional[Path] = None, clock: Clock = default_now, **kwargs):
        super().__init__(path, load_chart_snapshot, save_chart_snapshot, clock, **kwargs)

    @classmethod
    def open(cls, cache_dir: Optional[Path] = None, clock: Clock = default_now) -> "ChartCache":
        """Open the chart cache from its snapshot under the user cache directory."""
        cache = cls(chart_snapshot_path(cache_dir), clock)
        cache.load()
        return cache

    def trim(self, symbol: str, num_points: int, interval: Interval = Interval.DAILY) -> int:
        """
        Drop the last num_points points of a cached chart, keeping the entry.

        Returns:
            Number of points left, or -1 if the symbol isn't cached
        """
        validate_symbol(symbol)
        key = ChartCacheKey(symbol=symbol, interval=interval)
        with self._lock:
            value = self._data.get(key)
            if value is None:
                return -1
            keep = max(len(value.chart.points) - num_points, 0)
            value.chart.points = value.chart.points[:keep]
            return keep


class NoOpChartCache(ChartCache):
    """A chart cache that never hits and never stores anything."""

    def __init__(self, clock: Clock = default_now, **kwargs):
        super().__init__(None, clock, **kwargs)

    def get(self, key: ChartCacheKey) -> Optional[ChartCacheValue]:
        return None

    def put(self, key: ChartCacheKey, value: ChartCacheValue) -> None:
        return None

    def load(self) -> None:
        return None

    def save(self) -> None:
        return None

    def trim(self, symbol: str, num_points: int, interval: Interval = Interval.DAILY) -> int:
        return -1
