"""Bounded, append-only time series with deterministic front eviction."""

from __future__ import annotations

from collections import deque
from typing import Iterator

from benchmon_telemetry.models import EMPTY_STATS, DataPoint, SeriesStats


class TimeSeries:
    """Oldest-first sequence of ``DataPoint`` bounded by count and/or age.

    ``max_points`` keeps only the most recent N points. ``window_ms`` keeps
    only points whose timestamp is at least ``newest - window_ms`` (or
    ``now - window_ms`` when pruned against a clock). Timestamps are strictly
    increasing; out-of-order appends are rejected.
    """

    def __init__(self, max_points: int | None = None, window_ms: int | None = None) -> None:
        if max_points is None and window_ms is None:
            raise ValueError("TimeSeries needs max_points or window_ms")
        if max_points is not None and max_points < 1:
            raise ValueError("max_points must be >= 1")
        if window_ms is not None and window_ms < 0:
            raise ValueError("window_ms must be >= 0")
        self.max_points = max_points
        self.window_ms = window_ms
        self._points: deque[DataPoint] = deque()

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[DataPoint]:
        return iter(tuple(self._points))

    def __repr__(self) -> str:
        return f"TimeSeries(len={len(self)}, max_points={self.max_points}, window_ms={self.window_ms})"

    @property
    def latest(self) -> DataPoint | None:
        return self._points[-1] if self._points else None

    @property
    def span_ms(self) -> int:
        if len(self._points) < 2:
            return 0
        return self._points[-1].timestamp_ms - self._points[0].timestamp_ms

    def append(self, point: DataPoint) -> bool:
        last = self.latest
        if last is not None and point.timestamp_ms <= last.timestamp_ms:
            return False
        self._points.append(point)
        self._evict(point.timestamp_ms)
        return True

    def prune(self, now_ms: int) -> int:
        """Drop points older than ``now_ms - window_ms``; returns how many went."""
        if self.window_ms is None:
            return 0
        before = len(self._points)
        cutoff = now_ms - self.window_ms
        while self._points and self._points[0].timestamp_ms < cutoff:
            self._points.popleft()
        return before - len(self._points)

    def _evict(self, reference_ms: int) -> None:
        if self.max_points is not None:
            while len(self._points) > self.max_points:
                self._points.popleft()
        self.prune(reference_ms)

    def window(self, duration_ms: int | None = None, count: int | None = None) -> tuple[DataPoint, ...]:
        points = tuple(self._points)
        if duration_ms is not None and points:
            cutoff = points[-1].timestamp_ms - duration_ms
            points = tuple(p for p in points if p.timestamp_ms >= cutoff)
        if count is not None:
            points = points[-count:] if count > 0 else ()
        return points

    def clear(self) -> None:
        self._points.clear()

    def snapshot(self) -> tuple[DataPoint, ...]:
        return tuple(self._points)

    def values(self) -> list[float]:
        return [p.value for p in self._points]

    def stats(self) -> SeriesStats:
        return series_stats(self.values())


def series_stats(values: list[float]) -> SeriesStats:
    if not values:
        return EMPTY_STATS
    return SeriesStats(min=min(values), max=max(values), avg=sum(values) / len(values), count=len(values))
