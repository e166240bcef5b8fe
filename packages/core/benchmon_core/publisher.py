"""Snapshot publisher: the single shared read model observed by the UI."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable

from benchmon_telemetry.models import CapabilityState, DataPoint, MetricId, MetricSnapshot, Snapshot

from .timeseries import TimeSeries


logger = logging.getLogger("benchmon.publisher")

SnapshotCallback = Callable[[Snapshot], None]


@dataclass
class _MetricSlot:
    series: TimeSeries
    latest: DataPoint | None = None
    payload: Any = None
    capability: CapabilityState | None = None
    last_error: str | None = None

    def freeze(self, metric_id: MetricId) -> MetricSnapshot:
        return MetricSnapshot(
            metric_id=metric_id,
            latest=self.latest,
            payload=self.payload,
            series=self.series.snapshot(),
            capability=self.capability,
            last_error=self.last_error,
        )


class Subscription:
    """Handle for one observer of snapshot updates.

    Updates are delivered to ``callback`` (if any) and to a bounded queue that
    drops the oldest snapshot when the consumer falls behind.
    """

    def __init__(self, publisher: SnapshotPublisher, callback: SnapshotCallback | None, maxsize: int) -> None:
        self._publisher = publisher
        self._callback = callback
        self._queue: queue.Queue[Snapshot] = queue.Queue(maxsize=max(1, maxsize))
        self.closed = False

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def get(self, timeout: float | None = None) -> Snapshot | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._publisher._unsubscribe(self)

    def _deliver(self, snap: Snapshot) -> None:
        while True:
            try:
                self._queue.put_nowait(snap)
                break
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass
        if self._callback is not None:
            try:
                self._callback(snap)
            except Exception:
                logger.exception("snapshot subscriber failed", extra={"event": "subscriber_error"})


class SnapshotPublisher:
    """Owns every registered metric's latest value and buffer behind one lock.

    Writers pass the buffer they were registered with; writes from a loop
    whose buffer has since been dropped or replaced are ignored.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._delivery_lock = threading.Lock()
        self._slots: dict[MetricId, _MetricSlot] = {}
        self._subscribers: list[Subscription] = []
        self._version = 0
        self._delivered = 0
        self._current = Snapshot(version=0)

    def latest(self) -> Snapshot:
        with self._lock:
            return self._current

    def subscribe(self, callback: SnapshotCallback | None = None, maxsize: int = 64) -> Subscription:
        sub = Subscription(self, callback, maxsize)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def _slot(self, metric_id: MetricId, series: TimeSeries | None) -> _MetricSlot | None:
        slot = self._slots.get(metric_id)
        if slot is None or (series is not None and slot.series is not series):
            return None
        return slot

    def register(self, metric_id: MetricId, series: TimeSeries) -> None:
        with self._lock:
            self._slots[metric_id] = _MetricSlot(series=series)
            self._rebuild()
        self._notify()

    def drop(self, metric_id: MetricId, series: TimeSeries | None = None) -> None:
        """Forget a metric; with ``series`` given, only if that buffer is still the registered one."""
        with self._lock:
            if self._slot(metric_id, series) is None:
                return
            del self._slots[metric_id]
            self._rebuild()
        self._notify()

    def publish(
        self,
        metric_id: MetricId,
        point: DataPoint | None,
        payload: Any = None,
        series: TimeSeries | None = None,
    ) -> bool:
        """Append ``point`` and replace the latest slot as one atomic update.

        Returns ``False`` when the metric is not registered (or ``series`` is
        no longer its buffer) or the point was rejected by the buffer; the
        latest value is then left as it was.
        """
        with self._lock:
            slot = self._slot(metric_id, series)
            if slot is None:
                return False
            if point is not None:
                if not slot.series.append(point):
                    return False
                slot.latest = point
            slot.payload = payload
            slot.last_error = None
            self._rebuild()
        self._notify()
        return True

    def record_failure(self, metric_id: MetricId, message: str, series: TimeSeries | None = None) -> None:
        with self._lock:
            slot = self._slot(metric_id, series)
            if slot is None or slot.last_error == message:
                return
            slot.last_error = message
            self._rebuild()
        self._notify()

    def publish_capability(
        self, metric_id: MetricId, state: CapabilityState, series: TimeSeries | None = None
    ) -> None:
        with self._lock:
            slot = self._slot(metric_id, series)
            if slot is None or slot.capability == state:
                return
            slot.capability = state
            self._rebuild()
        self._notify()

    def prune(self, metric_id: MetricId, now_ms: int, series: TimeSeries | None = None) -> int:
        with self._lock:
            slot = self._slot(metric_id, series)
            if slot is None:
                return 0
            removed = slot.series.prune(now_ms)
            if not removed:
                return 0
            self._rebuild()
        self._notify()
        return removed

    def _rebuild(self) -> None:
        self._version += 1
        frozen = {mid: slot.freeze(mid) for mid, slot in self._slots.items()}
        self._current = Snapshot(version=self._version, metrics=MappingProxyType(frozen))

    def _notify(self) -> None:
        """Deliver the newest snapshot to subscribers.

        Only one thread delivers at a time and it never waits for another:
        a caller that finds delivery busy returns, and the delivering thread
        picks up whatever version is newest before it lets go. Observers see
        versions strictly increasing, possibly with gaps under contention.
        Callbacks may publish or detach from inside delivery.
        """
        while self._delivery_lock.acquire(blocking=False):
            try:
                while True:
                    with self._lock:
                        snap = self._current
                        if snap.version <= self._delivered:
                            break
                        self._delivered = snap.version
                        subscribers = list(self._subscribers)
                    for sub in subscribers:
                        sub._deliver(snap)
            finally:
                self._delivery_lock.release()
            with self._lock:
                if self._current.version <= self._delivered:
                    return
