"""Reference-counted start/stop of sampling loops driven by observer attach/detach."""

from __future__ import annotations

import logging
import threading
import weakref
from typing import Callable, Iterable, Mapping

from benchmon_telemetry.models import MetricId
from benchmon_telemetry.readers import MetricReader, build_readers

from .config import HISTORY_COUNT, AppConfig, MetricConfig
from .errors import UnknownMetricError
from .publisher import SnapshotPublisher
from .sampling import Clock, SamplingLoop, wall_clock_ms
from .timeseries import TimeSeries


logger = logging.getLogger("benchmon.lifecycle")


def series_factory(metric_cfg: MetricConfig) -> Callable[[], TimeSeries]:
    if metric_cfg.history == HISTORY_COUNT:
        return lambda: TimeSeries(max_points=metric_cfg.max_points)
    return lambda: TimeSeries(window_ms=metric_cfg.window_ms)


def _release(controller_ref: weakref.ReferenceType, metric_id: MetricId, token: list[bool]) -> None:
    # Shared by close() and the GC finalizer; token makes it run once.
    if token[0]:
        return
    token[0] = True
    controller = controller_ref()
    if controller is not None:
        controller._detach(metric_id)


class MonitorHandle:
    """Observer's claim on one metric; closing it releases the claim exactly once."""

    def __init__(self, controller: MonitorController, metric_id: MetricId) -> None:
        self.metric_id = metric_id
        self._token = [False]
        self._finalizer = weakref.finalize(self, _release, weakref.ref(controller), metric_id, self._token)

    @property
    def closed(self) -> bool:
        return self._token[0]

    def close(self) -> None:
        self._finalizer()

    def __enter__(self) -> MonitorHandle:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


class HandleGroup:
    def __init__(self, handles: list[MonitorHandle]) -> None:
        self.handles = handles

    @property
    def metric_ids(self) -> list[MetricId]:
        return [h.metric_id for h in self.handles]

    def close(self) -> None:
        for handle in self.handles:
            handle.close()

    def __enter__(self) -> HandleGroup:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


class MonitorController:
    """Keeps at most one sampling loop per metric alive while anyone is attached."""

    def __init__(
        self,
        publisher: SnapshotPublisher,
        readers: Mapping[MetricId, MetricReader],
        cfg: AppConfig | None = None,
        clock: Clock = wall_clock_ms,
        loop_factory: Callable[..., SamplingLoop] = SamplingLoop,
    ) -> None:
        self.publisher = publisher
        self.readers = dict(readers)
        self.cfg = cfg or AppConfig()
        self.clock = clock
        self._loop_factory = loop_factory
        # Reentrant: a handle finalizer may run during a collection triggered inside a locked section.
        self._lock = threading.RLock()
        self._refcounts: dict[MetricId, int] = {}
        self._loops: dict[MetricId, SamplingLoop] = {}

    def attach(self, metric_id: MetricId) -> MonitorHandle:
        try:
            metric_id = MetricId(metric_id)
        except ValueError:
            raise UnknownMetricError(metric_id) from None
        reader = self.readers.get(metric_id)
        if reader is None:
            raise UnknownMetricError(metric_id)

        loop: SamplingLoop | None = None
        with self._lock:
            count = self._refcounts.get(metric_id, 0) + 1
            self._refcounts[metric_id] = count
            if count == 1:
                loop = self._build_loop(reader)
                self._loops[metric_id] = loop

        # Started outside the lock: registering notifies subscribers, and a
        # subscriber may detach from inside its callback.
        if loop is not None:
            try:
                loop.start()
            except Exception:
                self._abandon(metric_id, loop)
                raise
        logger.debug(f"attach metric={metric_id.value} refcount={count}", extra={"event": "attach"})
        return MonitorHandle(self, metric_id)

    def _abandon(self, metric_id: MetricId, loop: SamplingLoop) -> None:
        """Undo an attach whose loop failed to start."""
        with self._lock:
            if self._loops.get(metric_id) is loop:
                del self._loops[metric_id]
            count = self._refcounts.get(metric_id, 0) - 1
            if count > 0:
                self._refcounts[metric_id] = count
            else:
                self._refcounts.pop(metric_id, None)
        loop.stop(join=False)
        logger.warning(
            f"sampling loop failed to start metric={metric_id.value}",
            extra={"event": "loop_start_failed", "metric": metric_id.value},
        )

    def attach_many(self, metric_ids: Iterable[MetricId]) -> HandleGroup:
        handles: list[MonitorHandle] = []
        try:
            for metric_id in metric_ids:
                handles.append(self.attach(metric_id))
        except Exception:
            for handle in handles:
                handle.close()
            raise
        return HandleGroup(handles)

    def _build_loop(self, reader: MetricReader) -> SamplingLoop:
        metric_cfg = self.cfg.metric(reader.metric_id)
        return self._loop_factory(
            reader=reader,
            publisher=self.publisher,
            period_s=metric_cfg.period_ms / 1000,
            series_factory=series_factory(metric_cfg),
            timeout_s=metric_cfg.timeout_ms / 1000,
            clock=self.clock,
        )

    def _detach(self, metric_id: MetricId) -> None:
        loop: SamplingLoop | None = None
        with self._lock:
            count = self._refcounts.get(metric_id, 0)
            if count <= 0:
                return
            count -= 1
            if count == 0:
                del self._refcounts[metric_id]
                loop = self._loops.pop(metric_id, None)
            else:
                self._refcounts[metric_id] = count
        logger.debug(f"detach metric={metric_id.value} refcount={count}", extra={"event": "detach"})
        if loop is not None:
            loop.stop()

    def refcount(self, metric_id: MetricId) -> int:
        with self._lock:
            return self._refcounts.get(MetricId(metric_id), 0)

    def active_metrics(self) -> list[MetricId]:
        with self._lock:
            return list(self._loops)

    def loop_for(self, metric_id: MetricId) -> SamplingLoop | None:
        with self._lock:
            return self._loops.get(MetricId(metric_id))

    def shutdown(self) -> None:
        with self._lock:
            loops = list(self._loops.values())
            self._loops.clear()
            self._refcounts.clear()
        for loop in loops:
            loop.stop()
        if loops:
            logger.info(f"monitor shutdown stopped {len(loops)} loops", extra={"event": "monitor_shutdown"})


def build_monitor(cfg: AppConfig | None = None) -> MonitorController:
    cfg = cfg or AppConfig()
    readers = build_readers(
        sysfs_root=cfg.sysfs.root,
        power_multiplier=cfg.power.multiplier,
        use_nvml=cfg.sysfs.use_nvml,
    )
    enabled = {mid: r for mid, r in readers.items() if cfg.metric(mid).enabled}
    return MonitorController(SnapshotPublisher(), enabled, cfg)
