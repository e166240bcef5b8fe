"""Periodic sampling loop: one reader, one buffer, one background thread."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from typing import Callable

from benchmon_telemetry.models import (
    Available,
    CapabilityState,
    DataPoint,
    MetricId,
    ReaderOutcome,
    TransientError,
    Unavailable,
    Value,
)
from benchmon_telemetry.readers import MetricReader

from .capability import CapabilityGate
from .publisher import SnapshotPublisher
from .timeseries import TimeSeries


logger = logging.getLogger("benchmon.sampling")

Clock = Callable[[], int]


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class SamplingLoop:
    def __init__(
        self,
        reader: MetricReader,
        publisher: SnapshotPublisher,
        period_s: float,
        series_factory: Callable[[], TimeSeries],
        timeout_s: float | None = None,
        clock: Clock = wall_clock_ms,
    ) -> None:
        if period_s <= 0:
            raise ValueError("period_s must be positive")
        self.reader = reader
        self.publisher = publisher
        self.period_s = period_s
        self.timeout_s = timeout_s if timeout_s is not None else period_s
        self.clock = clock
        self._series_factory = series_factory

        self.gate: CapabilityGate | None = None
        self.series: TimeSeries | None = None
        self.ticks = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._inflight: concurrent.futures.Future | None = None
        self._acquired = False

    @property
    def metric_id(self) -> MetricId:
        return self.reader.metric_id

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None or self._stop.is_set():
            return
        self._open()
        self._thread = threading.Thread(target=self._run, name=f"sampling-{self.metric_id.value}", daemon=True)
        try:
            self._thread.start()
        except Exception:
            self._thread = None
            self._close()
            raise
        logger.info(
            f"sampling loop started metric={self.metric_id.value} period_s={self.period_s}",
            extra={"event": "loop_started", "metric": self.metric_id.value},
        )

    def stop(self, join: bool = True) -> None:
        self._stop.set()
        thread = self._thread
        if thread is None:
            self._close()
            return
        if join and thread is not threading.current_thread():
            thread.join(timeout=self.timeout_s + 1.0)
            if thread.is_alive():
                logger.warning(
                    f"sampling loop did not exit in time metric={self.metric_id.value}",
                    extra={"event": "loop_stop_timeout", "metric": self.metric_id.value},
                )

    def _open(self) -> None:
        """Create the buffer and gate and register them; callable without a thread for ``tick``."""
        if self.series is not None:
            return
        self.series = self._series_factory()
        if self.reader.gated:
            self.gate = CapabilityGate(self._timed_read, name=self.metric_id.value)
        self.publisher.register(self.metric_id, self.series)
        try:
            self.reader.acquire()
            self._acquired = True
        except Exception:
            logger.exception(
                f"sensor acquire failed metric={self.metric_id.value}",
                extra={"event": "acquire_error", "metric": self.metric_id.value},
            )

    def _close(self) -> None:
        try:
            if self._acquired:
                self._acquired = False
                self.reader.release()
        except Exception:
            logger.exception(
                f"sensor release failed metric={self.metric_id.value}",
                extra={"event": "release_error", "metric": self.metric_id.value},
            )
        finally:
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None
            if self.series is not None:
                self.publisher.drop(self.metric_id, self.series)

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                self.tick()
                if self._stop.wait(self.period_s):
                    break
        finally:
            self._close()
            logger.info(
                f"sampling loop stopped metric={self.metric_id.value} ticks={self.ticks}",
                extra={"event": "loop_stopped", "metric": self.metric_id.value},
            )

    def tick(self) -> None:
        """Run one sampling iteration synchronously."""
        self._open()
        self.ticks += 1
        if self.gate is not None:
            state = self.gate.probe()
            self.publisher.publish_capability(self.metric_id, state, self.series)
            outcome = self.gate.last_outcome if isinstance(state, Available) else None
            if outcome is None:
                self._on_failure(self._describe(state))
        else:
            outcome = self._timed_read()
            if not isinstance(outcome, Value):
                self._on_failure(self._describe(outcome))
                outcome = None

        if isinstance(outcome, Value):
            self._on_value(outcome)
        self.publisher.prune(self.metric_id, self.clock(), self.series)

    def _on_value(self, outcome: Value) -> None:
        point = DataPoint(self.clock(), float(outcome.value)) if outcome.value is not None else None
        self.publisher.publish(self.metric_id, point, outcome.payload, self.series)

    def _on_failure(self, message: str) -> None:
        self.publisher.record_failure(self.metric_id, message, self.series)
        logger.debug(
            f"sample failed metric={self.metric_id.value}: {message}",
            extra={"event": "sample_failed", "metric": self.metric_id.value},
        )

    @staticmethod
    def _describe(result: ReaderOutcome | CapabilityState) -> str:
        if isinstance(result, TransientError):
            return result.cause
        if isinstance(result, Unavailable):
            return f"{result.reason.value}: {result.detail}" if result.detail else result.reason.value
        message = getattr(result, "message", None) or getattr(result, "detail", None)
        return f"{result.kind}: {message}" if message else result.kind

    def _timed_read(self) -> ReaderOutcome:
        """Call the reader on a worker thread, bounded by ``timeout_s``."""
        if self._inflight is not None and not self._inflight.done():
            return TransientError("previous probe still running")
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1, thread_name_prefix=f"probe-{self.metric_id.value}"
            )
        self._inflight = self._executor.submit(self.reader.read)
        try:
            return self._inflight.result(timeout=self.timeout_s)
        except concurrent.futures.TimeoutError:
            return TransientError(f"probe exceeded {self.timeout_s:.3f}s")
        except Exception as exc:
            return TransientError(f"reader raised {type(exc).__name__}: {exc}")
