"""Exceptions raised across the monitor's public surface."""

from __future__ import annotations


class MonitorError(RuntimeError):
    pass


class UnknownMetricError(MonitorError, KeyError):
    def __init__(self, metric_id: object) -> None:
        super().__init__(f"no reader registered for metric {metric_id!r}")
        self.metric_id = metric_id

    def __str__(self) -> str:
        return str(self.args[0])


class MalformedImportInput(ValueError):
    """Benchmark metrics blob that cannot be imported at all."""
