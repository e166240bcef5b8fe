"""Core monitor services: buffering, capability gating, sampling, lifecycle, import, config."""

from .capability import CapabilityGate
from .config import AppConfig, MetricConfig, load_config, save_config
from .diagnostics import build_doctor_payload, snapshot_payload
from .errors import MalformedImportInput, MonitorError, UnknownMetricError
from .importer import BenchmarkSeriesBundle, import_benchmark_metrics
from .lifecycle import HandleGroup, MonitorController, MonitorHandle, build_monitor
from .publisher import SnapshotPublisher, Subscription
from .sampling import SamplingLoop
from .timeseries import TimeSeries, series_stats

__all__ = [
    "AppConfig",
    "BenchmarkSeriesBundle",
    "CapabilityGate",
    "HandleGroup",
    "MalformedImportInput",
    "MetricConfig",
    "MonitorController",
    "MonitorError",
    "MonitorHandle",
    "SamplingLoop",
    "SnapshotPublisher",
    "Subscription",
    "TimeSeries",
    "UnknownMetricError",
    "build_doctor_payload",
    "build_monitor",
    "import_benchmark_metrics",
    "load_config",
    "save_config",
    "series_stats",
    "snapshot_payload",
]
