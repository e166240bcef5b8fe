"""Device metric readers and telemetry models for benchmon."""

from .models import (
    Available,
    CapabilityState,
    DataPoint,
    Error,
    Loading,
    MetricId,
    MetricSnapshot,
    NotSupported,
    ReaderOutcome,
    RequiresElevatedAccess,
    SeriesStats,
    Snapshot,
    TransientError,
    Unavailable,
    UnavailableReason,
    Value,
)
from .readers import MetricReader, build_readers
from .sysfs import Sysfs, parse_frequency_mhz

__all__ = [
    "Available",
    "CapabilityState",
    "DataPoint",
    "Error",
    "Loading",
    "MetricReader",
    "MetricId",
    "MetricSnapshot",
    "NotSupported",
    "ReaderOutcome",
    "RequiresElevatedAccess",
    "SeriesStats",
    "Snapshot",
    "Sysfs",
    "TransientError",
    "Unavailable",
    "UnavailableReason",
    "Value",
    "build_readers",
    "parse_frequency_mhz",
]
