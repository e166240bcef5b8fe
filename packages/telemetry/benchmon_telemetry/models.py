"""Typed telemetry models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Union


class MetricId(str, Enum):
    CPU_UTILIZATION = "cpu_utilization"
    CPU_FREQUENCY_PER_CORE = "cpu_frequency_per_core"
    CPU_GOVERNOR = "cpu_governor"
    GPU_FREQUENCY = "gpu_frequency"
    GPU_UTILIZATION = "gpu_utilization"
    POWER = "power"
    CPU_TEMPERATURE = "cpu_temperature"
    BATTERY_TEMPERATURE = "battery_temperature"
    MEMORY_USAGE = "memory_usage"


@dataclass(frozen=True)
class DataPoint:
    timestamp_ms: int
    value: float


# Reader outcomes


class UnavailableReason(str, Enum):
    NOT_SUPPORTED = "not_supported"
    PERMISSION_DENIED = "permission_denied"


@dataclass(frozen=True)
class Value:
    value: float | None
    payload: Any = None


@dataclass(frozen=True)
class Unavailable:
    reason: UnavailableReason
    detail: str = ""


@dataclass(frozen=True)
class TransientError:
    cause: str


ReaderOutcome = Union[Value, Unavailable, TransientError]


# Capability states


@dataclass(frozen=True)
class Loading:
    kind: str = field(default="loading", init=False)


@dataclass(frozen=True)
class Available:
    payload: Any = None
    kind: str = field(default="available", init=False)


@dataclass(frozen=True)
class RequiresElevatedAccess:
    detail: str = ""
    kind: str = field(default="requires_elevated_access", init=False)


@dataclass(frozen=True)
class NotSupported:
    detail: str = ""
    kind: str = field(default="not_supported", init=False)


@dataclass(frozen=True)
class Error:
    message: str
    kind: str = field(default="error", init=False)


CapabilityState = Union[Loading, Available, RequiresElevatedAccess, NotSupported, Error]

TERMINAL_STATES = (RequiresElevatedAccess, NotSupported)


# Structured reader payloads


@dataclass(frozen=True)
class CoreFrequency:
    core: int
    current_mhz: float
    max_mhz: float | None


@dataclass(frozen=True)
class CpuFrequencies:
    cores: tuple[CoreFrequency, ...]
    weighted_utilization: float | None


@dataclass(frozen=True)
class GpuFrequency:
    current_mhz: float
    max_mhz: float | None
    governor: str | None
    source: str


@dataclass(frozen=True)
class PowerReading:
    watts: float
    volts: float | None
    amps: float | None
    charging: bool


@dataclass(frozen=True)
class MemoryUsage:
    used_gb: float
    total_gb: float
    percent: float


# Published read model


@dataclass(frozen=True)
class SeriesStats:
    min: float
    max: float
    avg: float
    count: int

    @property
    def is_empty(self) -> bool:
        return self.count == 0


EMPTY_STATS = SeriesStats(min=0.0, max=0.0, avg=0.0, count=0)


@dataclass(frozen=True)
class MetricSnapshot:
    metric_id: MetricId
    latest: DataPoint | None
    payload: Any
    series: tuple[DataPoint, ...]
    capability: CapabilityState | None
    last_error: str | None


@dataclass(frozen=True)
class Snapshot:
    version: int
    metrics: Mapping[MetricId, MetricSnapshot] = field(default_factory=lambda: MappingProxyType({}))

    def get(self, metric_id: MetricId) -> MetricSnapshot | None:
        return self.metrics.get(metric_id)

    def latest(self, metric_id: MetricId) -> DataPoint | None:
        entry = self.metrics.get(metric_id)
        return entry.latest if entry else None

    def series(self, metric_id: MetricId) -> tuple[DataPoint, ...]:
        entry = self.metrics.get(metric_id)
        return entry.series if entry else ()

    def capability(self, metric_id: MetricId) -> CapabilityState | None:
        entry = self.metrics.get(metric_id)
        return entry.capability if entry else None
