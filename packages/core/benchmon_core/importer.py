"""Convert a finished benchmark run's metrics blob into display-ready series."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from benchmon_telemetry.models import DataPoint, SeriesStats

from .errors import MalformedImportInput
from .timeseries import TimeSeries


logger = logging.getLogger("benchmon.importer")


@dataclass(frozen=True)
class _Section:
    name: str
    keys: tuple[str, ...]
    value_key: str


# Bundle field, accepted section keys, value array key.
SECTIONS = (
    _Section("power", ("powerConsumption", "power"), "watts"),
    _Section("cpu_usage", ("cpuUsage",), "usage"),
    _Section("cpu_temp", ("cpuTemperature", "cpuTemp"), "temperature"),
    _Section("battery_temp", ("batteryTemperature", "batteryTemp"), "temperature"),
    _Section("gpu_frequency", ("gpuFrequency",), "frequency"),
    _Section("gpu_usage", ("gpuUsage",), "usage"),
)
TIMESTAMP_KEYS = ("timestamp", "timestamps")


@dataclass(frozen=True)
class BenchmarkSeriesBundle:
    power: TimeSeries
    cpu_usage: TimeSeries
    cpu_temp: TimeSeries
    battery_temp: TimeSeries
    gpu_frequency: TimeSeries
    gpu_usage: TimeSeries
    stats: Mapping[str, SeriesStats]
    runtime_ms: int = 0
    issues: tuple[str, ...] = field(default_factory=tuple)

    @property
    def runtime_seconds(self) -> float:
        return self.runtime_ms / 1000.0

    @property
    def is_empty(self) -> bool:
        return all(len(self.series(s.name)) == 0 for s in SECTIONS)

    def series(self, name: str) -> TimeSeries:
        return getattr(self, name)

    def summary(self) -> dict[str, Any]:
        return {
            "runtime_ms": self.runtime_ms,
            "series": {
                s.name: {
                    "count": len(self.series(s.name)),
                    "min": self.stats[s.name].min,
                    "max": self.stats[s.name].max,
                    "avg": self.stats[s.name].avg,
                }
                for s in SECTIONS
            },
            "issues": list(self.issues),
        }


def _decode(blob: Any) -> Mapping[str, Any]:
    if blob is None:
        return {}
    if isinstance(blob, (bytes, bytearray)):
        blob = blob.decode("utf-8", errors="replace")
    if isinstance(blob, str):
        if not blob.strip():
            return {}
        try:
            blob = json.loads(blob)
        except ValueError as exc:
            raise MalformedImportInput(f"metrics blob is not valid JSON: {exc}") from exc
    if not isinstance(blob, Mapping):
        raise MalformedImportInput(f"metrics blob must be an object, got {type(blob).__name__}")
    return blob


def _find_section(data: Mapping[str, Any], section: _Section) -> Any:
    for key in section.keys:
        if key in data:
            return data[key]
    return None


def _parse_points(section: _Section, raw: Any) -> list[DataPoint]:
    """Validate one section; raises ``MalformedImportInput`` for that metric only."""
    if not isinstance(raw, Mapping):
        raise MalformedImportInput(f"{section.name}: section is not an object")
    values = raw.get(section.value_key)
    timestamps = next((raw[k] for k in TIMESTAMP_KEYS if k in raw), None)
    if not isinstance(values, list) or not isinstance(timestamps, list):
        raise MalformedImportInput(f"{section.name}: missing '{section.value_key}' or timestamp array")
    if len(values) != len(timestamps):
        raise MalformedImportInput(
            f"{section.name}: length mismatch ({len(timestamps)} timestamps, {len(values)} values)"
        )

    points = []
    for ts, value in zip(timestamps, values):
        if isinstance(ts, bool) or isinstance(value, bool):
            raise MalformedImportInput(f"{section.name}: boolean entry")
        try:
            point = DataPoint(int(ts), float(value))
        except (TypeError, ValueError) as exc:
            raise MalformedImportInput(f"{section.name}: non-numeric entry ({exc})") from exc
        if not math.isfinite(point.value):
            raise MalformedImportInput(f"{section.name}: non-finite value")
        points.append(point)
    return points


def import_benchmark_metrics(blob: Any) -> BenchmarkSeriesBundle:
    """Build a ``BenchmarkSeriesBundle`` from a serialized metrics blob.

    Each section is imported independently: an absent section gives an empty
    series, a malformed one gives an empty series plus an entry in
    ``issues``. Only an undecodable blob, or one where every present section
    is malformed, raises ``MalformedImportInput``.
    """
    data = _decode(blob)

    parsed: dict[str, list[DataPoint]] = {}
    issues: list[str] = []
    present = 0
    for section in SECTIONS:
        raw = _find_section(data, section)
        if raw is None:
            parsed[section.name] = []
            continue
        present += 1
        try:
            parsed[section.name] = _parse_points(section, raw)
        except MalformedImportInput as exc:
            issues.append(str(exc))
            parsed[section.name] = []
            logger.warning(f"benchmark import issue: {exc}", extra={"event": "import_issue"})

    if present and len(issues) == present:
        raise MalformedImportInput("no importable metrics: " + "; ".join(issues))

    stamps = [p.timestamp_ms for points in parsed.values() for p in points]
    runtime_ms = (max(stamps) - min(stamps)) if stamps else 0

    series: dict[str, TimeSeries] = {}
    for section in SECTIONS:
        ts = TimeSeries(window_ms=runtime_ms)
        dropped = sum(1 for p in parsed[section.name] if not ts.append(p))
        if dropped:
            issues.append(f"{section.name}: dropped {dropped} out-of-order points")
        series[section.name] = ts

    stats = MappingProxyType({name: ts.stats() for name, ts in series.items()})
    return BenchmarkSeriesBundle(stats=stats, runtime_ms=runtime_ms, issues=tuple(issues), **series)
